import asyncio
from sqlalchemy.ext.asyncio import AsyncEngine
from backend.src.db.base import Base

# --- Import ALL Models here ---
# SQLAlchemy only creates tables for models it has seen
from backend.src.models.chat import ChatSession, ChatMessage, ChatIdempotency  # noqa: F401
from backend.src.models.user import User, FamilyMember  # noqa: F401


async def init_models(bind: AsyncEngine, drop: bool = False) -> None:
    async with bind.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def init_database():
    from backend.src.db.session import engine

    print("🚀 Connecting to the database...")
    await init_models(engine)
    print("✅ Chat tables ready (users, family_members, chat_sessions, chat_messages, chat_idempotency)")
    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
