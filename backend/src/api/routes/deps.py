from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from backend.src.core.config import settings
from backend.src.core.errors import ValidationError
from backend.src.models.user import User
from backend.src.services.chat.container import ChatServices
from backend.src.utils.auth import ALGORITHM

# Tokens are issued by the portal's auth service; Swagger just needs to know the scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")


def get_chat_services(request: Request) -> ChatServices:
    return request.app.state.chat_services


async def get_db(services: ChatServices = Depends(get_chat_services)):
    async with services.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Runs before every chat route.
    Verifies the bearer token and loads the caller from the database.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        user_pk = int(user_id)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_pk))
    user = result.scalars().first()

    if user is None or not user.is_active:
        raise credentials_exception

    return user


def require_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> str:
    """Mutating chat calls must carry a client-generated key."""
    key = (idempotency_key or "").strip()
    if not key:
        raise ValidationError("Idempotency-Key header is required")
    if len(key) > 255:
        raise ValidationError("Idempotency-Key must be at most 255 characters")
    return key
