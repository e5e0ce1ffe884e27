import base64
import binascii
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.src.core.errors import AppError, NotFoundError, PersistenceError, ValidationError
from backend.src.models.chat import ChatMessage, ChatSession, MessageRole, SessionStatus, new_id
from backend.src.services.chat.prompts import generate_title

logger = logging.getLogger(__name__)

ONE_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==========================================
# CURSORS
# ==========================================

def encode_cursor(message: ChatMessage) -> str:
    raw = f"{message.created_at.isoformat()}|{message.id}"
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        stamp, message_id = raw.split("|", 1)
        return datetime.fromisoformat(stamp), message_id
    except (ValueError, UnicodeDecodeError, binascii.Error):
        raise ValidationError("Invalid pagination cursor")


@dataclass
class NewMessage:
    role: str
    content: str
    meta: Optional[Dict[str, Any]] = None

    @property
    def error_code(self) -> Optional[str]:
        return (self.meta or {}).get("error_code")


@dataclass
class MessagePage:
    items: List[ChatMessage]
    next_cursor: Optional[str]
    has_more: bool
    total: int
    limit: int


class ConversationStore:
    """
    Sessions and their append-only message log.

    Every public method runs in its own transaction. Database failures come out
    as PersistenceError, so callers never see half-written turns.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    yield db
        except (AppError, IntegrityError):
            raise
        except SQLAlchemyError as exc:
            logger.error("Chat store failure: %s", exc)
            raise PersistenceError() from exc

    # ------------------- SESSIONS -------------------

    async def _find_active(self, db, user_id: int, subject_id: int, context_type: str, context_id: str):
        stmt = (
            select(ChatSession)
            .where(
                ChatSession.user_id == user_id,
                ChatSession.subject_id == subject_id,
                ChatSession.context_type == context_type,
                ChatSession.context_id == context_id,
                ChatSession.status == SessionStatus.ACTIVE.value,
            )
            .order_by(ChatSession.created_at.desc())
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    async def create_or_resume_session(
        self,
        user_id: int,
        subject_id: int,
        context_type: str,
        context_id: Optional[str] = None,
        context_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ChatSession, bool]:
        """Returns (session, created). Resumes the newest ACTIVE match if any."""
        context_id = context_id or ""
        async with self._transaction() as db:
            existing = await self._find_active(db, user_id, subject_id, context_type, context_id)
            if existing:
                return existing, False

        now = utcnow()
        session = ChatSession(
            id=new_id(),
            user_id=user_id,
            subject_id=subject_id,
            context_type=context_type,
            context_id=context_id,
            context_data=dict(context_data or {}),
            title=generate_title(context_type, now),
            status=SessionStatus.ACTIVE.value,
            message_count=0,
            last_message_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._transaction() as db:
                db.add(session)
            return session, True
        except IntegrityError:
            # Lost the race against a concurrent start for the same context
            async with self._transaction() as db:
                existing = await self._find_active(db, user_id, subject_id, context_type, context_id)
            if existing is None:
                raise PersistenceError("Could not create or resume chat session")
            return existing, False

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._transaction() as db:
            return await db.get(ChatSession, session_id)

    async def list_sessions(
        self,
        user_id: int,
        subject_id: Optional[int] = None,
        context_type: Optional[str] = None,
        status: Optional[str] = SessionStatus.ACTIVE.value,
    ) -> List[ChatSession]:
        stmt = select(ChatSession).where(ChatSession.user_id == user_id)
        if subject_id is not None:
            stmt = stmt.where(ChatSession.subject_id == subject_id)
        if context_type:
            stmt = stmt.where(ChatSession.context_type == context_type)
        if status:
            stmt = stmt.where(ChatSession.status == status)
        stmt = stmt.order_by(
            func.coalesce(ChatSession.last_message_at, ChatSession.created_at).desc(),
            ChatSession.id.desc(),
        )
        async with self._transaction() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def update_session_title(self, session_id: str, title: str) -> ChatSession:
        async with self._transaction() as db:
            session = await db.get(ChatSession, session_id)
            if session is None:
                raise NotFoundError("Chat session not found")
            session.title = title
            session.updated_at = utcnow()
            return session

    async def archive_session(self, session_id: str) -> ChatSession:
        """ACTIVE -> ARCHIVED. Archiving twice is a no-op."""
        async with self._transaction() as db:
            session = await db.get(ChatSession, session_id)
            if session is None:
                raise NotFoundError("Chat session not found")
            if session.status != SessionStatus.ARCHIVED.value:
                session.status = SessionStatus.ARCHIVED.value
                session.updated_at = utcnow()
            return session

    async def delete_session(self, session_id: str) -> bool:
        """Removes the session and its messages. False if it was already gone."""
        async with self._transaction() as db:
            await db.execute(delete(ChatMessage).where(ChatMessage.session_id == session_id))
            result = await db.execute(delete(ChatSession).where(ChatSession.id == session_id))
            return result.rowcount > 0

    # ------------------- MESSAGES -------------------

    async def append_messages(
        self,
        session_id: str,
        user_id: int,
        messages: List[NewMessage],
        *,
        replace_failed_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        """
        Atomically append `messages` (in order) and bump the session counters.

        `replace_failed_id` drops one failed assistant placeholder in the same
        transaction. That is the only way a message ever leaves the log short
        of deleting the whole session.
        """
        async with self._transaction() as db:
            session = await db.get(ChatSession, session_id)
            if session is None:
                raise NotFoundError("Chat session not found")

            removed = 0
            if replace_failed_id:
                result = await db.execute(
                    delete(ChatMessage).where(
                        ChatMessage.id == replace_failed_id,
                        ChatMessage.session_id == session_id,
                        ChatMessage.role == MessageRole.ASSISTANT.value,
                        ChatMessage.error_code.is_not(None),
                    )
                )
                removed = result.rowcount

            latest = await db.scalar(
                select(func.max(ChatMessage.created_at)).where(ChatMessage.session_id == session_id)
            )
            stamp = utcnow()
            rows = []
            for message in messages:
                if latest is not None and stamp <= latest:
                    stamp = latest + ONE_TICK
                row = ChatMessage(
                    id=new_id(),
                    session_id=session_id,
                    user_id=user_id,
                    role=message.role,
                    content=message.content,
                    meta=message.meta,
                    error_code=message.error_code,
                    created_at=stamp,
                )
                db.add(row)
                rows.append(row)
                latest = stamp

            await db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(
                    message_count=ChatSession.message_count + len(rows) - removed,
                    last_message_at=latest,
                    updated_at=utcnow(),
                )
            )
            return rows

    async def list_messages(self, session_id: str, limit: int, cursor: Optional[str] = None) -> MessagePage:
        """
        Newest page first; each page is returned oldest-to-newest.
        `next_cursor` points at the oldest item of this page and keys on
        (created_at, id), so concurrent appends never shift older pages.
        """
        stmt = select(ChatMessage).where(ChatMessage.session_id == session_id)
        if cursor:
            stamp, message_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    ChatMessage.created_at < stamp,
                    and_(ChatMessage.created_at == stamp, ChatMessage.id < message_id),
                )
            )
        stmt = stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit + 1)

        async with self._transaction() as db:
            rows = list((await db.execute(stmt)).scalars().all())
            total = await db.scalar(
                select(func.count()).select_from(ChatMessage).where(ChatMessage.session_id == session_id)
            )

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = encode_cursor(rows[-1]) if has_more and rows else None
        rows.reverse()
        return MessagePage(items=rows, next_cursor=next_cursor, has_more=has_more, total=total or 0, limit=limit)

    async def recent_messages(self, session_id: str, limit: int) -> List[ChatMessage]:
        """Last `limit` messages, oldest first."""
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(limit)
        )
        async with self._transaction() as db:
            rows = list((await db.execute(stmt)).scalars().all())
        rows.reverse()
        return rows

    async def has_successful_answer(self, session_id: str) -> bool:
        stmt = (
            select(ChatMessage.id)
            .where(
                ChatMessage.session_id == session_id,
                ChatMessage.role == MessageRole.ASSISTANT.value,
                ChatMessage.error_code.is_(None),
            )
            .limit(1)
        )
        async with self._transaction() as db:
            return (await db.scalar(stmt)) is not None

    async def count_user_messages_since(self, user_id: int, since: datetime) -> int:
        stmt = select(func.count()).select_from(ChatMessage).where(
            ChatMessage.user_id == user_id,
            ChatMessage.role == MessageRole.USER.value,
            ChatMessage.created_at >= since,
        )
        async with self._transaction() as db:
            return (await db.scalar(stmt)) or 0
