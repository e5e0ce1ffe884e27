import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.src.core.errors import AuthorizationError, NotFoundError, PersistenceError
from backend.src.models.chat import ChatSession
from backend.src.models.user import FamilyMember

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


class ChatAccessGuard:
    """Ownership checks for chat sessions and the family members they are about."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _get(self, model, ident):
        try:
            async with self._session_factory() as db:
                return await db.get(model, ident)
        except SQLAlchemyError as exc:
            logger.error("Authorization lookup failed: %s", exc)
            raise PersistenceError("Authorization check failed") from exc

    async def owned_session(self, session_id: str, user_id: int) -> ChatSession:
        session = await self._get(ChatSession, session_id)
        if session is None:
            raise NotFoundError("Chat session not found")
        if session.user_id != user_id:
            security_logger.warning(
                "Unauthorized chat access attempt: user %s tried to access session %s", user_id, session_id
            )
            raise AuthorizationError("Access denied to this chat session")
        return session

    async def owned_subject(self, subject_id: int, user_id: int) -> FamilyMember:
        subject = await self._get(FamilyMember, subject_id)
        if subject is None:
            raise NotFoundError("Family member not found")
        if subject.user_id != user_id:
            security_logger.warning(
                "Unauthorized family member access: user %s tried to access family member %s", user_id, subject_id
            )
            raise AuthorizationError("Access denied to this family member")
        return subject

    async def subject_name(self, subject_id: int) -> Optional[str]:
        subject = await self._get(FamilyMember, subject_id)
        return subject.full_name if subject else None
