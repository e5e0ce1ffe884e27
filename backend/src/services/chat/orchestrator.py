import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from backend.src.core.config import ChatConfig
from backend.src.core.errors import (
    AppError,
    AuthorizationError,
    ConflictError,
    RateLimitExceeded,
    ValidationError,
)
from backend.src.models.chat import ChatMessage, ChatSession, ContextType, MessageRole, SessionStatus
from backend.src.services.chat.access import ChatAccessGuard
from backend.src.services.chat.locks import SessionLocks
from backend.src.services.chat.prompts import (
    append_disclaimer_if_needed,
    build_context_text,
    get_system_prompt,
)
from backend.src.services.chat.store import ConversationStore, MessagePage, NewMessage, utcnow
from backend.src.services.chat.token_budget import TokenBudgetAllocator
from backend.src.services.llm.base import ChatProvider
from backend.src.services.security.phi_redactor import PHIRedactor

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

T = TypeVar("T")

UNAVAILABLE_MESSAGE = "AI assistant is temporarily unavailable. Please try again."
MAX_MESSAGE_CHARS = 2000
MAX_TITLE_CHARS = 200


def _log_turn_failure(task: "asyncio.Future") -> None:
    # Retrieves the outcome even when the awaiting request was cancelled
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, AppError):
        logger.error("Chat turn failed: %r", exc, exc_info=exc)


async def run_shielded(coro: Awaitable[T]) -> T:
    """Run `coro` to completion even if the caller goes away."""
    task = asyncio.ensure_future(coro)
    task.add_done_callback(_log_turn_failure)
    return await asyncio.shield(task)


@dataclass
class StartResult:
    session: ChatSession
    page: MessagePage
    is_new: bool


@dataclass
class TurnResult:
    user_message: ChatMessage
    assistant_message: ChatMessage
    token_usage: Dict[str, int]
    error: Optional[Dict[str, Any]] = None


class ChatOrchestrator:
    """
    Runs a chat turn end to end: ownership, budgeted prompt, provider call,
    persistence. Provider failures are recorded as a failed assistant turn
    (and reported in `TurnResult.error`) instead of being raised.
    """

    def __init__(
        self,
        store: ConversationStore,
        provider: ChatProvider,
        allocator: TokenBudgetAllocator,
        access: ChatAccessGuard,
        config: ChatConfig,
        locks: Optional[SessionLocks] = None,
    ):
        self.store = store
        self.provider = provider
        self.allocator = allocator
        self.access = access
        self.config = config
        self.locks = locks or SessionLocks()

    # ==========================================
    # SESSIONS
    # ==========================================

    async def start_or_resume(
        self,
        user_id: int,
        subject_id: int,
        context_type: str,
        context_id: Optional[str] = None,
        context_data: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        subject = await self.access.owned_subject(subject_id, user_id)
        try:
            ctype = ContextType(context_type)
        except ValueError:
            raise ValidationError(f"Unknown context type: {context_type}")

        # Fold the subject's hospital identifiers into the context
        data = dict(context_data or {})
        if subject.hospital_code:
            data.setdefault("hospital_code", subject.hospital_code)
        if subject.patient_id:
            data.setdefault("patient_id", subject.patient_id)

        session, created = await self.store.create_or_resume_session(
            user_id, subject_id, ctype.value, context_id, data
        )
        page = await self.store.list_messages(session.id, self.config.page_size)
        logger.info("%s chat session %s (%s)", "Created" if created else "Resumed", session.id, ctype.value)
        return StartResult(session=session, page=page, is_new=created)

    async def list_sessions(
        self,
        user_id: int,
        subject_id: Optional[int] = None,
        context_type: Optional[str] = None,
        status: Optional[str] = SessionStatus.ACTIVE.value,
    ) -> List[ChatSession]:
        return await self.store.list_sessions(user_id, subject_id, context_type, status)

    async def rename_session(self, session_id: str, user_id: int, title: str) -> ChatSession:
        await self.access.owned_session(session_id, user_id)
        title = (title or "").strip()
        if not title or len(title) > MAX_TITLE_CHARS:
            raise ValidationError(f"Title must be 1-{MAX_TITLE_CHARS} characters")
        return await self.store.update_session_title(session_id, title)

    async def archive_session(self, session_id: str, user_id: int) -> ChatSession:
        await self.access.owned_session(session_id, user_id)
        return await self.store.archive_session(session_id)

    async def delete_session(self, session_id: str, user_id: int) -> bool:
        """Deleting an already deleted session is not an error."""
        session = await self.store.get_session(session_id)
        if session is None:
            return False
        if session.user_id != user_id:
            security_logger.warning("User %s tried to delete session %s", user_id, session_id)
            raise AuthorizationError("Access denied to this chat session")
        return await self.store.delete_session(session_id)

    async def list_messages(
        self, session_id: str, user_id: int, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> MessagePage:
        await self.access.owned_session(session_id, user_id)
        limit = limit or self.config.page_size
        if limit < 1 or limit > self.config.page_max:
            raise ValidationError(f"Limit must be between 1 and {self.config.page_max}")
        return await self.store.list_messages(session_id, limit, cursor)

    # ==========================================
    # TURNS
    # ==========================================

    async def send_message(self, session_id: str, user_id: int, text: str) -> TurnResult:
        session = await self.access.owned_session(session_id, user_id)
        self._ensure_active(session)
        text = (text or "").strip()
        if not text or len(text) > MAX_MESSAGE_CHARS:
            raise ValidationError(f"Message must be 1-{MAX_MESSAGE_CHARS} characters")
        await self._check_rate_limit(user_id)

        async def turn() -> TurnResult:
            async with self.locks.hold(session.id):
                return await self._run_turn(session, user_id, text)

        # A client disconnect must not drop a turn that is already in flight
        return await run_shielded(turn())

    async def retry_last_message(self, session_id: str, user_id: int) -> TurnResult:
        session = await self.access.owned_session(session_id, user_id)
        self._ensure_active(session)

        async def turn() -> TurnResult:
            async with self.locks.hold(session.id):
                latest = await self.store.recent_messages(session.id, 2)
                if not latest:
                    raise ConflictError("No message to retry")
                last = latest[-1]
                if last.role == MessageRole.USER.value:
                    # User turn persisted but no answer recorded
                    return await self._run_turn(session, user_id, last.content, retry_of=last)
                if last.role == MessageRole.ASSISTANT.value and last.error_code and len(latest) == 2 \
                        and latest[0].role == MessageRole.USER.value:
                    return await self._run_turn(
                        session, user_id, latest[0].content, retry_of=latest[0], failed=last
                    )
                raise ConflictError("Last message did not fail")

        return await run_shielded(turn())

    async def _run_turn(
        self,
        session: ChatSession,
        user_id: int,
        text: str,
        retry_of: Optional[ChatMessage] = None,
        failed: Optional[ChatMessage] = None,
    ) -> TurnResult:
        # 1. History (without the turn being retried)
        skip = {m.id for m in (retry_of, failed) if m is not None}
        rows = await self.store.recent_messages(session.id, self.config.max_history_messages + len(skip))
        history = [
            {"role": m.role, "content": m.content}
            for m in rows
            if m.id not in skip
            and m.role in (MessageRole.USER.value, MessageRole.ASSISTANT.value)
            and not m.error_code
            and m.content
        ]

        # 2. Budgeted prompt
        subject_name = await self.access.subject_name(session.subject_id)
        allocation = self.allocator.allocate(
            get_system_prompt(session.context_type),
            build_context_text(session.context_type, session.context_id, session.context_data, subject_name),
            history,
            text,
        )

        # 3. Provider call (never raises)
        logger.info("Chat turn on session %s: '%s'", session.id, PHIRedactor.preview(text))
        response = await self.provider.chat(allocation.to_messages())
        meta = response.meta.model_dump()

        # 4. Persist the outcome either way
        error = None
        if response.ok:
            first_answer = not await self.store.has_successful_answer(session.id)
            content = append_disclaimer_if_needed(response.content, text, first_answer)
        else:
            content = ""
            error = {"code": response.meta.error_code, "message": UNAVAILABLE_MESSAGE, "retryable": True}

        new_messages = [] if retry_of is not None else [NewMessage(MessageRole.USER.value, text)]
        new_messages.append(NewMessage(MessageRole.ASSISTANT.value, content, meta))
        rows = await self.store.append_messages(
            session.id, user_id, new_messages, replace_failed_id=failed.id if failed else None
        )

        user_message = retry_of if retry_of is not None else rows[0]
        return TurnResult(
            user_message=user_message,
            assistant_message=rows[-1],
            token_usage=allocation.usage,
            error=error,
        )

    # ------------------- GUARDS -------------------

    def _ensure_active(self, session: ChatSession) -> None:
        if session.status != SessionStatus.ACTIVE.value:
            raise ConflictError("Cannot send messages to an archived session")

    async def _check_rate_limit(self, user_id: int) -> None:
        now = utcnow()
        per_minute = await self.store.count_user_messages_since(user_id, now - timedelta(minutes=1))
        if per_minute >= self.config.rate_limit_per_minute:
            raise RateLimitExceeded(
                "Too many messages in the last minute", details={"limit": self.config.rate_limit_per_minute}
            )
        per_hour = await self.store.count_user_messages_since(user_id, now - timedelta(hours=1))
        if per_hour >= self.config.rate_limit_per_hour:
            raise RateLimitExceeded(
                "Too many messages in the last hour", details={"limit": self.config.rate_limit_per_hour}
            )
