from typing import Any, Awaitable, Callable, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from backend.src.api.routes.deps import get_chat_services, get_current_user, require_idempotency_key
from backend.src.core.errors import ValidationError
from backend.src.models.chat import ContextType, SessionStatus
from backend.src.models.user import User
from backend.src.schemas.chat import (
    ChatMessageOut,
    ChatSessionOut,
    DeleteSessionResponse,
    MessagePageOut,
    SendMessageRequest,
    SessionListResponse,
    SessionResponse,
    StartChatRequest,
    StartChatResponse,
    TokenUsageOut,
    TurnError,
    TurnResponse,
    UpdateSessionRequest,
)
from backend.src.services.chat.container import ChatServices
from backend.src.services.chat.orchestrator import TurnResult, run_shielded
from backend.src.services.chat.store import MessagePage

router = APIRouter(prefix="/chat")


# ==========================================
# HELPERS
# ==========================================

def page_out(page: MessagePage) -> MessagePageOut:
    return MessagePageOut(
        items=[ChatMessageOut.model_validate(m) for m in page.items],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
        total=page.total,
        limit=page.limit,
    )


def turn_out(result: TurnResult) -> TurnResponse:
    return TurnResponse(
        user_message=ChatMessageOut.model_validate(result.user_message),
        assistant_message=ChatMessageOut.model_validate(result.assistant_message),
        token_usage=TokenUsageOut(**result.token_usage),
        error=TurnError(**result.error) if result.error else None,
    )


async def idempotent(
    services: ChatServices,
    request: Request,
    key: str,
    user: User,
    request_body: Any,
    handler: Callable[[], Awaitable[Tuple[int, Any]]],
) -> JSONResponse:
    """
    Run `handler` at most once per Idempotency-Key.
    Shielded so a client disconnect still lets the result be stored for replay.
    """
    result = await run_shielded(
        services.idempotency.run(key, user.id, request.url.path, jsonable_encoder(request_body), handler)
    )
    headers = {"Idempotent-Replayed": "true"} if result.replayed else None
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)


# ==========================================
# MUTATING ROUTES (Idempotency-Key required)
# ==========================================

@router.post("/start", response_model=StartChatResponse)
async def start_chat(
    body: StartChatRequest,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        result = await services.orchestrator.start_or_resume(
            user.id, body.subject_id, body.context_type.value, body.context_id, body.context_data
        )
        payload = StartChatResponse(
            session=ChatSessionOut.model_validate(result.session),
            messages=page_out(result.page),
            is_new=result.is_new,
        )
        return (201 if result.is_new else 200), jsonable_encoder(payload)

    return await idempotent(services, request, key, user, body, handler)


@router.post("/{session_id}/message", response_model=TurnResponse)
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        result = await services.orchestrator.send_message(session_id, user.id, body.message)
        return 200, jsonable_encoder(turn_out(result))

    return await idempotent(services, request, key, user, body, handler)


@router.post("/{session_id}/retry", response_model=TurnResponse)
async def retry_message(
    session_id: str,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        result = await services.orchestrator.retry_last_message(session_id, user.id)
        return 200, jsonable_encoder(turn_out(result))

    return await idempotent(services, request, key, user, None, handler)


@router.patch("/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: str,
    body: UpdateSessionRequest,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        session = await services.orchestrator.rename_session(session_id, user.id, body.title)
        return 200, jsonable_encoder(SessionResponse(session=ChatSessionOut.model_validate(session)))

    return await idempotent(services, request, key, user, body, handler)


@router.put("/{session_id}/archive", response_model=SessionResponse)
async def archive_session(
    session_id: str,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        session = await services.orchestrator.archive_session(session_id, user.id)
        return 200, jsonable_encoder(SessionResponse(session=ChatSessionOut.model_validate(session)))

    return await idempotent(services, request, key, user, None, handler)


@router.delete("/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(
    session_id: str,
    request: Request,
    key: str = Depends(require_idempotency_key),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    async def handler():
        deleted = await services.orchestrator.delete_session(session_id, user.id)
        return 200, jsonable_encoder(DeleteSessionResponse(session_id=session_id, deleted=deleted))

    return await idempotent(services, request, key, user, None, handler)


# ==========================================
# READ-ONLY ROUTES
# ==========================================

@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    subject_id: Optional[int] = None,
    context_type: Optional[ContextType] = None,
    status: str = Query(SessionStatus.ACTIVE.value, description="active, archived or all"),
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    if status not in ("all", SessionStatus.ACTIVE.value, SessionStatus.ARCHIVED.value):
        raise ValidationError("status must be one of: active, archived, all")
    sessions = await services.orchestrator.list_sessions(
        user.id,
        subject_id=subject_id,
        context_type=context_type.value if context_type else None,
        status=None if status == "all" else status,
    )
    return SessionListResponse(sessions=[ChatSessionOut.model_validate(s) for s in sessions])


@router.get("/{session_id}/messages", response_model=MessagePageOut)
async def get_messages(
    session_id: str,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    user: User = Depends(get_current_user),
    services: ChatServices = Depends(get_chat_services),
):
    page = await services.orchestrator.list_messages(session_id, user.id, limit, cursor)
    return page_out(page)
