from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.src.models.chat import ContextType, SessionStatus
from backend.src.services.llm.base import ProviderMeta


# --- Requests ---

class StartChatRequest(BaseModel):
    subject_id: int = Field(..., description="Family member the chat is about")
    context_type: ContextType = ContextType.GENERAL
    context_id: Optional[str] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)


class SendMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)


class UpdateSessionRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


# --- Responses ---

class ChatMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: str
    content: str
    meta: Optional[ProviderMeta] = None
    created_at: datetime


class ChatSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subject_id: int
    context_type: ContextType
    context_id: Optional[str] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)
    title: str
    status: SessionStatus
    message_count: int
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("context_id", mode="before")
    @classmethod
    def empty_context_id(cls, v):
        return v or None

    @field_validator("context_data", mode="before")
    @classmethod
    def none_context_data(cls, v):
        return v or {}


class MessagePageOut(BaseModel):
    items: List[ChatMessageOut]
    next_cursor: Optional[str] = None
    has_more: bool
    total: int
    limit: int


class StartChatResponse(BaseModel):
    session: ChatSessionOut
    messages: MessagePageOut
    is_new: bool


class TokenUsageOut(BaseModel):
    system: int
    context: int
    history: int
    user_message: int
    total: int
    budget: int
    remaining: int


class TurnError(BaseModel):
    code: Optional[str] = None
    message: str
    retryable: bool = True


class TurnResponse(BaseModel):
    user_message: ChatMessageOut
    assistant_message: ChatMessageOut
    token_usage: TokenUsageOut
    error: Optional[TurnError] = None


class SessionResponse(BaseModel):
    session: ChatSessionOut


class SessionListResponse(BaseModel):
    sessions: List[ChatSessionOut]


class DeleteSessionResponse(BaseModel):
    session_id: str
    deleted: bool
