# backend/src/models/chat.py
import enum
import uuid
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, text
from backend.src.db.base import Base


def new_id() -> str:
    return uuid.uuid4().hex


class ContextType(str, enum.Enum):
    VISIT = "visit"
    APPOINTMENT = "appointment"
    PRESCRIPTION = "prescription"
    LAB_REPORT = "lab_report"
    GENERAL = "general"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class MessageRole(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(Integer, index=True, nullable=False)
    subject_id = Column(Integer, index=True, nullable=False)  # family member

    context_type = Column(String, nullable=False, default=ContextType.GENERAL.value)
    context_id = Column(String, nullable=False, default="")  # "" = no specific record
    context_data = Column(JSON, default=dict)

    title = Column(String(200), nullable=False)
    status = Column(String, nullable=False, default=SessionStatus.ACTIVE.value, index=True)

    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        # One ACTIVE chat per (user, subject, context)
        Index(
            "uq_chat_sessions_active_context",
            "user_id", "subject_id", "context_type", "context_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_chat_sessions_user_status", "user_id", "status"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(32), primary_key=True, default=new_id)
    session_id = Column(String(32), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, index=True, nullable=False)  # denormalised for rate limiting

    role = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")

    # provider, model, latency_ms, tokens{prompt,completion,total}, error_code, error, attempts
    meta = Column(JSON, nullable=True)
    error_code = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_chat_messages_session_created", "session_id", "created_at", "id"),
        Index("ix_chat_messages_user_role_created", "user_id", "role", "created_at"),
    )


class ChatIdempotency(Base):
    __tablename__ = "chat_idempotency"

    idempotency_key = Column(String(255), primary_key=True)
    user_id = Column(Integer, index=True, nullable=False)
    endpoint = Column(String, nullable=False)
    request_body = Column(JSON, nullable=True)

    # NULL until the wrapped handler finishes with a 2xx
    status_code = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)

    # Owner of an in-flight claim; refreshed via heartbeat_at while the handler runs
    claim_token = Column(String(32), nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
