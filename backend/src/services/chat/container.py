from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.src.core.config import ChatConfig
from backend.src.services.chat.access import ChatAccessGuard
from backend.src.services.chat.idempotency import IdempotencyCache
from backend.src.services.chat.orchestrator import ChatOrchestrator
from backend.src.services.chat.store import ConversationStore
from backend.src.services.chat.token_budget import TokenBudgetAllocator
from backend.src.services.llm.base import ChatProvider
from backend.src.services.llm.factory import get_llm_provider


@dataclass
class ChatServices:
    """Everything the chat routes need, wired once at startup."""
    config: ChatConfig
    session_factory: async_sessionmaker
    orchestrator: ChatOrchestrator
    idempotency: IdempotencyCache


def build_chat_services(
    config: ChatConfig,
    session_factory: async_sessionmaker,
    provider: Optional[ChatProvider] = None,
    allocator: Optional[TokenBudgetAllocator] = None,
) -> ChatServices:
    # Provider construction fails fast on bad configuration
    provider = provider or get_llm_provider(config)
    orchestrator = ChatOrchestrator(
        store=ConversationStore(session_factory),
        provider=provider,
        allocator=allocator or TokenBudgetAllocator.from_config(config),
        access=ChatAccessGuard(session_factory),
        config=config,
    )
    idempotency = IdempotencyCache(
        session_factory,
        ttl=timedelta(hours=config.idempotency_ttl_hours),
        claim_timeout=timedelta(seconds=config.idempotency_claim_timeout),
    )
    return ChatServices(
        config=config,
        session_factory=session_factory,
        orchestrator=orchestrator,
        idempotency=idempotency,
    )
