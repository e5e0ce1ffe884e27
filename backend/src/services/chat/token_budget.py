import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from backend.src.core.config import ChatConfig
from backend.src.core.errors import BudgetExceeded

TRUNCATION_MARKER = "\n\n[...context truncated due to length...]"


class TokenCounter:
    """
    Token estimator.

    `heuristic` (default) assumes ~4 characters per token and rounds up. For
    English prose on GPT-style tokenizers it usually lands within +/-15% of the
    real count. It is not exact, which is why the 2000-token response reserve
    is kept out of the budget. `tiktoken` gives exact counts for OpenAI models
    but needs the encoding files on first use.
    """
    CHARS_PER_TOKEN = 4

    def __init__(self, method: str = "heuristic", encoding_name: str = "cl100k_base"):
        self.method = method
        self._encoding = None
        if method == "tiktoken":
            import tiktoken
            self._encoding = tiktoken.get_encoding(encoding_name)
        elif method != "heuristic":
            raise ValueError(f"Unsupported token estimator: {method}")

    def count(self, text: Optional[str]) -> int:
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text))
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def truncate(self, text: str, max_tokens: int) -> str:
        """Keep the head of `text` so that it costs at most `max_tokens`."""
        if max_tokens <= 0 or not text:
            return ""
        if self.count(text) <= max_tokens:
            return text
        if self._encoding is not None:
            return self._encoding.decode(self._encoding.encode(text)[:max_tokens])
        return text[: max_tokens * self.CHARS_PER_TOKEN]


@dataclass
class BudgetAllocation:
    system: str
    context: str
    history: List[Dict[str, str]]
    user_message: str
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def total_used(self) -> int:
        return self.usage["total"]

    @property
    def remaining(self) -> int:
        return self.usage["remaining"]

    def to_messages(self) -> List[Dict[str, str]]:
        """Prompt in provider order: system (+context), history, new user turn."""
        system = self.system
        if self.context:
            system = f"{system}\n\n{self.context}" if system else self.context
        messages = [{"role": "system", "content": system}] if system else []
        messages.extend(self.history)
        messages.append({"role": "user", "content": self.user_message})
        return messages


class TokenBudgetAllocator:
    """
    Splits (ceiling - reserve) across the prompt segments.

    System text and the user message are fixed costs and are never cut. Context
    gets up to `context_share` of the available budget and is cut from the end.
    History gets up to `history_share`, capped at `max_history_messages`, and
    loses its oldest messages first. Whatever is left over stays unused.
    """

    def __init__(
        self,
        max_context_tokens: int = 6000,
        reserve_for_response: int = 2000,
        context_share: float = 0.35,
        history_share: float = 0.25,
        max_history_messages: int = 20,
        counter: Optional[TokenCounter] = None,
    ):
        if reserve_for_response >= max_context_tokens:
            raise ValueError("Response reserve must be smaller than the context ceiling")
        self.max_context_tokens = max_context_tokens
        self.reserve_for_response = reserve_for_response
        self.context_share = context_share
        self.history_share = history_share
        self.max_history_messages = max_history_messages
        self.counter = counter or TokenCounter()

    @classmethod
    def from_config(cls, config: ChatConfig) -> "TokenBudgetAllocator":
        return cls(
            max_context_tokens=config.max_context_tokens,
            reserve_for_response=config.reserve_for_response,
            context_share=config.context_share,
            history_share=config.history_share,
            max_history_messages=config.max_history_messages,
            counter=TokenCounter(config.token_estimator),
        )

    @property
    def available(self) -> int:
        return self.max_context_tokens - self.reserve_for_response

    def allocate(
        self,
        system_text: str,
        context_text: str,
        history: List[Dict[str, str]],
        user_message: str,
    ) -> BudgetAllocation:
        budget = self.available
        system_tokens = self.counter.count(system_text)
        user_tokens = self.counter.count(user_message)

        if user_tokens > budget:
            raise BudgetExceeded(
                f"Message needs ~{user_tokens} tokens but only {budget} are available",
                details={"user_message_tokens": user_tokens, "budget": budget},
            )
        fixed = system_tokens + user_tokens
        if fixed > budget:
            raise BudgetExceeded(
                f"System prompt + message exceed the budget: {fixed} > {budget}",
                details={"system_tokens": system_tokens, "user_message_tokens": user_tokens, "budget": budget},
            )

        free = budget - fixed
        context_cap = min(math.floor(budget * self.context_share), free)
        context = self._fit_context(context_text, context_cap)
        context_tokens = self.counter.count(context)

        history_cap = min(math.floor(budget * self.history_share), free - context_tokens)
        kept_history, history_tokens = self._fit_history(history, history_cap)

        total = fixed + context_tokens + history_tokens
        return BudgetAllocation(
            system=system_text,
            context=context,
            history=kept_history,
            user_message=user_message,
            usage={
                "system": system_tokens,
                "context": context_tokens,
                "history": history_tokens,
                "user_message": user_tokens,
                "total": total,
                "budget": budget,
                "remaining": budget - total,
            },
        )

    def _fit_context(self, text: str, max_tokens: int) -> str:
        if not text or max_tokens <= 0:
            return ""
        if self.counter.count(text) <= max_tokens:
            return text
        marker_tokens = self.counter.count(TRUNCATION_MARKER)
        if max_tokens <= marker_tokens:
            return self.counter.truncate(text, max_tokens)
        head = self.counter.truncate(text, max_tokens - marker_tokens)
        return head + TRUNCATION_MARKER

    def _fit_history(self, history: List[Dict[str, str]], max_tokens: int):
        """Newest-first walk; stops at the first message that no longer fits."""
        window = history[-self.max_history_messages:] if self.max_history_messages > 0 else []
        kept: List[Dict[str, str]] = []
        used = 0
        for message in reversed(window):
            cost = self.counter.count(message["content"])
            if used + cost > max_tokens:
                break
            kept.append({"role": message["role"], "content": message["content"]})
            used += cost
        kept.reverse()
        return kept, used
