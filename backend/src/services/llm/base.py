import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import openai
from pydantic import BaseModel

from backend.src.core.errors import ProviderError
from backend.src.services.llm.retry import RetryPolicy

logger = logging.getLogger(__name__)


# ==========================================
# NORMALISED RESPONSE SHAPE
# ==========================================

class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0


class ProviderMeta(BaseModel):
    provider: str
    model: str
    latency_ms: int = 0
    tokens: TokenUsage = TokenUsage()
    attempts: int = 1
    error_code: Optional[str] = None
    error: Optional[str] = None


class ProviderResponse(BaseModel):
    content: Optional[str] = None
    meta: ProviderMeta

    @property
    def ok(self) -> bool:
        return self.meta.error_code is None


@dataclass
class Completion:
    """What one successful attempt hands back to the gateway."""
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


# ==========================================
# ERROR CLASSIFICATION
# ==========================================

TIMEOUT_ERRORS = (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, openai.APITimeoutError)
NETWORK_ERRORS = (httpx.TransportError, openai.APIConnectionError, ConnectionError)


def _status_of(exc: BaseException) -> Optional[int]:
    """Dig an HTTP status out of whatever the SDK raised (or what it wraps)."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("status_code", "status", "code"):
            value = getattr(current, attr, None)
            if isinstance(value, int) and 100 <= value < 600:
                return value
        response = getattr(current, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
        current = current.__cause__ or current.__context__
    return None


def classify_error(exc: Exception) -> ProviderError:
    """
    Timeouts, network failures, 5xx and 429 are retryable.
    Everything else (bad request, auth, content policy) is terminal.
    """
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, TIMEOUT_ERRORS):
        return ProviderError(f"Provider timed out: {exc}", retryable=True, error_code="TIMEOUT")
    if isinstance(exc, NETWORK_ERRORS):
        return ProviderError(f"Cannot reach provider: {exc}", retryable=True, error_code="NETWORK_ERROR")

    status = _status_of(exc)
    message = str(exc) or exc.__class__.__name__
    if status == 429:
        return ProviderError(message, status=status, retryable=True, error_code="RATE_LIMITED")
    if status is not None and status >= 500:
        return ProviderError(message, status=status, retryable=True, error_code="PROVIDER_UNAVAILABLE")
    if status in (401, 403):
        return ProviderError(message, status=status, error_code="PROVIDER_AUTH_FAILED")
    if status is not None and "content" in message.lower() and ("policy" in message.lower() or "filter" in message.lower()):
        return ProviderError(message, status=status, error_code="CONTENT_REJECTED")
    if status is not None and 400 <= status < 500:
        return ProviderError(message, status=status, error_code="PROVIDER_BAD_REQUEST")
    return ProviderError(message, status=status, error_code="PROVIDER_ERROR")


# ==========================================
# THE CAPABILITY INTERFACE
# ==========================================

class ChatProvider(ABC):
    """
    One remote language model behind `chat(messages, options)`.

    Subclasses implement a single raw attempt (`_complete`). Retries, the turn
    deadline and normalisation live here, and `chat` never raises: failures come
    back as a response with `content=None` and `meta.error_code` set.
    """
    name = "base"
    default_model = ""

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1500,
        request_timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        turn_timeout: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.turn_timeout = turn_timeout
        self._sleep = sleep

    @abstractmethod
    async def _complete(self, messages: List[Dict[str, str]], options: Dict[str, Any]) -> Completion:
        """Make exactly one call to the backend. Raise on any failure."""

    async def chat(self, messages: List[Dict[str, str]], options: Optional[Dict[str, Any]] = None) -> ProviderResponse:
        options = dict(options or {})
        model = options.get("model") or self.model
        started = time.perf_counter()
        attempts = 0

        async def attempt() -> Completion:
            nonlocal attempts
            attempts += 1
            try:
                return await self._complete(messages, options)
            except Exception as exc:
                raise classify_error(exc) from exc

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        run = self.retry_policy.run(attempt, lambda err: getattr(err, "retryable", False), sleep=self._sleep)
        try:
            if self.turn_timeout:
                completion = await asyncio.wait_for(run, timeout=self.turn_timeout)
            else:
                completion = await run
        except ProviderError as exc:
            logger.warning("[%s] call failed after %s attempt(s): %s (%s)", self.name, attempts, exc.code, exc.message)
            return self._failure(model, elapsed_ms(), attempts, exc.code, exc.message)
        except asyncio.TimeoutError:
            logger.warning("[%s] turn deadline of %ss hit after %s attempt(s)", self.name, self.turn_timeout, attempts)
            return self._failure(model, elapsed_ms(), attempts, "TIMEOUT", "Provider did not answer in time")
        except Exception as exc:
            logger.exception("[%s] unexpected provider failure", self.name)
            return self._failure(model, elapsed_ms(), attempts, "PROVIDER_ERROR", str(exc))

        return ProviderResponse(
            content=completion.content,
            meta=ProviderMeta(
                provider=self.name,
                model=completion.model or model,
                latency_ms=elapsed_ms(),
                tokens=TokenUsage(
                    prompt=completion.prompt_tokens,
                    completion=completion.completion_tokens,
                    total=completion.total_tokens or completion.prompt_tokens + completion.completion_tokens,
                ),
                attempts=attempts,
            ),
        )

    def _failure(self, model: str, latency_ms: int, attempts: int, code: str, message: str) -> ProviderResponse:
        return ProviderResponse(
            content=None,
            meta=ProviderMeta(
                provider=self.name,
                model=model,
                latency_ms=latency_ms,
                attempts=attempts,
                error_code=code,
                error=message,
            ),
        )
