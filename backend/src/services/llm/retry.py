import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff around one attempt function.

    Attempting -> Done on success, Attempting -> Waiting -> Attempting while the
    predicate says the failure is retryable and retries are left, otherwise the
    last error is raised to the caller. Retry #n waits
    min(base_delay * multiplier ** (n - 1), max_delay).
    """
    retries: int = 3
    base_delay: float = 0.25
    max_delay: float = 5.0
    multiplier: float = 2.0

    async def run(
        self,
        attempt: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException], bool],
        *,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        def before_sleep(state: RetryCallState) -> None:
            delay = state.next_action.sleep
            exc = state.outcome.exception()
            logger.info("Retry %s/%s after %.2fs (%s)", state.attempt_number, self.retries, delay, exc)
            if on_retry is not None:
                on_retry(state.attempt_number, delay, exc)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay, exp_base=self.multiplier),
            retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and should_retry(exc)),
            before_sleep=before_sleep,
            sleep=sleep,
            reraise=True,
        )
        async for attempt_state in retrying:
            with attempt_state:
                return await attempt()
