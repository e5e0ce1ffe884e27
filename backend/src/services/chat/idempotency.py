import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.src.core.errors import ConflictError, ValidationError
from backend.src.models.chat import ChatIdempotency, new_id
from backend.src.services.chat.store import utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[Tuple[int, Any]]]


class ClaimState(str, enum.Enum):
    CLAIMED = "claimed"    # we own the key, run the handler
    REPLAY = "replay"      # finished before, answer from the record
    UNCACHED = "uncached"  # store unavailable, run without protection


@dataclass
class IdempotentResult:
    status_code: int
    body: Any
    replayed: bool = False


class IdempotencyCache:
    """
    At-most-once execution of mutating requests, keyed by the client's
    Idempotency-Key.

    The key is claimed with an INSERT (unique primary key), so two concurrent
    requests with the same key cannot both run the handler. While the handler
    runs, the owner refreshes `heartbeat_at` on its claim; only a claim whose
    heartbeat stopped for `claim_timeout` (crashed worker) may be taken over.
    Completion and release match the owner's claim token, so a late owner never
    writes over someone else's claim.

    A 2xx result is written onto the claim and replayed verbatim afterwards.
    Anything else releases the claim so the client may retry with the same key.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl: timedelta = timedelta(hours=24),
        claim_timeout: timedelta = timedelta(seconds=120),
    ):
        self._session_factory = session_factory
        self.ttl = ttl
        self.claim_timeout = claim_timeout

    @property
    def heartbeat_interval(self) -> float:
        return self.claim_timeout.total_seconds() / 3

    async def run(
        self,
        key: str,
        user_id: int,
        endpoint: str,
        request_body: Any,
        handler: Handler,
    ) -> IdempotentResult:
        state, record, token = await self._claim(key, user_id, endpoint, request_body)

        if state is ClaimState.REPLAY:
            logger.info("[Idempotency] cache hit for key %s on %s", key, record.endpoint)
            return IdempotentResult(record.status_code, record.response_body, replayed=True)

        if state is ClaimState.UNCACHED:
            status_code, body = await handler()
            return IdempotentResult(status_code, body)

        try:
            status_code, body = await self._run_claimed(key, token, handler)
        except Exception:
            await self._release(key, token)
            raise

        if 200 <= status_code < 300:
            await self._complete(key, token, status_code, body)
        else:
            await self._release(key, token)
        return IdempotentResult(status_code, body)

    # ------------------- CLAIM LIFECYCLE -------------------

    def _is_dead(self, record: ChatIdempotency, now: datetime) -> bool:
        if record.created_at < now - self.ttl:
            return True
        if record.status_code is not None:
            return False
        last_seen = record.heartbeat_at or record.created_at
        return last_seen < now - self.claim_timeout

    async def _claim(self, key: str, user_id: int, endpoint: str, request_body: Any):
        try:
            for _ in range(3):
                now = utcnow()
                token = new_id()
                try:
                    async with self._session_factory() as db:
                        async with db.begin():
                            db.add(ChatIdempotency(
                                idempotency_key=key,
                                user_id=user_id,
                                endpoint=endpoint,
                                request_body=request_body,
                                claim_token=token,
                                heartbeat_at=now,
                                created_at=now,
                            ))
                    return ClaimState.CLAIMED, None, token
                except IntegrityError:
                    pass

                async with self._session_factory() as db:
                    record = await db.get(ChatIdempotency, key)
                if record is None:
                    continue  # removed between our insert and read
                if record.user_id != user_id:
                    raise ValidationError("Idempotency-Key has already been used for a different request")
                if self._is_dead(record, now):
                    logger.warning("[Idempotency] taking over abandoned key %s", key)
                    await self._drop(record)
                    continue
                if record.status_code is not None:
                    return ClaimState.REPLAY, record, None
                raise ConflictError("A request with this Idempotency-Key is still being processed")
            raise ConflictError("Could not claim Idempotency-Key, please retry")
        except SQLAlchemyError as exc:
            logger.warning("[Idempotency] store unavailable, continuing uncached: %s", exc)
            return ClaimState.UNCACHED, None, None

    async def _run_claimed(self, key: str, token: str, handler: Handler) -> Tuple[int, Any]:
        beat = asyncio.create_task(self._heartbeat(key, token))
        try:
            return await handler()
        finally:
            beat.cancel()
            with suppress(asyncio.CancelledError):
                await beat

    async def _heartbeat(self, key: str, token: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await db.execute(
                            update(ChatIdempotency)
                            .where(
                                ChatIdempotency.idempotency_key == key,
                                ChatIdempotency.claim_token == token,
                                ChatIdempotency.status_code.is_(None),
                            )
                            .values(heartbeat_at=utcnow())
                        )
            except SQLAlchemyError as exc:
                logger.warning("[Idempotency] heartbeat failed for key %s: %s", key, exc)

    async def _drop(self, record: ChatIdempotency) -> None:
        """Delete `record` only if nobody touched it since we read it."""
        heartbeat = (
            ChatIdempotency.heartbeat_at.is_(None)
            if record.heartbeat_at is None
            else ChatIdempotency.heartbeat_at == record.heartbeat_at
        )
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(
                    delete(ChatIdempotency).where(
                        ChatIdempotency.idempotency_key == record.idempotency_key,
                        ChatIdempotency.created_at == record.created_at,
                        heartbeat,
                    )
                )

    async def _complete(self, key: str, token: str, status_code: int, body: Any) -> None:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(ChatIdempotency)
                        .where(
                            ChatIdempotency.idempotency_key == key,
                            ChatIdempotency.claim_token == token,
                            ChatIdempotency.status_code.is_(None),
                        )
                        .values(status_code=status_code, response_body=body, completed_at=utcnow())
                    )
            if not result.rowcount:
                logger.warning("[Idempotency] claim on key %s was lost, response not stored", key)
        except SQLAlchemyError as exc:
            logger.warning("[Idempotency] could not store response for key %s: %s", key, exc)

    async def _release(self, key: str, token: str) -> None:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    await db.execute(
                        delete(ChatIdempotency).where(
                            ChatIdempotency.idempotency_key == key,
                            ChatIdempotency.claim_token == token,
                            ChatIdempotency.status_code.is_(None),
                        )
                    )
        except SQLAlchemyError as exc:
            logger.warning("[Idempotency] could not release key %s: %s", key, exc)

    async def lookup(self, key: str) -> Optional[ChatIdempotency]:
        async with self._session_factory() as db:
            return await db.get(ChatIdempotency, key)

    async def purge_expired(self) -> int:
        """Delete records past retention and claims whose owner stopped beating."""
        now = utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    delete(ChatIdempotency).where(
                        or_(
                            ChatIdempotency.created_at < now - self.ttl,
                            and_(
                                ChatIdempotency.status_code.is_(None),
                                func.coalesce(ChatIdempotency.heartbeat_at, ChatIdempotency.created_at)
                                < now - self.claim_timeout,
                            ),
                        )
                    )
                )
        removed = result.rowcount or 0
        if removed:
            logger.info("[Idempotency] purged %s expired record(s)", removed)
        return removed
