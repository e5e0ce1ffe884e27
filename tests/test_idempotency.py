import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from backend.src.core.errors import ConflictError, NotFoundError, ValidationError
from backend.src.models.chat import ChatIdempotency
from backend.src.services.chat.idempotency import IdempotencyCache
from backend.src.services.chat.store import utcnow

from conftest import OTHER_ID, OWNER_ID


@pytest.fixture
def cache(session_factory):
    return IdempotencyCache(session_factory)


class CountingHandler:
    def __init__(self, status_code=200, body=None, error=None):
        self.calls = 0
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.status_code, self.body


async def test_second_call_replays_stored_response(cache):
    handler = CountingHandler(201, {"session": {"id": "abc"}})
    first = await cache.run("key-1", OWNER_ID, "/chat/start", {"subject_id": 10}, handler)
    second = await cache.run("key-1", OWNER_ID, "/chat/start", {"subject_id": 10}, handler)

    assert handler.calls == 1
    assert (first.status_code, first.body, first.replayed) == (201, {"session": {"id": "abc"}}, False)
    assert (second.status_code, second.body, second.replayed) == (201, {"session": {"id": "abc"}}, True)

    record = await cache.lookup("key-1")
    assert record.status_code == 201
    assert record.completed_at is not None


async def test_non_2xx_result_is_not_cached(cache):
    handler = CountingHandler(409, {"detail": "conflict"})
    await cache.run("key-2", OWNER_ID, "/x", None, handler)
    await cache.run("key-2", OWNER_ID, "/x", None, handler)
    assert handler.calls == 2
    assert await cache.lookup("key-2") is None


async def test_handler_error_releases_claim(cache):
    failing = CountingHandler(error=NotFoundError("gone"))
    with pytest.raises(NotFoundError):
        await cache.run("key-3", OWNER_ID, "/x", None, failing)
    assert await cache.lookup("key-3") is None

    ok = CountingHandler()
    result = await cache.run("key-3", OWNER_ID, "/x", None, ok)
    assert ok.calls == 1 and result.replayed is False


async def test_concurrent_duplicate_is_rejected_while_in_flight(cache):
    started = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    async def slow_handler():
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()
        return 200, {"done": True}

    first = asyncio.create_task(cache.run("key-4", OWNER_ID, "/x", None, slow_handler))
    await started.wait()

    with pytest.raises(ConflictError):
        await cache.run("key-4", OWNER_ID, "/x", None, slow_handler)

    release.set()
    result = await first
    assert result.body == {"done": True}
    assert calls == 1


async def test_key_belongs_to_one_user(cache):
    await cache.run("key-5", OWNER_ID, "/x", None, CountingHandler())
    with pytest.raises(ValidationError):
        await cache.run("key-5", OTHER_ID, "/x", None, CountingHandler())


async def test_expired_record_runs_again(session_factory):
    cache = IdempotencyCache(session_factory, ttl=timedelta(hours=24))
    async with session_factory() as db:
        async with db.begin():
            db.add(ChatIdempotency(
                idempotency_key="key-6",
                user_id=OWNER_ID,
                endpoint="/x",
                status_code=200,
                response_body={"old": True},
                created_at=utcnow() - timedelta(hours=25),
            ))

    handler = CountingHandler(200, {"new": True})
    result = await cache.run("key-6", OWNER_ID, "/x", None, handler)
    assert handler.calls == 1
    assert result.body == {"new": True}


async def test_stale_claim_is_taken_over(session_factory):
    cache = IdempotencyCache(session_factory, claim_timeout=timedelta(seconds=120))
    async with session_factory() as db:
        async with db.begin():
            db.add(ChatIdempotency(
                idempotency_key="key-7",
                user_id=OWNER_ID,
                endpoint="/x",
                created_at=utcnow() - timedelta(minutes=5),
            ))

    handler = CountingHandler()
    await cache.run("key-7", OWNER_ID, "/x", None, handler)
    assert handler.calls == 1


async def test_purge_expired(session_factory):
    cache = IdempotencyCache(session_factory)
    async with session_factory() as db:
        async with db.begin():
            db.add_all([
                ChatIdempotency(idempotency_key="old", user_id=OWNER_ID, endpoint="/x", status_code=200,
                                created_at=utcnow() - timedelta(days=2)),
                ChatIdempotency(idempotency_key="fresh", user_id=OWNER_ID, endpoint="/x", status_code=200,
                                created_at=utcnow()),
            ])
    assert await cache.purge_expired() == 1
    assert await cache.lookup("fresh") is not None


async def test_store_unavailable_runs_uncached(caplog):
    def broken_factory():
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    cache = IdempotencyCache(broken_factory)
    handler = CountingHandler()
    with caplog.at_level("WARNING"):
        first = await cache.run("key-8", OWNER_ID, "/x", None, handler)
        await cache.run("key-8", OWNER_ID, "/x", None, handler)

    assert first.status_code == 200
    assert handler.calls == 2
    assert "continuing uncached" in caplog.text


async def test_long_running_claim_is_not_taken_over(session_factory):
    cache = IdempotencyCache(session_factory, claim_timeout=timedelta(milliseconds=150))
    started = asyncio.Event()
    release = asyncio.Event()
    effects = []

    async def slow_handler():
        effects.append("message sent")
        started.set()
        await release.wait()
        return 200, {"done": True}

    first = asyncio.create_task(cache.run("slow-key", OWNER_ID, "/x", None, slow_handler))
    await started.wait()
    # well past claim_timeout; the owner is still alive and beating
    await asyncio.sleep(0.4)

    with pytest.raises(ConflictError):
        await cache.run("slow-key", OWNER_ID, "/x", None, slow_handler)

    release.set()
    result = await first
    assert result.body == {"done": True}
    assert effects == ["message sent"]
    assert (await cache.lookup("slow-key")).status_code == 200


async def test_late_owner_cannot_complete_someone_elses_claim(session_factory):
    cache = IdempotencyCache(session_factory)
    async with session_factory() as db:
        async with db.begin():
            db.add(ChatIdempotency(
                idempotency_key="key-9",
                user_id=OWNER_ID,
                endpoint="/x",
                claim_token="crashed-owner",
                heartbeat_at=utcnow() - timedelta(minutes=5),
                created_at=utcnow() - timedelta(minutes=5),
            ))

    await cache.run("key-9", OWNER_ID, "/x", None, CountingHandler(200, {"winner": True}))
    await cache._complete("key-9", "crashed-owner", 200, {"winner": False})
    await cache._release("key-9", "crashed-owner")

    record = await cache.lookup("key-9")
    assert record.response_body == {"winner": True}
    assert record.claim_token != "crashed-owner"
