import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class SessionLocks:
    """
    One asyncio.Lock per chat session, created on demand and dropped when the
    last holder/waiter leaves. Different sessions never share a lock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if self._users[session_id] == 0:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)
