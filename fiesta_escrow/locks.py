"""
Keyed in-process locks for serializing work on one match or one provider intent.

SQLite ignores SELECT ... FOR UPDATE, so row locks alone cannot stop two
requests in the same process from interleaving a check-then-act that spans a
provider call. Match transitions and provider confirmations therefore also
take an asyncio.Lock keyed by the row they protect ("match:<id>",
"intent:<external id>" or "dispute:<id>") and commit before releasing it.
Different keys never contend.

Wallet balance changes do not need these locks: they are single conditional
UPDATE statements (see services/wallet_service.py).

Locks are reference counted and dropped once no coroutine holds or waits on
them, so the registry does not grow with the number of matches.

When several keys are needed they are acquired in sorted order, the same
deadlock-avoidance rule used for row locks.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class KeyedLock:
    """A registry of asyncio locks addressed by string key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, *keys: str):
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._waiters[key] += 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)

    def _release_ref(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] <= 0:
            del self._waiters[key]
            self._locks.pop(key, None)


def match_key(match_id) -> str:
    return f"match:{match_id}"


def intent_key(external_id: str) -> str:
    return f"intent:{external_id}"


def dispute_key(dispute_id) -> str:
    return f"dispute:{dispute_id}"


row_locks = KeyedLock()
