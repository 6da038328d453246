"""Per-account mutual exclusion for wallet mutators."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
from weakref import WeakValueDictionary


_account_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()


def _lock_for(user_id: str) -> asyncio.Lock:
    lock = _account_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _account_locks[user_id] = lock
    return lock


@asynccontextmanager
async def account_scope(user_id: str) -> AsyncIterator[None]:
    """Serialize check-then-act sequences for one account within this process.

    Cross-process exclusion comes from the wallet row lock taken with
    ``get_wallet(..., for_update=True)`` inside the scope.
    """
    lock = _lock_for(user_id)
    async with lock:
        yield


def clear_account_locks() -> None:
    _account_locks.clear()
