from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class LoanLockRegistry:
    """One ``asyncio.Lock`` per loan id, shared by request handlers and the scheduler.

    Serialises ledger mutations for a loan inside this process; row locks in the
    store cover other processes. Locks are dropped once nobody holds a reference.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[Hashable, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, loan_id: Hashable) -> asyncio.Lock:
        key = str(loan_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, loan_id: Hashable) -> AsyncIterator[None]:
        lock = self._lock_for(loan_id)
        async with lock:
            yield

    def is_locked(self, loan_id: Hashable) -> bool:
        lock = self._locks.get(str(loan_id))
        return bool(lock and lock.locked())


loan_locks = LoanLockRegistry()
