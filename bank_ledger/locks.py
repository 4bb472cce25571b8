"""
Entity Lock Module

Exclusive per-entity locks keyed by account number, loan id, DPS number or
transaction reference. Every operation acquires its whole lock set up front
in one fixed total order:

    reference  <  loan / DPS entity  <  account

and ascending by identifier within a rank. Two operations can therefore
never wait on each other in a cycle, e.g. opposite-direction transfers or a
loan repayment racing a transfer from the paying account.
"""

import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from .errors import LockTimeout


RANK_REFERENCE = 0
RANK_ENTITY = 1
RANK_ACCOUNT = 2


@dataclass(frozen=True, order=True)
class LockKey:
    """Orderable lock identifier"""
    rank: int
    name: str

    @classmethod
    def reference(cls, reference_number: str) -> 'LockKey':
        return cls(RANK_REFERENCE, f"ref:{reference_number}")

    @classmethod
    def loan(cls, loan_id: str) -> 'LockKey':
        return cls(RANK_ENTITY, f"loan:{loan_id}")

    @classmethod
    def dps(cls, dps_number: str) -> 'LockKey':
        return cls(RANK_ENTITY, f"dps:{dps_number}")

    @classmethod
    def account(cls, account_number: str) -> 'LockKey':
        return cls(RANK_ACCOUNT, f"account:{account_number}")


class _Slot:
    """A key's lock and the number of acquire calls holding or waiting on it"""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LockManager:
    """
    In-process registry of reentrant locks, one per entity key

    A key's lock exists only while some thread holds or waits on it, so
    one-off keys such as idempotency references do not accumulate.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._slots: Dict[LockKey, _Slot] = {}
        self._registry_lock = threading.Lock()
        self._local = threading.local()

    def _checkout(self, key: LockKey) -> threading.RLock:
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot()
                self._slots[key] = slot
            slot.users += 1
            return slot.lock

    def _checkin(self, key: LockKey) -> None:
        with self._registry_lock:
            slot = self._slots[key]
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    def lock_count(self) -> int:
        """Number of keys currently held or waited on"""
        with self._registry_lock:
            return len(self._slots)

    def _held(self) -> Counter:
        held = getattr(self._local, 'held', None)
        if held is None:
            held = Counter()
            self._local.held = held
        return held

    def is_held(self, key: LockKey) -> bool:
        """Whether the calling thread currently holds the lock for key"""
        return self._held()[key] > 0

    @contextmanager
    def acquire(self, *keys: Optional[LockKey], timeout: Optional[float] = None) -> Iterator[None]:
        """
        Acquire every given lock in the global order, releasing in reverse

        Args:
            keys: Lock keys; None entries and duplicates are ignored
            timeout: Seconds to wait for the whole set (defaults to the manager timeout)

        Raises:
            LockTimeout: If any lock cannot be acquired before the deadline.
                Locks already taken by this call are released first.
        """
        if timeout is None:
            timeout = self.timeout_seconds

        ordered = sorted({key for key in keys if key is not None})
        deadline = time.monotonic() + timeout
        held = self._held()
        acquired = []

        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise LockTimeout(
                        f"Timed out after {timeout}s waiting for {key.name}",
                        details={"resource": key.name, "timeout_seconds": timeout}
                    )
                acquired.append((key, lock))
                held[key] += 1
            yield
        finally:
            for key, lock in reversed(acquired):
                held[key] -= 1
                if held[key] <= 0:
                    del held[key]
                lock.release()
                self._checkin(key)
