"""
Per-account serialization points.

Each account id maps to one lock. Multi-account operations acquire their
locks in sorted id order so two transfers moving money in opposite
directions between the same accounts cannot deadlock. Every wait is bounded;
running out of time raises ContendedError.

A lock exists only while some caller holds or waits on it, so the registry
stays as small as the set of ids currently in use.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List, Tuple

from .errors import ContendedError
from .logging_config import get_logger

logger = get_logger("banking_ledger.locking")


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class AccountLocks:
    """Registry of per-account locks with bounded acquisition"""

    def __init__(self, timeout: float):
        if timeout <= 0:
            raise ValueError("Lock timeout must be positive")
        self.timeout = timeout
        self._locks: Dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, account_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = self._locks[account_id] = _LockEntry()
            entry.users += 1
            return entry.lock

    def _checkin(self, account_id: str) -> None:
        with self._guard:
            entry = self._locks[account_id]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_id]

    @contextmanager
    def hold(self, *account_ids: str):
        """
        Hold the locks of every given account for the duration of the block.

        Raises:
            ContendedError: If any lock is not acquired within the timeout
        """
        ordered = sorted(set(account_ids))
        acquired: List[Tuple[str, threading.Lock]] = []
        try:
            for account_id in ordered:
                lock = self._checkout(account_id)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(account_id)
                    logger.warning(f"Lock wait on account {account_id} exceeded {self.timeout}s")
                    raise ContendedError(
                        f"Account {account_id} is busy, retry the request",
                        {"account_id": account_id, "timeout_seconds": self.timeout}
                    )
                acquired.append((account_id, lock))
            yield
        finally:
            for account_id, lock in reversed(acquired):
                lock.release()
                self._checkin(account_id)
