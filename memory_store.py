import copy
import itertools
import threading
from contextlib import contextmanager
from typing import Any, Hashable, List, Optional, Tuple

from config import get_settings
from errors import ConcurrentBalanceUpdateConflict


class MemoryStore:
    """
    in-process stand-in for the document store, used by the in-memory engines.

    tables are plain dicts:
      creators:           creator_id -> {"creator_id", "username"}
      referral_codes:     code -> referral code record
      creator_network:    creator_id -> membership (insertion order = join order)
      transactions:       transaction_id -> ledger entry
      creator_financials: creator_id -> balance snapshot
      payment_events:     event_id -> processed event marker

    transaction() is the unit of work: one lock serializes writers, and every
    row a writer is about to change is recorded with touch() first, so a body
    that raises leaves the tables as they were. a payment event is therefore
    applied completely or not at all.
    """

    TABLES = (
        "creators",
        "referral_codes",
        "creator_network",
        "transactions",
        "creator_financials",
        "payment_events",
    )

    def __init__(self, lock_timeout: Optional[float] = None):
        for name in self.TABLES:
            setattr(self, name, {})
        if lock_timeout is None:
            lock_timeout = get_settings().lock_timeout_seconds
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        # (table, key, existed, previous row) per touched row, oldest first
        self._undo: Optional[List[Tuple[str, Hashable, bool, Any]]] = None
        self._seq = itertools.count(1)

    def next_seq(self) -> int:
        return next(self._seq)

    def _acquire(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrentBalanceUpdateConflict(
                f"could not acquire store lock within {self.lock_timeout}s"
            )

    def touch(self, table: str, key: Hashable) -> None:
        """
        remember the current state of one row before it is written.
        no-op outside a transaction.
        """
        if self._undo is None:
            return
        rows = getattr(self, table)
        existed = key in rows
        previous = copy.deepcopy(rows[key]) if existed else None
        self._undo.append((table, key, existed, previous))

    def _rollback(self, undo: List[Tuple[str, Hashable, bool, Any]]) -> None:
        for table, key, existed, previous in reversed(undo):
            rows = getattr(self, table)
            if existed:
                rows[key] = previous
            else:
                rows.pop(key, None)

    @contextmanager
    def transaction(self):
        self._acquire()
        try:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            try:
                yield self
            except BaseException:
                if outermost:
                    self._rollback(self._undo)
                raise
            finally:
                if outermost:
                    self._undo = None
        finally:
            self._lock.release()

    @contextmanager
    def locked(self):
        """read access under the same lock (no undo log)."""
        self._acquire()
        try:
            yield self
        finally:
            self._lock.release()
