"""Per-request lock registry.

Each request id gets a reader/writer lock:

- shared mode is held while a decision is written to the ledger, so
  different approvers can record decisions on the same request in
  parallel, but never while a transition is in flight;
- exclusive mode is held for evaluate-and-transition, so exactly one
  caller moves a request at a time.

Locks for different request ids are independent. Entries are dropped
from the registry once no thread holds or waits on them.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Writer-preferring reader/writer lock built on a Condition."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_shared(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._writer or self._writers_waiting:
                if not self._wait(deadline):
                    return False
            self._readers += 1
            return True

    def release_shared(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_exclusive(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    if not self._wait(deadline):
                        return False
                self._writer = True
                return True
            finally:
                self._writers_waiting -= 1
                if not self._writer:
                    self._cond.notify_all()

    def release_exclusive(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def _wait(self, deadline: Optional[float]) -> bool:
        if deadline is None:
            self._cond.wait()
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        self._cond.wait(remaining)
        return True


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = ReadWriteLock()
        self.users = 0


class RequestLockRegistry:
    """Lock registry keyed by approval request id."""

    def __init__(self, timeout_seconds: Optional[float] = 10.0) -> None:
        self._timeout = timeout_seconds
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    @property
    def active_count(self) -> int:
        """Number of request ids currently held or awaited."""
        with self._registry_lock:
            return len(self._entries)

    @contextmanager
    def shared(self, request_id: str) -> Iterator[None]:
        entry = self._checkout(request_id)
        try:
            if not entry.lock.acquire_shared(self._timeout):
                raise LockTimeoutError(
                    f"Timed out waiting for shared lock on request {request_id}"
                )
            try:
                yield
            finally:
                entry.lock.release_shared()
        finally:
            self._checkin(request_id, entry)

    @contextmanager
    def exclusive(self, request_id: str) -> Iterator[None]:
        entry = self._checkout(request_id)
        try:
            if not entry.lock.acquire_exclusive(self._timeout):
                logger.warning("Lock timeout on request %s", request_id)
                raise LockTimeoutError(
                    f"Timed out waiting for exclusive lock on request {request_id}"
                )
            try:
                yield
            finally:
                entry.lock.release_exclusive()
        finally:
            self._checkin(request_id, entry)

    def _checkout(self, request_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(request_id)
            if entry is None:
                entry = _Entry()
                self._entries[request_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, request_id: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(request_id, None)
