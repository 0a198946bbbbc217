"""
Serialization helpers for read-modify-write sequences.

Waitress serves requests from a thread pool, so two requests can touch the same
ledger chain, replacement case or sequence counter at once. ``serialized``
holds one in-process lock per logical key for the whole unit of work (up to and
including the commit). The database side is covered separately: customer rows
are locked ``FOR UPDATE`` on MySQL, status changes are conditional UPDATEs and
counters are incremented in SQL.
"""
import threading
import logging
from contextlib import contextmanager

from models import db

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Reference-counted map of key -> lock; entries disappear when unused."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks = {}

    def _checkout(self, key):
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key):
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys):
        # Keys are always taken in sorted order
        ordered = sorted(set(k for k in keys if k is not None))
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self):
        with self._mutex:
            return len(self._locks)


_registry = KeyedLockRegistry()


def serialized(*keys):
    return _registry.hold(*keys)


def ledger_key(customer_id, brand):
    return f'ledger:{customer_id}:{brand}'


def replacement_key(replacement_id):
    return f'replacement:{replacement_id}'


def sequence_key(name):
    return f'sequence:{name}'


@contextmanager
def atomic():
    """Commit the session on success, roll it back on any exception."""
    try:
        yield db.session
        db.session.commit()
    except BaseException:
        db.session.rollback()
        raise
