"""Per-key serialization for read-then-write sections such as booking admission."""
from __future__ import annotations

import threading
import zlib
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator

from sqlalchemy import func
from sqlalchemy.orm import Session


class KeyedLocks:
    """Registry of process-local locks addressed by string keys.

    Several keys are always taken in sorted order so two callers asking for
    overlapping key sets cannot deadlock each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)


def advisory_key(key: str) -> int:
    """Stable signed 32-bit id for ``pg_advisory_xact_lock``."""

    value = zlib.crc32(key.encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


def acquire_advisory_locks(db: Session, *keys: str) -> None:
    """Take transaction-scoped PostgreSQL advisory locks; other dialects rely on KeyedLocks alone."""

    if db.get_bind().dialect.name != "postgresql":
        return
    for key in sorted(set(keys)):
        db.query(func.pg_advisory_xact_lock(advisory_key(key))).scalar()


admission_locks = KeyedLocks()
