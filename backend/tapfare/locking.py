"""Per-key mutual exclusion for card and user scoped operations.

Tap-in, tap-out and the sweep each run a check-then-mutate sequence that
must not interleave with another request for the same card or user. Locks
are keyed by strings such as ``card:<number>`` and ``user:<id>`` and are
always taken in the order given by the caller (card before user), so two
operations can never wait on each other.

These locks only serialize threads within one process. Across processes
the database enforces the same rules: a partial unique index allows one
IN_PROGRESS journey per card, and the card and user rows are read with
``SELECT ... FOR UPDATE`` on databases that support row locks.

A key's lock lives only while someone holds or waits for it, so the
registry does not grow with the number of cards and users seen.
"""

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator

import structlog

logger = structlog.get_logger(__name__)


def card_key(card_number: str) -> str:
    return f"card:{card_number}"


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class KeyedLocks:
    """A registry of re-entrant locks, reference counted per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def _held(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                logger.debug("lock_acquired", key=key)
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold every lock in ``keys`` for the duration of the block.

        Locks are acquired in argument order and released in reverse on every
        exit path.
        """
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._held(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
