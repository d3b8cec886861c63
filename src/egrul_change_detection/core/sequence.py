"""Per-entity monotonic sequence allocation.

Sequence keys order the change events of one entity. Allocation for the same
entity id is serialized by a lock owned by that id; different ids never
contend on anything but the short registry lock that hands out per-id locks.

The allocator only holds entities that are in flight. The snapshot store's
last_sequence is the durable counter: an entity is seeded from it with
observe() before events are built and released once its cycle is settled,
so the next cycle starts again from what was actually stored.
"""

from __future__ import annotations

import threading
import weakref


class SequenceAllocator:
    """Hands out strictly increasing sequence keys per entity id.

    Keys start at 1. Per-id locks live in a WeakValueDictionary and disappear
    once no thread is using them; counters are dropped by release().
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._last: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._last)

    def _lock_for(self, entity_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    def observe(self, entity_id: str, last_sequence: int) -> None:
        """Raise the last known key of an entity; never lowers it.

        Args:
            entity_id: OGRN / OGRNIP.
            last_sequence: Highest key already persisted for the entity.
        """
        with self._lock_for(entity_id):
            if last_sequence > self._last.get(entity_id, 0):
                self._last[entity_id] = last_sequence

    def allocate(self, entity_id: str, count: int = 1) -> list[int]:
        """Reserve `count` contiguous keys for an entity.

        Args:
            entity_id: OGRN / OGRNIP.
            count: Number of keys to reserve.

        Returns:
            The reserved keys in ascending order.

        Raises:
            ValueError: If count is negative.
        """
        if count < 0:
            raise ValueError("count must not be negative")
        with self._lock_for(entity_id):
            start = self._last.get(entity_id, 0) + 1
            keys = list(range(start, start + count))
            if keys:
                self._last[entity_id] = keys[-1]
            return keys

    def release(self, entity_id: str) -> None:
        """Forget an entity; the next observe() re-seeds it from the store.

        Keys handed out but never stored are given out again after a
        release, so a retried delta gets the key of its first attempt.
        """
        with self._lock_for(entity_id):
            self._last.pop(entity_id, None)

    def current(self, entity_id: str) -> int:
        """Return the last key handed out (or observed) for an entity, 0 if none."""
        with self._lock_for(entity_id):
            return self._last.get(entity_id, 0)
