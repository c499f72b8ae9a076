"""Per-user exclusivity for in-flight engine tasks."""

from __future__ import annotations

import logging
import threading
from typing import Protocol
from uuid import uuid4

from .store import GraphSnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_KIND = "graph"


class TaskRegistry(Protocol):
    def try_acquire(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        ...

    def release(self, user_id: str, kind: str = DEFAULT_KIND) -> None:
        ...

    def is_active(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        ...


class ActiveTaskRegistry:
    """Process-local registry of users with a task in flight."""

    def __init__(self) -> None:
        self._active: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def try_acquire(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        key = (user_id, kind)
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
        logger.debug("graph.registry.acquired user=%s kind=%s", user_id, kind)
        return True

    def release(self, user_id: str, kind: str = DEFAULT_KIND) -> None:
        """Free the slot; releasing an idle user is a no-op."""

        with self._lock:
            self._active.discard((user_id, kind))
        logger.debug("graph.registry.released user=%s kind=%s", user_id, kind)

    def is_active(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        with self._lock:
            return (user_id, kind) in self._active

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)


class LeaseTaskRegistry:
    """Registry backed by TTL'd lease rows in the shared graph store.

    Acquisition is a conditional write, so several server processes sharing
    the datastore never run overlapping tasks for the same user. An expired
    lease (crashed holder) can be taken over.
    """

    def __init__(
        self,
        store: GraphSnapshotStore,
        *,
        ttl_seconds: float = 7200.0,
        owner: str | None = None,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._owner = owner or uuid4().hex

    @property
    def owner(self) -> str:
        return self._owner

    def try_acquire(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        acquired = self._store.acquire_lease(user_id, kind, self._owner, self._ttl_seconds)
        if not acquired:
            logger.info("graph.registry.lease_busy user=%s kind=%s", user_id, kind)
        return acquired

    def release(self, user_id: str, kind: str = DEFAULT_KIND) -> None:
        self._store.release_lease(user_id, kind, self._owner)

    def is_active(self, user_id: str, kind: str = DEFAULT_KIND) -> bool:
        return self._store.has_lease(user_id, kind)
