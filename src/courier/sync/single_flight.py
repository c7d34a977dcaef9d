"""Process-wide registry enforcing one in-flight run per resource."""

from __future__ import annotations

import threading
import uuid

from courier.sync.models import ResourceKey


class RunRegistry:
    """Lock-protected map of ``ResourceKey -> run id`` with CAS insert.

    ``try_acquire`` only inserts when the key is free, and ``release`` only
    removes the entry when the caller still owns it, so a stale release can
    never free a slot taken by a later run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[ResourceKey, uuid.UUID] = {}

    def try_acquire(self, key: ResourceKey, run_id: uuid.UUID) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active[key] = run_id
            return True

    def release(self, key: ResourceKey, run_id: uuid.UUID) -> bool:
        with self._lock:
            if self._active.get(key) != run_id:
                return False
            del self._active[key]
            return True

    def active_run(self, key: ResourceKey) -> uuid.UUID | None:
        with self._lock:
            return self._active.get(key)

    def is_active(self, key: ResourceKey) -> bool:
        return self.active_run(key) is not None

    def snapshot(self) -> dict[ResourceKey, uuid.UUID]:
        with self._lock:
            return dict(self._active)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
