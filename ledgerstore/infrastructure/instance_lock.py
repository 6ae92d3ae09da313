"""Process-level single-instance guard around the store directory."""
from __future__ import annotations

import logging
from typing import Optional

from PyQt5.QtCore import QLockFile


class InstanceLock:
    """Wrap ``QLockFile`` so only one process opens the store at a time."""

    def __init__(self, path, *, stale_after_ms: int = 30_000, logger: Optional[logging.Logger] = None) -> None:
        self.path = str(path)
        self._logger = logger or logging.getLogger(__name__)
        self._lock = QLockFile(self.path)
        self._lock.setStaleLockTime(stale_after_ms)

    def try_acquire(self, timeout_ms: int = 0) -> bool:
        """Return True when this process now owns the lock."""
        if self._lock.tryLock(timeout_ms):
            self._logger.debug("Acquired instance lock %s", self.path)
            return True
        if self._lock.removeStaleLockFile() and self._lock.tryLock(timeout_ms):
            self._logger.warning("Removed stale instance lock %s", self.path)
            return True
        self._logger.info("Instance lock %s is held by another process", self.path)
        return False

    def is_held(self) -> bool:
        return bool(self._lock.isLocked())

    def release(self) -> None:
        if self._lock.isLocked():
            self._lock.unlock()
            self._logger.debug("Released instance lock %s", self.path)
