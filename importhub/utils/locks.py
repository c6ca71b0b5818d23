import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class KeyLockManager:
    """
    Hands out one lock per natural key so that match-then-persist for the same
    key is sequential inside this process. Rows sharing a key in one file, and
    concurrent jobs importing the same key, queue behind each other instead of
    racing on the unique constraint.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def get_lock(self, key: str) -> threading.Lock:
        """Get or create a lock for a specific key."""
        with self._global_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def acquire(self, key: str):
        """Context manager to acquire and release a key lock."""
        lock = self.get_lock(key)
        if not lock.acquire(blocking=False):
            logger.debug("Waiting for lock on key '%s'", key)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
