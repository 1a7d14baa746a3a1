"""
Per-key mutual exclusion for request handlers running on the threadpool.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

from errors import Timeout

logger = logging.getLogger(__name__)


class KeyedLock:
    """One lock per key; entries are dropped once no thread holds or waits on them"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=self.timeout):
                logger.warning("Timed out waiting for lock %s", key)
                raise Timeout("Timed out waiting for a concurrent request on this cart")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
