import logging
import threading
from contextlib import contextmanager
from typing import Generator

logger = logging.getLogger(__name__)


class RepositoryLocks:
    """
    One mutex per repository key, so upserts for the same repository run one at a
    time while different repositories proceed in parallel.
    """

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, repo_full_name: str, timeout: float = -1) -> Generator[bool, None, None]:
        """
        Acquires the lock for a repository.

        Args:
            repo_full_name: "owner/name"; matched case-insensitively
            timeout: seconds to wait, -1 waits forever

        Yields:
            True once acquired. Raises TimeoutError when the wait runs out.
        """
        key = (repo_full_name or "").strip().lower()
        lock = self._lock_for(key)
        acquired = lock.acquire(timeout=timeout)
        if not acquired:
            logger.warning(f"Could not acquire lock for repo {key} after {timeout}s")
            raise TimeoutError(f"Timed out waiting for repository lock {key}")
        try:
            yield acquired
        finally:
            lock.release()
