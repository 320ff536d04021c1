"""
Build lock shared by every imagetool process using the same state directory.
"""
import asyncio
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional, TextIO


class BuildLockManager:
    """
    Serializes build invocations with an exclusive flock on
    ``<state_dir>/.build.lock``.

    Pipelines inside one invocation still build concurrently; the lock only
    keeps two invocations from writing build records at the same time.
    """

    def __init__(self, state_dir: Path, timeout: int = 30, poll_interval: float = 0.5):
        self.state_dir = Path(state_dir)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.lock_file_path = self.state_dir / ".build.lock"
        self._handle: Optional[TextIO] = None
        self.logger = logging.getLogger(__name__)

        self.state_dir.mkdir(parents=True, exist_ok=True)

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False

    def _try_lock(self) -> bool:
        handle = open(self.lock_file_path, 'a+')
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    async def acquire(self):
        """
        Acquire the build lock, polling until the timeout expires.

        Raises:
            TimeoutError: If the lock is still held after ``timeout`` seconds
        """
        if self._handle is not None:
            raise RuntimeError("Build lock is already held by this manager")

        deadline = time.monotonic() + self.timeout
        self.logger.debug(f"Acquiring build lock {self.lock_file_path}")

        while not self._try_lock():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.error(f"Failed to acquire build lock after {self.timeout}s")
                raise TimeoutError(
                    f"Could not acquire build lock within {self.timeout}s. "
                    f"Another build may be running (lock file {self.lock_file_path})."
                )
            self.logger.debug(f"Build lock busy, retrying ({remaining:.1f}s left)")
            await asyncio.sleep(min(self.poll_interval, remaining))

        self.logger.info("Build lock acquired")

    async def release(self):
        if self._handle is None:
            return

        handle, self._handle = self._handle, None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        self.logger.info("Build lock released")
