"""File I/O primitives shared by the graph store and the agent registry.

Cross-process exclusion uses ``fcntl.flock`` on a sidecar ``.lock`` file.
Writes go to a temp file in the same directory and are renamed into place, so
readers never observe a partially written document.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from taskloom.constants import DEFAULT_LOCK_ATTEMPTS, DEFAULT_LOCK_RETRY_DELAY
from taskloom.exceptions import LockTimeoutError, StateError
from taskloom.logging import get_logger

logger = get_logger("state.persistence")

RENAME_ATTEMPTS = 3


class FileLock:
    """Reentrant exclusive lock on a file, acquired with bounded retries.

    Nested ``hold()`` calls from the same process reuse the outer lock; the
    file lock is released when the outermost context exits.
    """

    def __init__(
        self,
        path: str | Path,
        attempts: int = DEFAULT_LOCK_ATTEMPTS,
        retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ) -> None:
        self.path = Path(path)
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._fd: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._depth > 0

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the exclusive lock for the duration of the context.

        Raises:
            LockTimeoutError: If the lock is still contended after all attempts
        """
        with self._thread_lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._acquire()
            self._depth = 1
            try:
                yield
            finally:
                self._depth = 0
                self._release()

    def _acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.path, "a")  # noqa: SIM115
        for attempt in range(1, self.attempts + 1):
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except BlockingIOError:
                if attempt == self.attempts:
                    break
                time.sleep(self.retry_delay)
            except OSError:
                fd.close()
                raise
        fd.close()
        raise LockTimeoutError(
            f"Timed out waiting for lock {self.path}", str(self.path), self.attempts
        )

    def _release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"Lock release failed: {e}")
        fd.close()


def atomic_write(path: str | Path, content: str, mode: int | None = None) -> None:
    """Write ``content`` to ``path`` via temp file plus rename.

    The rename is retried a few times before surfacing a StateError.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_file = Path(temp_name)
    try:
        with open(temp_fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_file, mode)
        _replace_with_retries(temp_file, path)
    except BaseException:
        if temp_file.exists():
            temp_file.unlink()
        raise


def _replace_with_retries(source: Path, target: Path) -> None:
    for attempt in range(1, RENAME_ATTEMPTS + 1):
        try:
            source.replace(target)
            return
        except OSError as e:
            if attempt == RENAME_ATTEMPTS:
                raise StateError(f"Failed to replace {target}", {"error": str(e)}) from e
            logger.debug(f"Rename of {source} failed (attempt {attempt}): {e}")
            time.sleep(DEFAULT_LOCK_RETRY_DELAY)
