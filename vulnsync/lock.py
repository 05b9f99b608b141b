"""Cross-process update lock.

Only one process at a time may run a sync against a data directory.  The
lock is a marker file created with ``O_EXCL`` and held with an advisory
``flock`` (``msvcrt.locking`` on Windows) for as long as the sync runs.  A
random token written into the marker lets the holder verify it still owns
the file before deleting it.

A marker older than ``stale_after_seconds`` whose advisory lock nobody
holds was left behind by a crashed process and is removed.
"""

import atexit
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import LockTimeout

if os.name == "nt":
    import msvcrt

    def _lock_fd(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)

    def _unlock_fd(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock_fd(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock_fd(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


logger = logging.getLogger(__name__)

VERIFY_DELAY_SECONDS = 0.02


class _LockBusy(Exception):
    """Another process holds the lock; try again later."""


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Unable to delete lock file %s: %s", path, e)


class UpdateLock:
    """Exclusive, cross-process lock on a data directory.

    Use as a context manager::

        with UpdateLock(settings.data_directory):
            ...

    Attributes:
        lock_file: Path of the marker file.
        stale_after_seconds: Age after which an unheld marker is reclaimed.
        retry_seconds: Sleep between acquisition attempts.
        max_attempts: Attempts before ``LockTimeout`` is raised.
    """

    def __init__(
        self,
        directory: Path,
        file_name: str = "vulnsync.update.lock",
        stale_after_seconds: float = 300.0,
        retry_seconds: float = 5.0,
        max_attempts: int = 60,
    ):
        self.lock_file = Path(directory) / file_name
        self.stale_after_seconds = stale_after_seconds
        self.retry_seconds = retry_seconds
        self.max_attempts = max_attempts
        self._magic = secrets.token_hex(16).encode("ascii")
        self._fd: int | None = None

    @classmethod
    def from_settings(cls, settings: Any, file_name: str | None = None) -> "UpdateLock":
        lock = settings.lock
        return cls(
            settings.data_directory,
            file_name=file_name or lock.file_name,
            stale_after_seconds=lock.stale_after_seconds,
            retry_seconds=lock.retry_seconds,
            max_attempts=lock.max_attempts,
        )

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "UpdateLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()

    def acquire(self) -> None:
        """Block until the lock is obtained.

        Raises:
            LockTimeout: after ``max_attempts`` failed attempts.
        """
        if self._fd is not None:
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_seconds),
            retry=retry_if_exception_type(_LockBusy),
            before_sleep=self._log_wait,
        )
        try:
            retrying(self._try_lock)
        except RetryError as e:
            raise LockTimeout(
                f"Unable to obtain the update lock ({self.lock_file}) after {self.max_attempts} attempts; "
                "skipping the update"
            ) from e
        atexit.register(self._release_at_exit)
        logger.debug("Update lock obtained: %s", self.lock_file)

    def release(self) -> None:
        """Release the lock and delete the marker if this lock still owns it."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        atexit.unregister(self._release_at_exit)
        try:
            _unlock_fd(fd)
        except OSError as e:
            logger.debug("Failed to unlock %s: %s", self.lock_file, e)
        os.close(fd)
        try:
            owned = self.lock_file.read_bytes().strip() == self._magic
        except FileNotFoundError:
            return
        except OSError:
            owned = True
        if not owned:
            logger.warning("Lock file %s was taken over by another process; leaving it in place", self.lock_file)
            return
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.error("Lock file '%s' was unable to be deleted. Please manually delete this file.", self.lock_file)
            atexit.register(_unlink_quietly, self.lock_file)
        logger.debug("Update lock released: %s", self.lock_file)

    # ── internals ──────────────────────────────────────────────────────────

    def _try_lock(self) -> None:
        self._remove_stale_marker()
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o644)
        except FileExistsError as e:
            raise _LockBusy() from e
        try:
            _lock_fd(fd)
            os.write(fd, self._magic)
            os.fsync(fd)
            time.sleep(VERIFY_DELAY_SECONDS)
            if self._read_marker(fd) != self._magic or not self._is_marker(fd):
                raise _LockBusy()
        except (OSError, _LockBusy) as e:
            # Only remove the path if it is still our file; a reclaimer may
            # already have replaced it with someone else's marker.
            ours = self._is_marker(fd)
            os.close(fd)
            if ours:
                _unlink_quietly(self.lock_file)
            raise _LockBusy() from e
        self._fd = fd

    def _remove_stale_marker(self) -> None:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return
        if age <= self.stale_after_seconds:
            return
        try:
            fd = os.open(self.lock_file, os.O_RDWR)
        except FileNotFoundError:
            return
        try:
            _lock_fd(fd)
        except OSError:
            logger.debug("Lock file %s is %.0fs old but still held", self.lock_file, age)
            os.close(fd)
            return
        # Another waiter may have reclaimed this marker and created a new one
        # since we opened it; never delete a file we did not lock.
        abandoned = self._is_marker(fd)
        try:
            if abandoned and os.name != "nt":
                logger.debug("Removing abandoned lock file %s (%.0fs old)", self.lock_file, age)
                _unlink_quietly(self.lock_file)
        finally:
            try:
                _unlock_fd(fd)
            finally:
                os.close(fd)
        if abandoned and os.name == "nt":
            # Windows cannot delete an open file.
            _unlink_quietly(self.lock_file)

    def _is_marker(self, fd: int) -> bool:
        """Whether ``fd`` is still the file at ``lock_file``."""
        try:
            return os.path.samestat(os.fstat(fd), os.stat(self.lock_file))
        except OSError:
            return False

    @staticmethod
    def _read_marker(fd: int) -> bytes:
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            return os.read(fd, 64).strip()
        except OSError:
            return b""

    def _log_wait(self, retry_state: RetryCallState) -> None:
        if retry_state.attempt_number == 1:
            logger.info("Another process is updating the local cache; waiting for %s", self.lock_file)
        else:
            logger.debug("Update lock still held, attempt %d of %d", retry_state.attempt_number, self.max_attempts)

    def _release_at_exit(self) -> None:
        if self._fd is not None:
            logger.debug("Releasing update lock at interpreter exit")
            self.release()
