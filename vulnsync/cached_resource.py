"""Single-file cached resources refreshed on a fixed interval.

Each cached file has a ``<file>.properties`` sidecar recording when it was
last downloaded::

    #vulnsync cache metadata
    LAST_UPDATED=1717171717

Without a sidecar the file's modification time is used instead.
"""

import logging
import time
from pathlib import Path
from typing import Protocol

import requests

from .config import LockSettings
from .downloaders import DEFAULT_HTTP_TIMEOUT, download_file, requests_session
from .errors import VulnSyncError
from .lock import UpdateLock
from .models import SyncResult

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".properties"
LAST_UPDATED_KEY = "LAST_UPDATED"


class CachedDataSource(Protocol):
    """Anything that can bring a local cache up to date."""

    def update(self) -> SyncResult: ...


def sidecar_path(path: Path) -> Path:
    return path.with_name(path.name + SIDECAR_SUFFIX)


def read_last_updated(path: Path) -> int:
    """When ``path`` was last refreshed, in epoch seconds.

    Args:
        path: The cached file.

    Returns:
        The sidecar's ``LAST_UPDATED`` value, else the file's modification
        time, else 0 if the file doesn't exist.
    """
    sidecar = sidecar_path(path)
    if sidecar.is_file():
        for line in sidecar.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line[0] in "#!":
                continue
            key, sep, value = line.partition("=")
            if sep and key.strip() == LAST_UPDATED_KEY:
                try:
                    return int(value.strip())
                except ValueError:
                    logger.debug("Ignoring invalid %s in %s: %r", LAST_UPDATED_KEY, sidecar, value)
                break
    if path.is_file():
        return int(path.stat().st_mtime)
    return 0


def write_last_updated(path: Path, timestamp: int | None = None) -> None:
    """Record a refresh of ``path`` in its sidecar."""
    if timestamp is None:
        timestamp = int(time.time())
    sidecar = sidecar_path(path)
    tmp = sidecar.with_suffix(sidecar.suffix + ".tmp")
    tmp.write_text(f"#vulnsync cache metadata\n{LAST_UPDATED_KEY}={timestamp}\n", encoding="utf-8")
    tmp.replace(sidecar)


def should_update(path: Path, valid_for_hours: float, now: float | None = None) -> bool:
    """Whether ``path`` is missing or older than ``valid_for_hours``."""
    if not path.is_file() or valid_for_hours <= 0:
        return True
    if now is None:
        now = time.time()
    return now - read_last_updated(path) > valid_for_hours * 60 * 60


class CachedFileSource:
    """A single remote file mirrored locally.

    Attributes:
        name: Display name used in log messages.
        url: Remote location of the file.
        path: Local copy.
        valid_for_hours: Minimum age before the file is downloaded again.
    """

    def __init__(
        self,
        name: str,
        url: str,
        path: Path,
        valid_for_hours: float = 24,
        session: requests.Session | None = None,
        lock_settings: LockSettings | None = None,
        timeout: tuple[float, float] = DEFAULT_HTTP_TIMEOUT,
    ):
        self.name = name
        self.url = url
        self.path = Path(path)
        self.valid_for_hours = valid_for_hours
        self.session = session or requests_session()
        self.lock_settings = lock_settings or LockSettings()
        self.timeout = timeout

    def update(self) -> SyncResult:
        """Download the file if it is missing or stale."""
        if not should_update(self.path, self.valid_for_hours):
            logger.info("Skipping %s update since last update was within %s hours.", self.name, self.valid_for_hours)
            return SyncResult()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        lock = UpdateLock(
            self.path.parent,
            file_name=f"{self.path.name}.lock",
            stale_after_seconds=self.lock_settings.stale_after_seconds,
            retry_seconds=self.lock_settings.retry_seconds,
            max_attempts=self.lock_settings.max_attempts,
        )
        try:
            with lock:
                if not should_update(self.path, self.valid_for_hours):
                    return SyncResult()
                logger.info("Downloading %s from %s", self.name, self.url)
                download_file(self.session, self.url, tmp, self.timeout)
                tmp.replace(self.path)
                write_last_updated(self.path)
            return SyncResult(changed=True)
        except VulnSyncError as e:
            logger.warning("Unable to update %s: %s", self.name, e)
            return SyncResult(error=e)
        finally:
            tmp.unlink(missing_ok=True)
