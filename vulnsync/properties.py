"""Key/value bookkeeping persisted alongside the vulnerability data.

Keys:
    ``nvdcve.lastchecked``: epoch ms of the last successful staleness check.
    ``nvdcve.lastupdated.<partition>``: epoch ms of the remote timestamp a
    partition was last committed at.
    ``version``: schema version.
"""

import datetime as dt
import logging
import sqlite3
import threading
from typing import Any

logger = logging.getLogger(__name__)

LAST_CHECKED = "nvdcve.lastchecked"
LAST_UPDATED_BASE = "nvdcve.lastupdated."
LAST_UPDATED_MODIFIED = LAST_UPDATED_BASE + "modified"
VERSION = "version"


class PropertyStore:
    """Thread-safe view of the store's properties table.

    The table is read once on construction; writes go straight through to
    the store and update the in-memory copy.
    """

    def __init__(self, store: Any):
        self._store = store
        self._lock = threading.Lock()
        self._properties: dict[str, str] = store.get_properties()

    def is_empty(self) -> bool:
        with self._lock:
            return not self._properties

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._properties.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        """Return a numeric property, or ``default`` if missing or unreadable."""
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning("Ignoring non-numeric value for property %s: %r", key, value)
            return default

    def save(self, key: str, value: str, conn: sqlite3.Connection | None = None) -> None:
        """Persist a property.

        Args:
            key: Property name.
            value: Property value.
            conn: Connection of an open transaction to write through; the
                in-memory copy is updated immediately either way.
        """
        with self._lock:
            self._store.save_property(key, value, conn=conn)
            self._properties[key] = value

    def partition_timestamp(self, partition_id: str) -> int:
        return self.get_int(LAST_UPDATED_BASE + partition_id)

    def save_partition(self, partition: Any, conn: sqlite3.Connection | None = None) -> None:
        """Record the remote timestamp a partition was committed at."""
        self.save(LAST_UPDATED_BASE + partition.id, str(partition.timestamp), conn=conn)

    def get_properties(self) -> dict[str, str]:
        with self._lock:
            return dict(self._properties)

    def get_meta_data(self) -> dict[str, str]:
        """Properties with timestamps rendered as readable UTC dates."""
        meta: dict[str, str] = {}
        for key, value in sorted(self.get_properties().items()):
            if key == LAST_CHECKED:
                meta["NVD CVE Checked"] = _format_ms(value)
            elif key.startswith(LAST_UPDATED_BASE):
                meta[f"NVD CVE {key[len(LAST_UPDATED_BASE):]}"] = _format_ms(value)
            else:
                meta[key] = value
        return meta


def _format_ms(value: str) -> str:
    try:
        stamp = dt.datetime.fromtimestamp(int(value) / 1000, tz=dt.timezone.utc)
    except (ValueError, OverflowError, OSError):
        return value
    return stamp.strftime("%Y-%m-%dT%H:%M:%SZ")
