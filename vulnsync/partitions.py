"""Feed partitions and the decision of which ones need re-fetching."""

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MODIFIED = "modified"
MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass
class SyncPartition:
    """One independently fetchable slice of the remote feed.

    Attributes:
        id: Partition identifier: a year, or ``modified`` for the rolling delta.
        url: Download URL of the partition payload.
        timestamp: Remote last-modified time, epoch ms.
        local_timestamp: Timestamp recorded at the last commit, epoch ms.
        needs_update: Whether the partition must be fetched this run.
    """

    id: str
    url: str
    timestamp: int
    local_timestamp: int = 0
    needs_update: bool = True

    @property
    def is_modified(self) -> bool:
        return self.id == MODIFIED


class UpdateablePartitions:
    """Ordered collection of partitions considered for an update."""

    def __init__(self) -> None:
        self._partitions: dict[str, SyncPartition] = {}

    def add(
        self,
        partition_id: str,
        url: str,
        timestamp: int,
        local_timestamp: int = 0,
        needs_update: bool = True,
    ) -> SyncPartition:
        partition = SyncPartition(partition_id, url, timestamp, local_timestamp, needs_update)
        self._partitions[partition_id] = partition
        return partition

    def get(self, partition_id: str) -> SyncPartition | None:
        return self._partitions.get(partition_id)

    def is_update_needed(self) -> bool:
        return any(p.needs_update for p in self._partitions.values())

    def stale(self) -> list[SyncPartition]:
        """Partitions to fetch, yearly ones first and the delta last."""
        needed = [p for p in self._partitions.values() if p.needs_update]
        return sorted(needed, key=lambda p: (p.is_modified, p.id))

    def __iter__(self) -> Iterator[SyncPartition]:
        return iter(self._partitions.values())

    def __len__(self) -> int:
        return len(self._partitions)

    def __contains__(self, partition_id: object) -> bool:
        return partition_id in self._partitions


def within_date_range(date_ms: int, compare_ms: int, days: int) -> bool:
    """Whether ``date_ms`` is less than ``days`` days before ``compare_ms``."""
    return (compare_ms - date_ms) / MS_PER_DAY < days


def plan_updates(
    local: Mapping[str, int],
    year_urls: Mapping[str, str],
    modified_url: str,
    remote_timestamps: Callable[[list[str]], dict[str, int]],
    now_ms: int,
    modified_valid_for_days: int,
) -> UpdateablePartitions:
    """Decide which partitions to fetch.

    The delta partition is checked first.  If it hasn't moved and every
    yearly partition has been loaded before, nothing is fetched.  Yearly
    partitions are only checked remotely when one was never loaded or the
    delta was last applied longer ago than it covers.

    Args:
        local: Partition id to locally recorded timestamp (0 when missing).
        year_urls: Yearly partition id to URL.
        modified_url: URL of the rolling delta partition.
        remote_timestamps: Resolves URLs to remote last-modified times.
        now_ms: Current time, epoch ms.
        modified_valid_for_days: Days of changes the delta partition covers.

    Returns:
        Partitions needing an update; empty when the cache is current.
    """
    updates = UpdateablePartitions()
    needs_full_update = any(local.get(year, 0) <= 0 for year in year_urls)
    last_updated = local.get(MODIFIED, 0)

    modified_ts = remote_timestamps([modified_url])[modified_url]
    if not needs_full_update and last_updated >= modified_ts:
        logger.debug("NVD CVE data is current (modified %d)", modified_ts)
        return updates

    updates.add(MODIFIED, modified_url, modified_ts, last_updated)
    if needs_full_update or not within_date_range(last_updated, now_ms, modified_valid_for_days):
        remote = remote_timestamps(list(year_urls.values()))
        for year, url in year_urls.items():
            local_ts = local.get(year, 0)
            if local_ts < remote[url]:
                updates.add(year, url, remote[url], local_ts)
    return updates
