"""Two-stage fetch/parse pipeline for stale partitions.

Download workers stream each partition to a temporary file and hand it to a
bounded queue; processing workers parse the file and commit the partition
in a single store transaction together with its new timestamp.  A partition
is therefore either fully committed or left untouched, and one failed
partition never rolls back another.
"""

import logging
import os
import queue
import tempfile
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import StoreCorruption, TransientNetworkError, VulnSyncError
from .models import VulnerabilityRecord
from .parsers import parse_feed
from .partitions import SyncPartition

logger = logging.getLogger(__name__)

_SENTINEL = object()
_PUT_POLL_SECONDS = 0.1
_SHUTDOWN_JOIN_SECONDS = 30.0


def download_pool_size(max_threads: int) -> int:
    cpu = os.cpu_count() or 1
    return max(1, min(round(1.5 * cpu), max_threads))


def processing_pool_size(max_threads: int) -> int:
    cpu = os.cpu_count() or 1
    return max(1, min(cpu, max_threads))


@dataclass
class DownloadedPartition:
    partition: SyncPartition
    path: Path


@dataclass
class PartitionOutcome:
    """What happened to one partition during a pipeline run.

    Attributes:
        partition_id: Partition identifier.
        committed: Whether the partition's records and timestamp were committed.
        records: Number of records written.
        error: Failure that stopped the partition, if any.
        skipped: Whether the partition was dropped because the run was cancelled.
    """

    partition_id: str
    committed: bool = False
    records: int = 0
    error: VulnSyncError | None = None
    skipped: bool = False


class FetchPipeline:
    """Fetches and commits partitions concurrently.

    Attributes:
        store: Open ``VulnStore`` to commit into.
        properties: ``PropertyStore`` receiving partition timestamps.
        fetcher: Callable downloading a partition to a local path.
        parser: Callable yielding records from a downloaded payload.
        download_threads: Number of download workers.
        processing_threads: Number of parse/commit workers.
        queue_size: Bound of the queue between the two stages.
        temp_dir: Directory for downloaded payloads.
    """

    def __init__(
        self,
        store: Any,
        properties: Any,
        fetcher: Callable[[SyncPartition, Path], Any],
        parser: Callable[[Path], Iterator[VulnerabilityRecord]] = parse_feed,
        download_threads: int = 3,
        processing_threads: int = 4,
        queue_size: int = 4,
        temp_dir: Path | None = None,
    ):
        self.store = store
        self.properties = properties
        self.fetcher = fetcher
        self.parser = parser
        self.download_threads = max(1, download_threads)
        self.processing_threads = max(1, processing_threads)
        self.queue_size = max(1, queue_size)
        self.temp_dir = temp_dir
        self._cancelled = threading.Event()
        self._outcomes: dict[str, PartitionOutcome] = {}
        self._outcomes_lock = threading.Lock()
        self._fetch_queue: queue.Queue = queue.Queue()
        self._parse_queue: queue.Queue = queue.Queue()
        self._fetch_workers: list[threading.Thread] = []
        self._parse_workers: list[threading.Thread] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Ask workers to stop; partitions not yet committed are skipped."""
        self._cancelled.set()

    @property
    def outcomes(self) -> list[PartitionOutcome]:
        with self._outcomes_lock:
            return list(self._outcomes.values())

    def run(self, partitions: Iterable[SyncPartition]) -> list[PartitionOutcome]:
        """Fetch, parse and commit ``partitions``.

        Every partition is attempted even if others fail.

        Returns:
            One outcome per partition, in submission order.

        Raises:
            VulnSyncError: the first partition failure, once all workers
                have drained; or ``TransientNetworkError`` if cancelled.
        """
        todo = list(partitions)
        with self._outcomes_lock:
            self._outcomes = {p.id: PartitionOutcome(p.id) for p in todo}
        if not todo:
            return []

        self._start(len(todo))
        try:
            for partition in todo:
                if self._cancelled.is_set():
                    self._mark_skipped(partition.id)
                    continue
                self._put(self._fetch_queue, partition, self._fetch_workers)
            self._stop_stage(self._fetch_queue, self._fetch_workers)
            self._stop_stage(self._parse_queue, self._parse_workers)
        finally:
            self.shutdown()

        outcomes = [self._outcomes[p.id] for p in todo]
        for outcome in outcomes:
            if outcome.error is not None:
                raise outcome.error
        if self._cancelled.is_set():
            raise TransientNetworkError("The update was cancelled before all partitions were committed")
        return outcomes

    def shutdown(self) -> None:
        """Stop all workers and remove leftover downloads."""
        if any(w.is_alive() for w in self._fetch_workers + self._parse_workers):
            self._cancelled.set()
            self._stop_stage(self._fetch_queue, self._fetch_workers, _SHUTDOWN_JOIN_SECONDS)
            self._stop_stage(self._parse_queue, self._parse_workers, _SHUTDOWN_JOIN_SECONDS)
        for q in (self._fetch_queue, self._parse_queue):
            while True:
                try:
                    item = q.get_nowait()
                except queue.Empty:
                    break
                if isinstance(item, DownloadedPartition):
                    self._mark_skipped(item.partition.id)
                    item.path.unlink(missing_ok=True)
        self._fetch_workers = []
        self._parse_workers = []

    # ── workers ────────────────────────────────────────────────────────────

    def _start(self, count: int) -> None:
        self._fetch_queue = queue.Queue(maxsize=self.queue_size)
        self._parse_queue = queue.Queue(maxsize=self.queue_size)
        self._fetch_workers = [
            threading.Thread(target=self._fetch_worker, name=f"vulnsync-download-{i}", daemon=True)
            for i in range(min(self.download_threads, count))
        ]
        self._parse_workers = [
            threading.Thread(target=self._process_worker, name=f"vulnsync-process-{i}", daemon=True)
            for i in range(min(self.processing_threads, count))
        ]
        for worker in self._fetch_workers + self._parse_workers:
            worker.start()

    def _fetch_worker(self) -> None:
        while True:
            partition = self._fetch_queue.get()
            if partition is _SENTINEL:
                return
            if self._cancelled.is_set():
                self._mark_skipped(partition.id)
                continue
            downloaded = self._download(partition)
            if downloaded is not None and not self._put(self._parse_queue, downloaded, self._parse_workers):
                self._mark_skipped(partition.id)
                downloaded.path.unlink(missing_ok=True)

    def _download(self, partition: SyncPartition) -> DownloadedPartition | None:
        fd, name = tempfile.mkstemp(prefix=f"vulnsync-{partition.id}-", suffix=".dat", dir=self.temp_dir)
        os.close(fd)
        path = Path(name)
        logger.info("Download Started for NVD CVE - %s", partition.id)
        start = time.monotonic()
        try:
            self.fetcher(partition, path)
        except VulnSyncError as e:
            if e.partition is None:
                e.partition = partition.id
            self._fail(partition.id, e)
        except Exception as e:
            self._fail(partition.id, TransientNetworkError(f"Unable to download: {e}", partition.id, partition.url))
        else:
            logger.info(
                "Download Complete for NVD CVE - %s  (%d ms)", partition.id, (time.monotonic() - start) * 1000
            )
            return DownloadedPartition(partition, path)
        path.unlink(missing_ok=True)
        return None

    def _process_worker(self) -> None:
        while True:
            item = self._parse_queue.get()
            if item is _SENTINEL:
                return
            try:
                if self._cancelled.is_set():
                    self._mark_skipped(item.partition.id)
                else:
                    self._process(item)
            finally:
                item.path.unlink(missing_ok=True)

    def _process(self, item: DownloadedPartition) -> None:
        partition = item.partition
        logger.info("Processing Started for NVD CVE - %s", partition.id)
        start = time.monotonic()
        try:
            records = list(self.parser(item.path))
            with self.store.transaction() as conn:
                for record in records:
                    self.store.update_vulnerability(record, conn=conn)
                self.properties.save_partition(partition, conn=conn)
        except VulnSyncError as e:
            if e.partition is None:
                e.partition = partition.id
            self._fail(partition.id, e)
            return
        except Exception as e:
            self._fail(partition.id, StoreCorruption(f"Unable to commit partition: {e}", partition.id))
            return
        with self._outcomes_lock:
            outcome = self._outcomes[partition.id]
            outcome.committed = True
            outcome.records = len(records)
        logger.info(
            "Processing Complete for NVD CVE - %s  (%d ms, %d records)",
            partition.id,
            (time.monotonic() - start) * 1000,
            len(records),
        )

    # ── helpers ────────────────────────────────────────────────────────────

    def _fail(self, partition_id: str, error: VulnSyncError) -> None:
        logger.warning("Update of NVD CVE - %s failed: %s", partition_id, error)
        with self._outcomes_lock:
            self._outcomes[partition_id].error = error

    def _mark_skipped(self, partition_id: str) -> None:
        with self._outcomes_lock:
            self._outcomes[partition_id].skipped = True

    @staticmethod
    def _put(q: queue.Queue, item: Any, consumers: list[threading.Thread]) -> bool:
        """Put ``item`` on a bounded queue unless every consumer has exited."""
        while any(w.is_alive() for w in consumers):
            try:
                q.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _stop_stage(self, q: queue.Queue, workers: list[threading.Thread], timeout: float | None = None) -> None:
        for _ in workers:
            if not self._put(q, _SENTINEL, workers):
                break
        for worker in workers:
            worker.join(timeout)
