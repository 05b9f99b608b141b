"""Sync orchestration: decide whether to update, then run the pipeline.

Usage::

    settings = load_settings(Path("vulnsync.yaml"))
    result = SyncOrchestrator(settings).sync()
    if result.error:
        ...

``sync`` never raises for sync failures; they are returned as
``SyncResult.error`` so the caller decides whether to continue with the
data already on disk.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path

import requests

from .config import SyncSettings
from .downloaders import MetadataClient, download_file, requests_session
from .errors import MetadataUnavailable, TransientNetworkError, VulnSyncError
from .lock import UpdateLock
from .models import SyncResult
from .partitions import MODIFIED, SyncPartition, UpdateablePartitions, plan_updates
from .pipeline import FetchPipeline, download_pool_size, processing_pool_size
from .properties import LAST_CHECKED, PropertyStore
from .store import VulnStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class SyncOrchestrator:
    """Brings the local store up to date with the remote feed.

    Attributes:
        settings: Validated ``SyncSettings``.
        store: Open store to update; one is opened (and closed) per run when
            not supplied.
        session: HTTP session shared by metadata and payload requests.
        metadata: Client resolving partition URLs to remote timestamps.
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: VulnStore | None = None,
        session: requests.Session | None = None,
        metadata: MetadataClient | None = None,
    ):
        self.settings = settings
        self.store = store
        self.session = session or requests_session(settings.user_agent)
        self.metadata = metadata or MetadataClient(
            self.session,
            mode=settings.metadata_mode,
            timeout=(settings.http_connect_timeout, settings.metadata_timeout_seconds),
        )
        self._pipeline: FetchPipeline | None = None
        self._cancelled = threading.Event()
        self._committed = False

    # ── public API ─────────────────────────────────────────────────────────

    def sync(self) -> SyncResult:
        """Run one sync.

        Returns:
            ``SyncResult(changed=False)`` when the cache was current or
            updates are disabled, ``SyncResult(changed=True)`` after new data
            was committed, or a result carrying the failure.  ``changed`` is
            also set on a failed run that committed some partitions first.
        """
        if not self.settings.auto_update or not self.settings.nvd_enabled:
            logger.info("Automatic updates are disabled; using the local vulnerability data as-is")
            return SyncResult()

        self._cancelled.clear()
        self._committed = False
        owns_store = self.store is None
        store = self.store
        try:
            with UpdateLock.from_settings(self.settings):
                if owns_store:
                    store = VulnStore.from_settings(self.settings).open()
                self._sync_locked(store)
            return SyncResult(changed=self._committed)
        except VulnSyncError as e:
            self._log_failure(e)
            return SyncResult(changed=self._committed, error=e)
        finally:
            if owns_store and store is not None:
                store.close()

    def update(self) -> SyncResult:
        """Alias of ``sync`` so the orchestrator is a ``CachedDataSource``."""
        return self.sync()

    def cancel(self) -> None:
        """Stop an in-flight sync; committed partitions are kept."""
        self._cancelled.set()
        pipeline = self._pipeline
        if pipeline is not None:
            pipeline.cancel()

    # ── steps ──────────────────────────────────────────────────────────────

    def _sync_locked(self, store: VulnStore) -> None:
        properties = PropertyStore(store)
        if not self.check_update(store, properties):
            return

        updates = self.get_updates_needed(properties)
        if updates.is_update_needed():
            self.perform_update(store, properties, updates)
        properties.save(LAST_CHECKED, str(now_ms()))

    def check_update(self, store: VulnStore, properties: PropertyStore) -> bool:
        """Whether the freshness window has elapsed since the last check.

        Returns:
            ``False`` when data exists and was checked within
            ``valid_for_hours``; no network calls are needed then.
        """
        valid_for_hours = self.settings.valid_for_hours
        if valid_for_hours <= 0 or not store.data_exists():
            return True
        last_checked = properties.get_int(LAST_CHECKED)
        elapsed_ms = now_ms() - last_checked
        if 0 <= elapsed_ms <= valid_for_hours * 60 * 60 * 1000:
            logger.info("Skipping NVD check since last check was within %s hours.", valid_for_hours)
            return False
        return True

    def get_updates_needed(self, properties: PropertyStore) -> UpdateablePartitions:
        """Compare local partition timestamps with the remote metadata.

        Raises:
            MetadataUnavailable: if any remote timestamp cannot be obtained.
        """
        year_urls = {str(year): self.settings.year_url(year) for year in self.settings.years()}
        local = {pid: properties.partition_timestamp(pid) for pid in (*year_urls, MODIFIED)}
        return plan_updates(
            local,
            year_urls,
            self.settings.cve_modified_url,
            self.remote_timestamps,
            now_ms(),
            self.settings.modified_valid_for_days,
        )

    def remote_timestamps(self, urls: list[str]) -> dict[str, int]:
        """Fetch last-modified times for ``urls`` concurrently.

        Raises:
            MetadataUnavailable: if any lookup fails or times out.
        """
        timeout = self.settings.metadata_timeout_seconds
        pool = ThreadPoolExecutor(
            max_workers=min(len(urls), download_pool_size(self.settings.max_download_threads)) or 1,
            thread_name_prefix="vulnsync-meta",
        )
        try:
            futures = {url: pool.submit(self.metadata.last_modified, url) for url in urls}
            results: dict[str, int] = {}
            for url, future in futures.items():
                try:
                    results[url] = future.result(timeout=timeout)
                except FutureTimeout as e:
                    raise MetadataUnavailable(f"Timed out retrieving metadata for {url}") from e
                except MetadataUnavailable:
                    raise
                except VulnSyncError as e:
                    raise MetadataUnavailable(f"Unable to retrieve metadata for {url}: {e}") from e
            return results
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def perform_update(self, store: VulnStore, properties: PropertyStore, updates: UpdateablePartitions) -> None:
        """Fetch and commit every stale partition, the delta partition last.

        Raises:
            VulnSyncError: the first partition failure.
            TransientNetworkError: if the sync was cancelled.
        """
        if self._cancelled.is_set():
            raise TransientNetworkError("The update was cancelled before any partition was fetched")
        stale = updates.stale()
        if len(stale) > 3:
            logger.info("NVD CVE requires several updates; this could take a couple of minutes.")

        pipeline = FetchPipeline(
            store,
            properties,
            fetcher=self.fetch_partition,
            download_threads=download_pool_size(self.settings.max_download_threads),
            processing_threads=processing_pool_size(self.settings.max_processing_threads),
            queue_size=self.settings.queue_size,
            temp_dir=self._temp_dir(),
        )
        self._pipeline = pipeline
        if self._cancelled.is_set():
            pipeline.cancel()
        batches = ([p for p in stale if not p.is_modified], [p for p in stale if p.is_modified])
        try:
            for batch in batches:
                if not batch:
                    continue
                try:
                    pipeline.run(batch)
                finally:
                    if any(o.committed for o in pipeline.outcomes):
                        self._committed = True
        finally:
            self._pipeline = None

        store.cleanup()

    def fetch_partition(self, partition: SyncPartition, dest: Path) -> None:
        download_file(
            self.session,
            partition.url,
            dest,
            timeout=(self.settings.http_connect_timeout, self.settings.http_read_timeout),
        )

    # ── helpers ────────────────────────────────────────────────────────────

    def _temp_dir(self) -> Path:
        path = self.settings.data_directory / "tmp"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def _log_failure(error: VulnSyncError) -> None:
        if error.kind.fatal:
            logger.error("Unable to use the local vulnerability data: %s", error)
        else:
            logger.warning("Unable to update the local vulnerability data (%s): %s", error.kind.value, error)
