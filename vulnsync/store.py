"""SQLite-backed vulnerability store.

``VulnStore`` is the single handle through which the sync engine writes and
the query path reads.  It is opened explicitly, passed to whatever needs it
and closed by its owner; there is no module-level connection.

Each thread gets its own connection to the same database file.  SQLite
serializes writers (WAL mode plus a busy timeout); no in-process write lock
is taken here.
"""

import itertools
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from .cpe import parse_cpe
from .errors import LockTimeout, MalformedIdentifier, SchemaIncompatible, StoreCorruption, VulnSyncError
from .matcher import VersionMatcher, version_from_cpe
from .models import AffectedRange, Reference, VulnerabilityRecord
from .schema import SchemaManager

logger = logging.getLogger(__name__)

SELECT_VULNERABILITY_ID = "SELECT id FROM vulnerability WHERE cve = ?"
SELECT_VULNERABILITY = (
    "SELECT id, description, cwe, cvss_v2_score, cvss_v2_vector, cvss_v2_severity, "
    "cvss_v3_score, cvss_v3_vector, cvss_v3_severity FROM vulnerability WHERE cve = ?"
)
INSERT_VULNERABILITY = (
    "INSERT INTO vulnerability (description, cwe, cvss_v2_score, cvss_v2_vector, cvss_v2_severity, "
    "cvss_v3_score, cvss_v3_vector, cvss_v3_severity, cve) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
)
UPDATE_VULNERABILITY = (
    "UPDATE vulnerability SET description = ?, cwe = ?, cvss_v2_score = ?, cvss_v2_vector = ?, "
    "cvss_v2_severity = ?, cvss_v3_score = ?, cvss_v3_vector = ?, cvss_v3_severity = ? WHERE id = ?"
)
DELETE_VULNERABILITY = "DELETE FROM vulnerability WHERE id = ?"
DELETE_REFERENCE = "DELETE FROM reference WHERE cveid = ?"
DELETE_SOFTWARE = "DELETE FROM software WHERE cveid = ?"
INSERT_REFERENCE = "INSERT INTO reference (cveid, name, url, source) VALUES (?, ?, ?, ?)"
SELECT_REFERENCES = "SELECT source, name, url FROM reference WHERE cveid = ? ORDER BY rowid"
INSERT_CPE = "INSERT OR IGNORE INTO cpe_entry (cpe, vendor, product) VALUES (?, ?, ?)"
SELECT_CPE_ID = "SELECT id FROM cpe_entry WHERE cpe = ?"
INSERT_SOFTWARE = "INSERT OR REPLACE INTO software (cveid, cpe_entry_id, previous_version) VALUES (?, ?, ?)"
SELECT_SOFTWARE = (
    "SELECT c.cpe, s.previous_version FROM software s "
    "JOIN cpe_entry c ON c.id = s.cpe_entry_id WHERE s.cveid = ? ORDER BY s.rowid"
)
SELECT_CVE_FROM_SOFTWARE = (
    "SELECT v.cve, c.cpe, s.previous_version FROM software s "
    "JOIN cpe_entry c ON c.id = s.cpe_entry_id "
    "JOIN vulnerability v ON v.id = s.cveid "
    "WHERE c.vendor = ? AND c.product = ? ORDER BY v.cve, s.rowid"
)
SELECT_VENDOR_PRODUCT_LIST = "SELECT DISTINCT vendor, product FROM cpe_entry"
CLEANUP_ORPHANS = "DELETE FROM cpe_entry WHERE id NOT IN (SELECT cpe_entry_id FROM software)"
COUNT_VULNERABILITIES = "SELECT COUNT(*) FROM vulnerability"
SELECT_PROPERTIES = "SELECT id, value FROM properties"
MERGE_PROPERTY = "INSERT OR REPLACE INTO properties (id, value) VALUES (?, ?)"

# software.previous_version: 'Y' ceiling included, 'E' ceiling excluded.
PREVIOUS_VERSION_FLAG = "Y"
PREVIOUS_VERSION_EXCLUDING_FLAG = "E"


def _previous_flag(entry: AffectedRange) -> str | None:
    if not entry.affects_all_previous:
        return None
    return PREVIOUS_VERSION_EXCLUDING_FLAG if entry.excludes_ceiling else PREVIOUS_VERSION_FLAG


def _range_from_row(cpe: str, previous: str | None) -> AffectedRange:
    return AffectedRange(
        cpe=cpe,
        affects_all_previous=bool(previous),
        excludes_ceiling=previous == PREVIOUS_VERSION_EXCLUDING_FLAG,
    )


class VulnStore:
    """Handle to the local vulnerability database.

    Attributes:
        db_path: Path of the SQLite file.
        schema_version: Schema version the schema gate enforces.
        matcher: Range matcher used by ``get_vulnerabilities``.
        busy_timeout: Seconds a writer waits for another writer.
    """

    def __init__(
        self,
        db_path: Path,
        schema_version: str = "1.1",
        distinct_major_products: Iterable[tuple[str, str]] = (),
        busy_timeout: float = 300.0,
        script_dir: Path | None = None,
    ):
        self.db_path = Path(db_path)
        self.schema_version = schema_version
        self.matcher = VersionMatcher(distinct_major_products)
        self.busy_timeout = busy_timeout
        self.script_dir = script_dir
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._open = False

    @classmethod
    def from_settings(cls, settings: Any) -> "VulnStore":
        """Build a store from ``SyncSettings``."""
        return cls(
            settings.db_path,
            schema_version=settings.schema_version,
            distinct_major_products=settings.distinct_major_pairs(),
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    def open(self) -> "VulnStore":
        """Open the store and run the schema gate.

        Raises:
            SchemaIncompatible: if the stored schema cannot be used.
            StoreCorruption: if the file is not a readable database.
        """
        if self._open:
            return self
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            SchemaManager(self.schema_version, self.script_dir).ensure(self.connection())
        except SchemaIncompatible:
            self.close()
            raise
        except sqlite3.DatabaseError as e:
            self.close()
            raise StoreCorruption(
                f"Incompatible or corrupt database found at {self.db_path}; remove it to rebuild the cache"
            ) from e
        self._open = True
        logger.debug("Opened vulnerability store %s", self.db_path)
        return self

    def close(self) -> None:
        """Close every connection this store handed out."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.debug("Error closing connection: %s", e)
        self._local = threading.local()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> "VulnStore":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection, creating it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one write transaction on this thread's connection.

        Raises:
            StoreCorruption: if SQLite reports an error; the block is rolled back.
        """
        conn = self.connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise _database_error(e, "Unable to start a transaction") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(e, sqlite3.Error):
                raise _database_error(e) from e
            raise

    # ── properties ─────────────────────────────────────────────────────────

    def get_properties(self) -> dict[str, str]:
        rows = self._query(SELECT_PROPERTIES)
        return {str(k): str(v) for k, v in rows if v is not None}

    def save_property(self, key: str, value: str, conn: sqlite3.Connection | None = None) -> None:
        if conn is not None:
            conn.execute(MERGE_PROPERTY, (key, value))
            return
        with self.transaction() as tx:
            tx.execute(MERGE_PROPERTY, (key, value))

    # ── writes ─────────────────────────────────────────────────────────────

    def update_vulnerability(self, record: VulnerabilityRecord, conn: sqlite3.Connection | None = None) -> None:
        """Replace a vulnerability wholesale, or delete it when withdrawn.

        Args:
            record: The vulnerability as parsed from the feed.
            conn: Connection of an open transaction; a new transaction is
                used when omitted.
        """
        if conn is None:
            with self.transaction() as tx:
                self._update_vulnerability(tx, record)
        else:
            self._update_vulnerability(conn, record)

    def _update_vulnerability(self, conn: sqlite3.Connection, record: VulnerabilityRecord) -> None:
        row = conn.execute(SELECT_VULNERABILITY_ID, (record.name,)).fetchone()
        values = (
            record.description,
            record.cwe,
            record.cvss_v2_score,
            record.cvss_v2_vector,
            record.cvss_v2_severity,
            record.cvss_v3_score,
            record.cvss_v3_vector,
            record.cvss_v3_severity,
        )
        if row is not None:
            vuln_id = row[0]
            conn.execute(DELETE_REFERENCE, (vuln_id,))
            conn.execute(DELETE_SOFTWARE, (vuln_id,))
            if record.is_withdrawn:
                conn.execute(DELETE_VULNERABILITY, (vuln_id,))
                return
            conn.execute(UPDATE_VULNERABILITY, (*values, vuln_id))
        else:
            if record.is_withdrawn:
                return
            vuln_id = conn.execute(INSERT_VULNERABILITY, (*values, record.name)).lastrowid

        for ref in record.references:
            conn.execute(INSERT_REFERENCE, (vuln_id, ref.name, ref.url, ref.source))

        for entry in record.ranges:
            try:
                cpe = parse_cpe(entry.cpe)
            except MalformedIdentifier as e:
                logger.debug("Skipping range of %s: %s", record.name, e)
                continue
            conn.execute(INSERT_CPE, (entry.cpe, cpe.vendor, cpe.product))
            cpe_id = conn.execute(SELECT_CPE_ID, (entry.cpe,)).fetchone()[0]
            conn.execute(INSERT_SOFTWARE, (vuln_id, cpe_id, _previous_flag(entry)))

    def cleanup(self) -> int:
        """Remove CPE entries no longer referenced by any vulnerability.

        Returns:
            Number of rows removed.
        """
        with self.transaction() as tx:
            removed = tx.execute(CLEANUP_ORPHANS).rowcount
        logger.debug("Removed %d orphaned CPE entries", removed)
        return removed

    # ── reads ──────────────────────────────────────────────────────────────

    def data_exists(self) -> bool:
        """Whether any vulnerability data has been loaded."""
        rows = self._query(COUNT_VULNERABILITIES)
        return bool(rows and rows[0][0] > 0)

    def get_vendor_product_list(self) -> set[tuple[str, str]]:
        return {(v, p) for v, p in self._query(SELECT_VENDOR_PRODUCT_LIST)}

    def get_vulnerability(self, name: str) -> VulnerabilityRecord | None:
        """Load a single vulnerability with its references and ranges."""
        conn = self.connection()
        try:
            row = conn.execute(SELECT_VULNERABILITY, (name,)).fetchone()
            if row is None:
                return None
            vuln_id = row[0]
            record = VulnerabilityRecord(
                name=name,
                description=row[1] or "",
                cwe=row[2],
                cvss_v2_score=row[3],
                cvss_v2_vector=row[4],
                cvss_v2_severity=row[5],
                cvss_v3_score=row[6],
                cvss_v3_vector=row[7],
                cvss_v3_severity=row[8],
            )
            for source, ref_name, url in conn.execute(SELECT_REFERENCES, (vuln_id,)):
                record.references.append(Reference(source=source or "", url=url or "", name=ref_name or ""))
            for cpe, previous in conn.execute(SELECT_SOFTWARE, (vuln_id,)):
                record.ranges.append(_range_from_row(cpe, previous))
        except sqlite3.Error as e:
            raise StoreCorruption(f"Error retrieving {name}: {e}") from e
        return record

    def get_vulnerabilities(self, cpe_name: str) -> list[VulnerabilityRecord]:
        """Find the vulnerabilities affecting the product/version a CPE names.

        Args:
            cpe_name: CPE of the detected dependency, e.g.
                ``cpe:/a:apache:struts:2.0.1``.

        Returns:
            Matching vulnerabilities, each with ``matched_cpe`` set.  A CPE
            that cannot be decoded yields no matches.
        """
        try:
            cpe = parse_cpe(cpe_name)
        except MalformedIdentifier as e:
            logger.debug("Unable to query %s: %s", cpe_name, e)
            return []
        detected = version_from_cpe(cpe)

        rows = self._query(SELECT_CVE_FROM_SOFTWARE, (cpe.vendor, cpe.product))
        results: list[VulnerabilityRecord] = []
        for cve, group in itertools.groupby(rows, key=lambda r: r[0]):
            entries = [_range_from_row(row[1], row[2]) for row in group]
            matched = self.matcher.get_matching_software(entries, cpe.vendor, cpe.product, detected)
            if matched is None:
                continue
            record = self.get_vulnerability(cve)
            if record is not None:
                record.matched_cpe, record.matched_all_previous = matched
                results.append(record)
        return results

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        try:
            return self.connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise _database_error(e) from e


def _database_error(e: sqlite3.Error, context: str = "Database error") -> VulnSyncError:
    """Classify a SQLite error; writer contention is not corruption."""
    message = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return LockTimeout(f"{context}: the database is busy ({e})")
    return StoreCorruption(f"{context}: {e}")
