"""Schema-compatibility gate for the embedded store.

The baseline schema lives in ``sql/initialize.sql``.  Upgrades are ordered
scripts named after the version they upgrade *from*
(``sql/upgrade_1.0.sql`` turns a 1.0 store into the next version); each
script is responsible for writing the new ``version`` property.
"""

import logging
import sqlite3
from importlib import resources
from pathlib import Path

from .errors import SchemaIncompatible
from .versions import DependencyVersion

logger = logging.getLogger(__name__)

INITIALIZE_SCRIPT = "initialize.sql"
UPGRADE_SCRIPT = "upgrade_{version}.sql"
MAX_UPGRADE_STEPS = 10

SELECT_SCHEMA_VERSION = "SELECT value FROM properties WHERE id = 'version'"


class SchemaManager:
    """Creates or upgrades the store schema before anything else touches it.

    Attributes:
        expected_version: Schema version this code expects.
        script_dir: Directory holding the SQL scripts; defaults to the
            packaged ``sql`` directory.
    """

    def __init__(self, expected_version: str, script_dir: Path | None = None):
        self.expected_version = expected_version
        self.script_dir = script_dir

    def load_script(self, name: str) -> str | None:
        """Read a schema script, or ``None`` if it doesn't exist."""
        if self.script_dir is not None:
            path = self.script_dir / name
            return path.read_text(encoding="utf-8") if path.is_file() else None
        resource = resources.files(__package__).joinpath("sql", name)
        if not resource.is_file():
            return None
        return resource.read_text(encoding="utf-8")

    def ensure(self, conn: sqlite3.Connection) -> str:
        """Verify the schema, creating or upgrading it as needed.

        Args:
            conn: Connection in autocommit mode.

        Returns:
            The schema version now stored.

        Raises:
            SchemaIncompatible: if the stored version cannot be upgraded.
            sqlite3.DatabaseError: if the file is not a usable database.
        """
        if not self._has_tables(conn):
            logger.debug("Creating database structure")
            script = self.load_script(INITIALIZE_SCRIPT)
            if script is None:
                raise SchemaIncompatible(f"Baseline schema script {INITIALIZE_SCRIPT} is missing")
            self._execute(conn, script)

        expected = DependencyVersion(self.expected_version)
        for _ in range(MAX_UPGRADE_STEPS):
            stored = self.read_version(conn)
            logger.debug("Expected schema: %s, stored schema: %s", self.expected_version, stored)
            if DependencyVersion(stored) == expected:
                return stored
            self.upgrade(conn, stored)
        raise SchemaIncompatible(
            f"Database schema did not reach {self.expected_version} after {MAX_UPGRADE_STEPS} upgrades"
        )

    def upgrade(self, conn: sqlite3.Connection, stored: str) -> None:
        """Apply the upgrade script for ``stored``."""
        name = UPGRADE_SCRIPT.format(version=stored)
        script = self.load_script(name)
        if script is None:
            raise SchemaIncompatible(
                f"Database schema {stored} is not compatible with {self.expected_version} "
                f"and no upgrade script ({name}) exists; remove the existing database to rebuild it"
            )
        logger.info("Upgrading database schema from %s", stored)
        try:
            self._execute(conn, script)
        except sqlite3.OperationalError as e:
            raise SchemaIncompatible(f"Unable to upgrade the database schema from {stored}: {e}") from e
        if self.read_version(conn) == stored:
            raise SchemaIncompatible(f"Upgrade script {name} did not change the schema version")

    @staticmethod
    def read_version(conn: sqlite3.Connection) -> str:
        try:
            row = conn.execute(SELECT_SCHEMA_VERSION).fetchone()
        except sqlite3.OperationalError as e:
            raise SchemaIncompatible("Database schema is missing") from e
        if row is None or not row[0]:
            raise SchemaIncompatible("Database schema version is missing")
        return str(row[0])

    @staticmethod
    def _has_tables(conn: sqlite3.Connection) -> bool:
        row = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type = 'table'").fetchone()
        return bool(row and row[0])

    @staticmethod
    def _execute(conn: sqlite3.Connection, script: str) -> None:
        try:
            conn.executescript(f"BEGIN;\n{script}\nCOMMIT;")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.rollback()
            raise
