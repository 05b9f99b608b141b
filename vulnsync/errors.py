"""Error taxonomy for the synchronization engine and the matcher.

Every failure the engine surfaces carries an ``ErrorKind`` so callers can
branch on ``error.kind`` instead of catching a broad exception hierarchy.

Hierarchy::

    VulnSyncError
    ├── TransientNetworkError
    │   └── FeedParseError
    ├── MetadataUnavailable
    ├── SchemaIncompatible
    ├── LockTimeout
    ├── StoreCorruption
    └── MalformedIdentifier
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds of failure, shared by exceptions and ``SyncResult`` values."""

    TRANSIENT_NETWORK = "transient_network"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    SCHEMA_INCOMPATIBLE = "schema_incompatible"
    LOCK_TIMEOUT = "lock_timeout"
    STORE_CORRUPTION = "store_corruption"
    MALFORMED_IDENTIFIER = "malformed_identifier"

    @property
    def fatal(self) -> bool:
        """Whether no query or sync may proceed until an operator intervenes."""
        return self in (ErrorKind.SCHEMA_INCOMPATIBLE, ErrorKind.STORE_CORRUPTION)


class VulnSyncError(Exception):
    """Base exception for all vulnsync failures.

    Attributes:
        kind: The taxonomy kind of this failure.
        partition: Partition id the failure belongs to, if any.
    """

    kind: ErrorKind = ErrorKind.STORE_CORRUPTION

    def __init__(self, message: str, partition: str | None = None):
        self.partition = partition
        super().__init__(message)

    def __str__(self) -> str:
        if self.partition:
            return f"[{self.partition}] {super().__str__()}"
        return super().__str__()


class TransientNetworkError(VulnSyncError):
    """A fetch or metadata call failed; the caller may retry later."""

    kind = ErrorKind.TRANSIENT_NETWORK

    def __init__(self, message: str, partition: str | None = None, url: str | None = None):
        self.url = url
        super().__init__(message, partition)


class FeedParseError(TransientNetworkError):
    """A downloaded payload could not be parsed and must be fetched again."""


class MetadataUnavailable(VulnSyncError):
    """Remote metadata could not be retrieved, so staleness is unknown."""

    kind = ErrorKind.METADATA_UNAVAILABLE


class SchemaIncompatible(VulnSyncError):
    """The embedded store's schema cannot be used by this version."""

    kind = ErrorKind.SCHEMA_INCOMPATIBLE


class LockTimeout(VulnSyncError):
    """The update lock could not be obtained in time."""

    kind = ErrorKind.LOCK_TIMEOUT


class StoreCorruption(VulnSyncError):
    """The embedded store is unreadable or failed a write."""

    kind = ErrorKind.STORE_CORRUPTION


class MalformedIdentifier(VulnSyncError):
    """A CPE identifier could not be decoded."""

    kind = ErrorKind.MALFORMED_IDENTIFIER
