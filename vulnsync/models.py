"""Vulnerability records as stored in and read from the local cache."""

from dataclasses import dataclass, field

from .errors import VulnSyncError

REJECT_MARKER = "** REJECT **"


@dataclass
class Reference:
    """An external reference attached to a vulnerability.

    Attributes:
        source: Publisher of the reference (e.g. ``MISC``, ``CONFIRM``).
        url: Reference URL.
        name: Display name; defaults to the URL in most feeds.
    """

    source: str
    url: str
    name: str = ""


@dataclass(frozen=True)
class AffectedRange:
    """A vendor/product (and optional version) known to be affected.

    Attributes:
        cpe: CPE identifier naming the product and, optionally, the version.
        affects_all_previous: ``True`` when every earlier version is affected.
        excludes_ceiling: ``True`` when the version in ``cpe`` is the first
            fixed release, so only versions strictly below it are affected.
            Only meaningful together with ``affects_all_previous``.
    """

    cpe: str
    affects_all_previous: bool = False
    excludes_ceiling: bool = False


@dataclass
class VulnerabilityRecord:
    """A single named vulnerability.

    Attributes:
        name: CVE identifier (e.g. ``CVE-2024-12345``).
        description: Best English description.
        cwe: Primary CWE identifier, if known.
        cvss_v2_score: CVSS v2 base score.
        cvss_v2_vector: CVSS v2 vector string.
        cvss_v2_severity: CVSS v2 severity label.
        cvss_v3_score: CVSS v3.x base score.
        cvss_v3_vector: CVSS v3.x vector string.
        cvss_v3_severity: CVSS v3.x severity label.
        references: External references.
        ranges: Affected product ranges.
        rejected: Whether the feed marks the record as withdrawn.
        matched_cpe: Set on query results: the range that matched.
        matched_all_previous: Set on query results: that range's flag.
    """

    name: str
    description: str = ""
    cwe: str | None = None
    cvss_v2_score: float | None = None
    cvss_v2_vector: str | None = None
    cvss_v2_severity: str | None = None
    cvss_v3_score: float | None = None
    cvss_v3_vector: str | None = None
    cvss_v3_severity: str | None = None
    references: list[Reference] = field(default_factory=list)
    ranges: list[AffectedRange] = field(default_factory=list)
    rejected: bool = False
    matched_cpe: str | None = None
    matched_all_previous: bool = False

    @property
    def is_withdrawn(self) -> bool:
        """Whether this record should be removed from the store."""
        return self.rejected or REJECT_MARKER in (self.description or "")

    def add_range(self, cpe: str, affects_all_previous: bool = False, excludes_ceiling: bool = False) -> None:
        """Append an affected range, ignoring exact duplicates."""
        entry = AffectedRange(
            cpe=cpe,
            affects_all_previous=affects_all_previous,
            excludes_ceiling=affects_all_previous and excludes_ceiling,
        )
        if entry not in self.ranges:
            self.ranges.append(entry)


@dataclass
class SyncResult:
    """Outcome of a sync or cached-resource update.

    Attributes:
        changed: Whether any local data was modified.
        error: The failure that stopped the run, if any.
    """

    changed: bool = False
    error: VulnSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
