"""Selection of the affected-range entry that applies to a detected version.

Pure functions over in-memory data: no store access and no I/O.
"""

import logging
from collections.abc import Iterable, Mapping

from .cpe import Cpe, parse_cpe
from .errors import MalformedIdentifier
from .models import AffectedRange
from .versions import WILDCARD, DependencyVersion, compare, is_wildcard, parse_version

logger = logging.getLogger(__name__)


def version_from_cpe(cpe: Cpe) -> DependencyVersion | None:
    """Parse the version (including the update component) out of a CPE.

    Returns:
        The wildcard version when the CPE has no version component, ``None``
        when the version text contains nothing that looks like a version.
    """
    text = cpe.version_text
    if not text:
        return DependencyVersion(parts=[WILDCARD])
    return parse_version(text, first_match_only=True)


class VersionMatcher:
    """Picks the applicable affected range for a vendor/product/version.

    Attributes:
        distinct_major_products: ``(vendor, product)`` pairs whose major
            version lines are unrelated products, so an "all previous" range
            on one major line never covers a version on another.
    """

    def __init__(self, distinct_major_products: Iterable[tuple[str, str]] = ()):
        self.distinct_major_products = {(v.lower(), p.lower()) for v, p in distinct_major_products}

    def get_matching_software(
        self,
        entries: Mapping[str, bool] | Iterable[AffectedRange | tuple[str, bool]],
        vendor: str,
        product: str,
        identified_version: DependencyVersion | None,
    ) -> tuple[str, bool] | None:
        """Find the range entry affecting ``identified_version``.

        Args:
            entries: Affected ranges in store order, either ``AffectedRange``
                objects or CPE string to ``affects_all_previous`` flag.
            vendor: Vendor of the dependency being analyzed.
            product: Product of the dependency being analyzed.
            identified_version: Detected version; ``None`` or ``"-"`` means unknown.

        Returns:
            ``(cpe, affects_all_previous)`` of the matching entry, or ``None``.
        """
        items = entries.items() if isinstance(entries, Mapping) else entries
        ranges: list[tuple[str, bool, bool, DependencyVersion | None]] = []
        for item in items:
            if isinstance(item, AffectedRange):
                cpe_name, previous, exclusive = item.cpe, item.affects_all_previous, item.excludes_ceiling
            else:
                cpe_name, previous = item
                exclusive = False
            try:
                version = version_from_cpe(parse_cpe(cpe_name))
            except MalformedIdentifier as e:
                logger.debug("Skipping range %s: %s", cpe_name, e)
                continue
            ranges.append((cpe_name, bool(previous), exclusive, version))

        for cpe_name, previous, _, version in ranges:
            if is_wildcard(version):
                return cpe_name, previous

        if is_wildcard(identified_version) or not identified_version.parts:
            for cpe_name, previous, _, _ in ranges:
                if previous:
                    return cpe_name, previous
            return None

        identified_major = identified_version.major
        majors_affecting_all_previous: set[str] = set()
        major_hint: str | None = None
        for _, previous, _, version in ranges:
            if previous:
                if version.major == identified_major:
                    major_hint = version.major
                majors_affecting_all_previous.add(version.major)

        can_skip = major_hint is not None and len(majors_affecting_all_previous) > 1

        for cpe_name, previous, _, version in ranges:
            if previous:
                continue
            if can_skip and version.major != major_hint:
                continue
            if identified_version == version:
                return cpe_name, previous

        distinct_majors = (vendor.lower(), product.lower()) in self.distinct_major_products
        for cpe_name, previous, exclusive, version in ranges:
            if not previous:
                continue
            if can_skip and version.major != major_hint:
                continue
            if distinct_majors and identified_major != version.major:
                continue
            order = compare(identified_version, version)
            if order < 0 or (order == 0 and not exclusive):
                return cpe_name, previous
        return None
