"""CPE identifier parsing.

Both the CPE 2.2 URI binding (``cpe:/a:apache:struts:2.0.1``) and the CPE
2.3 formatted string binding (``cpe:2.3:a:apache:struts:2.0.1:*:*:*:*:*:*:*``)
are accepted.  Only the components the matcher needs are kept.
"""

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

from .errors import MalformedIdentifier

CPE22_PREFIX = "cpe:/"
CPE23_PREFIX = "cpe:2.3:"

_BAD_PERCENT = re.compile(r"%(?![0-9a-fA-F]{2})")
_CPE23_SPLIT = re.compile(r"(?<!\\):")
_CPE23_UNESCAPE = re.compile(r"\\(.)")
_CPE23_ESCAPE = re.compile(r"([^A-Za-z0-9._-])")


@dataclass(frozen=True)
class Cpe:
    """Decoded CPE components.

    Attributes:
        name: The identifier exactly as it was given.
        part: ``a`` (application), ``o`` (operating system) or ``h`` (hardware).
        vendor: Vendor component (lowercase).
        product: Product component (lowercase).
        version: Version component, or ``None`` when unspecified.
        update: Update/revision component, or ``None``.
        edition: Edition component, or ``None``.
    """

    name: str
    part: str
    vendor: str
    product: str
    version: str | None = None
    update: str | None = None
    edition: str | None = None

    @property
    def version_text(self) -> str | None:
        """Version including the update component, e.g. ``1.1.rc2``."""
        if not self.version:
            return None
        if self.update:
            return f"{self.version}.{self.update}"
        return self.version


def _decode22(value: str, name: str) -> str:
    if _BAD_PERCENT.search(value):
        raise MalformedIdentifier(f"Invalid escape sequence in CPE '{name}'")
    try:
        return unquote(value.replace("+", "%2B"), encoding="utf-8", errors="strict")
    except UnicodeDecodeError as e:
        raise MalformedIdentifier(f"Unable to decode CPE '{name}': {e}") from e


def _decode23(value: str) -> str | None:
    if value in ("*", ""):
        return None
    return _CPE23_UNESCAPE.sub(r"\1", value)


def parse_cpe(name: str) -> Cpe:
    """Parse a CPE 2.2 URI or 2.3 formatted string.

    Args:
        name: The CPE identifier.

    Returns:
        The decoded ``Cpe``.

    Raises:
        MalformedIdentifier: if the identifier cannot be decoded or lacks a
            vendor and product.
    """
    if not name:
        raise MalformedIdentifier("Empty CPE identifier")

    if name.startswith(CPE23_PREFIX):
        fields = [_decode23(f) for f in _CPE23_SPLIT.split(name[len(CPE23_PREFIX):])]
        fields += [None] * (6 - len(fields))
        part, vendor, product, version, update, edition = fields[:6]
    elif name.startswith(CPE22_PREFIX):
        raw = name[len(CPE22_PREFIX):].split(":")
        decoded: list[str | None] = [_decode22(f, name) or None for f in raw]
        decoded += [None] * (6 - len(decoded))
        part, vendor, product, version, update, edition = decoded[:6]
    else:
        raise MalformedIdentifier(f"Not a CPE identifier: '{name}'")

    if not vendor or not product:
        raise MalformedIdentifier(f"CPE '{name}' is missing a vendor or product")

    return Cpe(
        name=name,
        part=(part or "a").lower(),
        vendor=vendor.lower(),
        product=product.lower(),
        version=version,
        update=update,
        edition=edition,
    )


def build_cpe22(vendor: str, product: str, version: str | None = None, part: str = "a") -> str:
    """Build a CPE 2.2 URI from its components, percent-encoding each one."""
    name = f"{CPE22_PREFIX}{part}:{_encode22(vendor.lower())}:{_encode22(product.lower())}"
    if version:
        name += f":{_encode22(version)}"
    return name


def with_version(name: str, version: str) -> str:
    """Return ``name`` with its version component replaced.

    Used to turn a product-wide range (``*`` version with an upper bound)
    into a concrete ceiling entry.
    """
    if name.startswith(CPE23_PREFIX):
        fields = _CPE23_SPLIT.split(name[len(CPE23_PREFIX):])
        fields += ["*"] * (4 - len(fields))
        fields[3] = _CPE23_ESCAPE.sub(r"\\\1", version)
        return CPE23_PREFIX + ":".join(fields)
    cpe = parse_cpe(name)
    return build_cpe22(cpe.vendor, cpe.product, version, cpe.part)


def _encode22(value: str) -> str:
    return quote(value, safe="._-~")
