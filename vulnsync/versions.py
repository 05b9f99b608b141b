"""Version tokenization and ordering.

A version string is split into an ordered list of string tokens.  Numeric
tokens compare as integers and everything else compares lexicographically.

Equality and ordering deliberately disagree on sequences of different
length: ``DependencyVersion("1.2") == DependencyVersion("1.2.0")`` is true
(trailing ``"0"`` tokens are ignored) while ``compare("1.2", "1.2.0")`` is
negative (the shorter sequence sorts first).  Range matching depends on this
exact behaviour, so it is preserved here.
"""

import re
from typing import Iterator

WILDCARD = "-"

_TOKEN_RX = re.compile(r"(\d+|[a-z]+\d+|(release|beta|alpha)$)", re.ASCII)

_RX_VERSION = re.compile(
    r"\d+(\.\d+){1,6}([._-]?(snapshot|release|final|alpha|beta|rc$|[a-zA-Z]{1,3}[_-]?\d{1,8}|[a-z]\b|\d{1,8}\b))?",
    re.IGNORECASE | re.ASCII,
)
_RX_SINGLE_VERSION = re.compile(
    r"\d+(\.\d+){0,6}([._-]?(snapshot|release|final|alpha|beta|rc$|[a-zA-Z]{1,3}[_-]?\d{1,8}))?",
    re.ASCII,
)
_RX_PRE_VERSION = re.compile(r"^(.+)[_-](\d+\.\d{1,6})+")


class DependencyVersion:
    """An ordered sequence of version tokens.

    Attributes:
        parts: The extracted tokens, in order of appearance.
    """

    __slots__ = ("parts",)

    def __init__(self, version: str | None = None, parts: list[str] | None = None):
        if parts is not None:
            self.parts = list(parts)
        else:
            self.parts = tokenize(version)

    def __iter__(self) -> Iterator[str]:
        return iter(self.parts)

    def __len__(self) -> int:
        return len(self.parts)

    def __str__(self) -> str:
        return ".".join(self.parts)

    def __repr__(self) -> str:
        return f"DependencyVersion({str(self)!r})"

    @property
    def major(self) -> str | None:
        """The leading token, or ``None`` for an empty sequence."""
        return self.parts[0] if self.parts else None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DependencyVersion):
            return NotImplemented
        return equals(self, other)

    def __hash__(self) -> int:
        trimmed = list(self.parts)
        while trimmed and trimmed[-1] == "0":
            trimmed.pop()
        return hash(tuple(trimmed))

    def __lt__(self, other: "DependencyVersion") -> bool:
        return compare(self, other) < 0

    def __le__(self, other: "DependencyVersion") -> bool:
        return compare(self, other) <= 0

    def __gt__(self, other: "DependencyVersion") -> bool:
        return compare(self, other) > 0

    def __ge__(self, other: "DependencyVersion") -> bool:
        return compare(self, other) >= 0

    def matches_at_least_three_levels(self, other: "DependencyVersion | None") -> bool:
        """Check whether the first three tokens agree.

        Tokens beyond the third must sort strictly lower on ``self`` than on
        ``other``.  Sequences whose lengths differ by three or more never
        match.

        Args:
            other: Version to compare against.

        Returns:
            ``True`` when the versions agree on at least three levels.
        """
        if other is None:
            return False
        if abs(len(self.parts) - len(other.parts)) >= 3:
            return False
        for i in range(min(len(self.parts), len(other.parts))):
            mine = self.parts[i]
            theirs = other.parts[i]
            if i >= 3:
                if mine.lower() >= theirs.lower():
                    return False
            elif mine != theirs:
                return False
        return True


def tokenize(version: str | None) -> list[str]:
    """Split a version string into tokens.

    Recognized runs are digits, letters followed by digits, and a trailing
    ``release``/``beta``/``alpha``.  When nothing is recognized the whole
    string is a single token, which is how the ``"-"`` wildcard survives.

    Args:
        version: Free-form version string; ``None`` yields no tokens.

    Returns:
        List of tokens in order of appearance.
    """
    if version is None:
        return []
    parts = [m.group(0) for m in _TOKEN_RX.finditer(version.lower())]
    if not parts:
        parts.append(version)
    return parts


def parse(text: str | None) -> DependencyVersion:
    """Parse ``text`` into a ``DependencyVersion``."""
    return DependencyVersion(text)


def compare(a: DependencyVersion, b: DependencyVersion | None) -> int:
    """Order two versions.

    Walks the tokens pairwise; the first differing pair decides, numerically
    when both are integers and lexicographically otherwise.  When every
    shared position is equal the shorter sequence is less; there is no zero
    padding here.

    Returns:
        Negative, zero or positive like ``cmp``.  ``None`` sorts first.
    """
    if b is None:
        return 1
    left = a.parts
    right = b.parts
    for l_str, r_str in zip(left, right):
        if l_str == r_str:
            continue
        try:
            l_num = int(l_str)
            r_num = int(r_str)
        except ValueError:
            return -1 if l_str < r_str else 1
        if l_num != r_num:
            return -1 if l_num < r_num else 1
    return (len(left) > len(right)) - (len(left) < len(right))


def equals(a: DependencyVersion, b: DependencyVersion) -> bool:
    """Test two versions for equality, treating missing trailing tokens as ``"0"``.

    A single-token version never equals a version of three or more tokens,
    so ``"1"`` does not equal ``"1.0.0"``.
    """
    if a is b:
        return True
    shorter = min(len(a.parts), len(b.parts))
    longer = max(len(a.parts), len(b.parts))
    if shorter == 1 and longer >= 3:
        return False
    for i in range(shorter):
        if a.parts[i] != b.parts[i]:
            return False
    for rest in (a.parts[shorter:], b.parts[shorter:]):
        if any(p != "0" for p in rest):
            return False
    return True


def is_wildcard(version: DependencyVersion | None) -> bool:
    """Whether ``version`` stands for "unversioned / any version"."""
    return version is None or str(version) == WILDCARD


def parse_version(text: str | None, first_match_only: bool = False) -> DependencyVersion | None:
    """Extract a version number from free text.

    Example: ``"struts2-core-2.3.16.jar"`` yields ``2.3.16``.

    Args:
        text: Text that may contain a version.
        first_match_only: Accept the first candidate even when the text
            contains more than one thing that looks like a version.

    Returns:
        The parsed version, or ``None`` when nothing (or, unless
        ``first_match_only``, more than one candidate) was found.
    """
    if text is None:
        return None
    if text == WILDCARD:
        return DependencyVersion(parts=[WILDCARD])

    version: str | None = None
    matches = _RX_VERSION.finditer(text)
    first = next(matches, None)
    if first is not None:
        version = first.group(0)
        if not first_match_only and next(matches, None) is not None:
            return None

    if version is None:
        singles = _RX_SINGLE_VERSION.finditer(text)
        first = next(singles, None)
        if first is None:
            return None
        version = first.group(0)
        if next(singles, None) is not None:
            return None

    if version.endswith("-py2") and len(version) > 4:
        version = version[:-4]
    return DependencyVersion(version)


def parse_pre_version(text: str) -> str:
    """Return the part of ``text`` preceding its version, e.g. the artifact name."""
    if parse_version(text) is None:
        return text
    m = _RX_PRE_VERSION.search(text)
    if m:
        return m.group(1)
    return text
