"""Unit tests for vulnsync.versions — tokenizing, ordering and extraction."""

import pytest

from vulnsync.versions import (
    DependencyVersion,
    compare,
    equals,
    is_wildcard,
    parse,
    parse_pre_version,
    parse_version,
    tokenize,
)

# ── tokenize ─────────────────────────────────────────────────────────────────


class TestTokenize:
    def test_dotted_numbers(self):
        assert tokenize("1.2.3") == ["1", "2", "3"]

    def test_letters_with_digits(self):
        assert tokenize("2.0.1-RC2") == ["2", "0", "1", "rc2"]

    def test_trailing_qualifier(self):
        assert tokenize("1.0-beta") == ["1", "0", "beta"]

    def test_unrecognized_kept_whole(self):
        assert tokenize("-") == ["-"]

    def test_none(self):
        assert tokenize(None) == []


# ── equality and ordering ────────────────────────────────────────────────────


class TestCompare:
    def test_parse_is_deterministic(self):
        assert parse("1.2.3").parts == parse("1.2.3").parts
        assert compare(parse("1.2.3"), parse("1.2.3")) == 0

    def test_numeric_not_lexicographic(self):
        assert compare(parse("1.10"), parse("1.9")) > 0

    def test_string_tokens_lexicographic(self):
        assert compare(parse("1.rc1"), parse("1.rc2")) < 0

    def test_shorter_sorts_first(self):
        assert compare(parse("1.2"), parse("1.2.0")) < 0

    def test_none_sorts_first(self):
        assert compare(parse("1.0"), None) == 1

    def test_sorting_uses_compare(self):
        versions = sorted(parse(v) for v in ("1.10", "1.2", "1.9"))
        assert [str(v) for v in versions] == ["1.2", "1.9", "1.10"]

    def test_rich_comparisons(self):
        assert parse("2.0") < parse("2.5")
        assert parse("2.5") >= parse("2.5")
        assert parse("3") > parse("2.9.9")


class TestEquals:
    def test_trailing_zero_ignored(self):
        assert parse("1.2") == parse("1.2.0")

    def test_equality_and_ordering_disagree(self):
        a, b = parse("1.2"), parse("1.2.0")
        assert a == b
        assert compare(a, b) != 0

    def test_single_token_never_equals_three(self):
        assert not equals(parse("1"), parse("1.0.0"))

    def test_single_token_equals_two(self):
        assert equals(parse("1"), parse("1.0"))

    def test_different_values(self):
        assert parse("1.2.1") != parse("1.2.0")

    def test_hash_consistent_with_equality(self):
        assert hash(parse("1.2")) == hash(parse("1.2.0"))
        assert len({parse("1.2"), parse("1.2.0")}) == 1


class TestDependencyVersion:
    def test_str_joins_tokens(self):
        assert str(DependencyVersion("2.0.1-RC2")) == "2.0.1.rc2"

    def test_major(self):
        assert parse("2.5.10").major == "2"
        assert DependencyVersion(parts=[]).major is None

    def test_matches_three_levels(self):
        assert parse("2.3.16").matches_at_least_three_levels(parse("2.3.16.1"))
        assert not parse("2.3.15").matches_at_least_three_levels(parse("2.3.16"))
        assert not parse("2.3.16").matches_at_least_three_levels(None)


# ── parse_version ────────────────────────────────────────────────────────────


class TestParseVersion:
    def test_from_file_name(self):
        assert str(parse_version("struts2-core-2.3.16.jar")) == "2.3.16"

    def test_nothing_found(self):
        assert parse_version("no digits here") is None

    def test_ambiguous_text(self):
        assert parse_version("1.2 and 3.4") is None

    def test_first_match_only(self):
        assert str(parse_version("1.2 and 3.4", first_match_only=True)) == "1.2"

    def test_single_number(self):
        assert str(parse_version("5")) == "5"

    def test_wildcard(self):
        assert is_wildcard(parse_version("-"))

    def test_none(self):
        assert parse_version(None) is None


class TestIsWildcard:
    @pytest.mark.parametrize("version", [None, DependencyVersion("-"), DependencyVersion(parts=["-"])])
    def test_wildcards(self, version):
        assert is_wildcard(version)

    def test_concrete(self):
        assert not is_wildcard(parse("1.0"))


class TestParsePreVersion:
    def test_artifact_name(self):
        assert parse_pre_version("struts2-core-2.3.16.jar") == "struts2-core"

    def test_no_version(self):
        assert parse_pre_version("commons") == "commons"
