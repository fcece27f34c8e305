"""Version parsing, range matching and feed overrides."""

from __future__ import annotations

import pytest

from conftest import record
from threatscope.matching.version_matcher import (
    VersionMatcher,
    compare_versions,
    is_vulnerable,
    normalize_version,
    parse_version,
)


@pytest.mark.parametrize(
    ("candidate", "max_version", "min_version", "expected"),
    [
        ("1.23.5", "1.24.0", "0.0", True),
        ("1.24.0", "1.24.0", "0.0", False),
        ("1.9", "1.10", "1.0", True),
        ("0.9", "1.10", "1.0", False),
        ("1.0", "1.10", "1.0", True),
        ("1.24", "1.24.0", "0.0", False),
        ("1.23", "1.24.0.0", "", True),
        ("2.0", "1.24", "0.0", False),
    ],
)
def test_is_vulnerable_half_open_range(candidate, max_version, min_version, expected) -> None:
    assert is_vulnerable(candidate, max_version, min_version) is expected


def test_comparison_is_numeric() -> None:
    assert compare_versions("1.9", "1.10") == -1
    assert compare_versions("1.10", "1.9") == 1
    assert compare_versions("1.2", "1.2.0.0") == 0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("v1.23.17+k3s1", "1.23.17"),
        ("5.15.0-91-generic", "5.15.0"),
        (" 20.10.7 ", "20.10.7"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_strips_decoration(raw, expected) -> None:
    assert normalize_version(raw) == expected


def test_kernel_release_is_compared_without_distro_suffix() -> None:
    assert is_vulnerable("5.10.0-8-amd64", "5.16.11", "5.8")


def test_malformed_component_reads_as_zero() -> None:
    assert parse_version("1.x.3") == ((1, 0, 3), False)
    assert is_vulnerable("1.x.3", "1.2", "0.0")


def test_fail_closed_refuses_malformed_versions() -> None:
    matcher = VersionMatcher(fail_open=False)

    assert matcher.is_vulnerable("1.x.3", "1.2", "0.0") is False
    assert matcher.is_vulnerable("1.1.3", "1.2", "0.0") is True


@pytest.mark.parametrize("sentinel", ["*", "-", ""])
def test_fail_closed_accepts_no_lower_bound_sentinels(sentinel) -> None:
    matcher = VersionMatcher(fail_open=False)

    assert matcher.is_vulnerable("1.1", "1.2", sentinel) is True
    assert matcher.is_vulnerable("1.2", "1.2", sentinel) is False


def test_empty_candidate_never_matches() -> None:
    assert is_vulnerable("", "1.2", "0.0") is False
    assert is_vulnerable("1.0", "", "0.0") is False


def test_inclusive_upper_bound() -> None:
    assert is_vulnerable("4.8.3", "4.8.3", "0.0", max_inclusive=True)
    assert not is_vulnerable("4.8.4", "4.8.3", "0.0", max_inclusive=True)


def test_override_corrects_recorded_range_before_comparison() -> None:
    dirty_cow = record("CVE-2016-5195", "2.6.22", "4.8")

    assert VersionMatcher().match(dirty_cow, "4.8.2")
    assert not VersionMatcher(overrides={}).match(dirty_cow, "4.8.2")
    assert not VersionMatcher().match(dirty_cow, "4.8.3")


def test_override_max_is_exclusive_even_for_inclusive_feed_ranges() -> None:
    dirty_cow = record("CVE-2016-5195", "2.6.22", "4.8", max_inclusive=True)

    assert VersionMatcher().match(dirty_cow, "4.8.2")
    assert not VersionMatcher().match(dirty_cow, "4.8.3")
    custom = VersionMatcher(overrides={"CVE-2016-5195": {"max_version": "4.8.3"}})
    assert not custom.match(dirty_cow, "4.8.3")


def test_override_leaves_other_records_alone() -> None:
    other = record("CVE-2022-0847", "5.8", "5.16.11")

    assert VersionMatcher().apply_overrides(other) is other
