"""
@file version_matcher.py
@brief Dotted version comparison and vulnerable range matching

@details
Versions are compared component by component as integers, so "1.9" sorts
before "1.10". Missing trailing components count as 0. Distribution and
build suffixes are ignored ("5.15.0-91-generic" is 5.15.0, "v1.23.17+k3s1"
is 1.23.17).

A candidate is vulnerable when min_version <= candidate < max_version.
An empty min_version, or any all-zero version such as "0.0", means there is
no lower bound.

**Malformed versions:**
By default a component that is not a number is read as 0 and the
comparison goes ahead (fail-open): reporting a false positive is preferred
over silently missing a real CVE. A VersionMatcher built with
fail_open=False instead refuses to match anything it cannot parse.

**Feed corrections:**
Some feed entries carry a known-wrong range. VersionMatcher.match() applies
the override table from constants before comparing.
"""

import logging
from dataclasses import replace

from threatscope.caching.constants import KNOWN_RANGE_OVERRIDES

logger = logging.getLogger(__name__)

NO_LOWER_BOUND = ("", "-", "*")


def normalize_version(version) -> str:
    """
    Strip whitespace, a leading "v" and any "-" or "+" suffix.

    @param version str Raw version as reported by an engine, kernel or feed
    @return str Dotted version without decoration
    """
    text = (version or "").strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    for separator in ("-", "+"):
        text = text.split(separator, 1)[0]
    return text


def parse_version(version):
    """
    Split a version into integer components.

    @return tuple (components, clean) where clean is False when at least one
            component had to be replaced by 0
    """
    components = []
    clean = True
    text = normalize_version(version)
    if not text:
        return (), True

    for part in text.split("."):
        try:
            components.append(int(part))
        except ValueError:
            components.append(0)
            clean = False
    return tuple(components), clean


def _cmp_components(a, b) -> int:
    width = max(len(a), len(b))
    a = a + (0,) * (width - len(a))
    b = b + (0,) * (width - len(b))
    return (a > b) - (a < b)


def compare_versions(a, b) -> int:
    """
    Compare two versions numerically.

    @return int -1 if a < b, 0 if equal, 1 if a > b
    """
    return _cmp_components(parse_version(a)[0], parse_version(b)[0])


def is_vulnerable(candidate, max_version, min_version, max_inclusive=False) -> bool:
    """Fail-open range check, see VersionMatcher.is_vulnerable."""
    return DEFAULT_MATCHER.is_vulnerable(candidate, max_version, min_version, max_inclusive)


class VersionMatcher:
    """
    Range matcher with a configurable malformed-input policy and feed overrides.

    @param fail_open bool Treat unparseable components as 0 (True) or refuse
                          to match (False)
    @param overrides dict {cve_id: {field: value}} applied to feed records
    """

    def __init__(self, fail_open=True, overrides=None):
        self.fail_open = fail_open
        self.overrides = KNOWN_RANGE_OVERRIDES if overrides is None else overrides

    def is_vulnerable(self, candidate, max_version, min_version, max_inclusive=False) -> bool:
        candidate_parts, candidate_clean = parse_version(candidate)
        max_parts, max_clean = parse_version(max_version)
        no_lower = (min_version or "").strip() in NO_LOWER_BOUND
        min_parts, min_clean = ((), True) if no_lower else parse_version(min_version)

        if not (candidate_clean and max_clean and min_clean):
            if not self.fail_open:
                logger.debug(
                    f"Skipping comparison of malformed version {candidate!r} "
                    f"against [{min_version!r}, {max_version!r})"
                )
                return False
            logger.debug(f"Malformed version in {candidate!r}/{min_version!r}/{max_version!r}, reading as 0")

        if not candidate_parts or not max_parts:
            return False

        upper = _cmp_components(candidate_parts, max_parts)
        if upper > 0 or (upper == 0 and not max_inclusive):
            return False

        if no_lower or not any(min_parts):
            return True
        return _cmp_components(candidate_parts, min_parts) >= 0

    def apply_overrides(self, record):
        """Return the record with any known correction applied."""
        correction = self.overrides.get(record.cve_id)
        if not correction:
            return record
        logger.debug(f"Applying range override for {record.cve_id}: {correction}")
        # A corrected max is the first fixed release.
        if "max_version" in correction:
            correction = {"max_inclusive": False, **correction}
        return replace(record, **correction)

    def match(self, record, candidate) -> bool:
        """
        Check a candidate against a feed record after applying overrides.

        @param record VulnRecord Range published by the feed
        @param candidate str Version observed on the target
        """
        record = self.apply_overrides(record)
        return self.is_vulnerable(candidate, record.max_version, record.min_version, record.max_inclusive)


DEFAULT_MATCHER = VersionMatcher()
