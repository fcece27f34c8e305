"""
@file version_checks.py
@brief Engine, kernel and CNI version checks against the vulnerability feed

@details
These checks are not field predicates: they ask the feed for published
vulnerable ranges and run the observed version through the VersionMatcher.

- check_engine_version: feed queried by product name ("docker"), one threat
  per matching record, severity taken from the feed level (lowercased)
- check_kernel_version: feed queried per CVE in KERNEL_ESCAPE_CVES, one
  critical threat per CVE with a matching record
- check_cni_version: feed queried by CNI plugin name, like the engine check

A feed error never propagates: it is logged and the affected query
contributes no threats.
"""

import logging

from threatscope.caching.constants import ENGINE_PRODUCT, KERNEL_ESCAPE_CVES
from threatscope.core.errors import FeedUnavailableError
from threatscope.core.models import Severity, Threat
from threatscope.matching.version_matcher import DEFAULT_MATCHER

logger = logging.getLogger(__name__)


def _query(query, value):
    try:
        return query(value)
    except FeedUnavailableError as e:
        logger.warning(f"Feed unavailable for {value}, treating as no match: {e}")
        return []


def check_engine_version(feed, engine_version, matcher=DEFAULT_MATCHER, type_="K8s version less than v1.24"):
    """
    Check the container engine version against published engine CVEs.

    @param feed VulnFeedClient Feed to query
    @param engine_version str Server version reported by the engine
    @param matcher VersionMatcher Range matcher (overrides, malformed policy)
    @param type_ str Context label stored in Threat.type

    @return tuple (matched, threats)
    """
    logger.info(f"Begin engine version analyzing ({engine_version})")
    if not engine_version:
        return False, []

    threats = []
    for record in _query(feed.query_by_name, ENGINE_PRODUCT):
        if matcher.match(record, engine_version):
            threats.append(Threat(
                param="Docker server",
                value=engine_version,
                type=type_,
                describe=f"Docker server version is affected by {record.cve_id}",
                reference=record.description,
                severity=record.level.lower(),
            ))
    return bool(threats), threats


def check_kernel_version(feed, kernel_version, matcher=DEFAULT_MATCHER, type_="Kernel version"):
    """
    Check a kernel version against the known container-escape CVEs.

    The feed does not index kernel flaws under one product name, so the
    fixed KERNEL_ESCAPE_CVES table is walked CVE by CVE. A failed query only
    skips its own CVE.
    """
    logger.info(f"Begin kernel version analyzing ({kernel_version})")
    if not kernel_version:
        return False, []

    threats = []
    for cve, nickname in KERNEL_ESCAPE_CVES.items():
        records = _query(feed.query_by_cve_id, cve)
        if not any(matcher.match(record, kernel_version) for record in records):
            continue
        threats.append(Threat(
            param="kernel version",
            value=kernel_version,
            type=type_,
            describe=f"Kernel version is suffering the {nickname} vulnerability, "
                     "has a potential container escape.",
            reference="Upgrade kernel version or docker-desktop.",
            severity=Severity.CRITICAL.value,
        ))
    return bool(threats), threats


def check_cni_version(feed, cni, matcher=DEFAULT_MATCHER):
    """Check the detected CNI plugin version against published CVEs for the plugin."""
    logger.info(f"Begin CNI analyzing ({cni.plugin} {cni.version})")
    if not cni.version:
        return False, []

    threats = []
    for record in _query(feed.query_by_name, cni.plugin):
        if matcher.match(record, cni.version):
            threats.append(Threat(
                param="CNI plugin",
                value=f"{cni.plugin} {cni.version}",
                type="CNI version",
                describe=f"CNI plugin {cni.plugin} version is affected by {record.cve_id}",
                reference=record.description,
                severity=record.level.lower(),
            ))
    return bool(threats), threats
