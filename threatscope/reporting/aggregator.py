"""
@file aggregator.py
@brief Turns the threats of one subject into a ranked finding

The same ranking is used for containers, cluster objects and hosts so the
worst threat is always listed first. Severities are never changed here,
only reordered.
"""

from threatscope.core.models import Finding

SEVERITY_RANK = {
    "critical": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}

# Free-text feed levels that are not in the table sort after "low".
UNKNOWN_RANK = len(SEVERITY_RANK)


def severity_rank(severity) -> int:
    return SEVERITY_RANK.get((severity or "").lower(), UNKNOWN_RANK)


def sort_severity(threats) -> list:
    """Stable sort by severity rank; equal severities keep discovery order."""
    return sorted(threats, key=lambda t: severity_rank(t.severity))


def aggregate(subject_id, subject_name, threats):
    """
    Build the finding of one subject.

    @return Finding|None None when no threat was found
    """
    if not threats:
        return None
    return Finding(
        subject_id=subject_id,
        subject_name=subject_name,
        threats=tuple(sort_severity(threats)),
    )
