"""
@file report_generator.py
@brief JSON threat report generation

Writes the findings of one scanned target to a structured JSON file so they
can be fed into dashboards, ticketing or SIEM tooling.

@details
**Report Format:**

```json
{
  "target": "web01",
  "timestamp": "2026-01-06T12:00:00.000000",
  "findings": [
    {
      "subject_id": "4f1c2a9b01de",
      "subject_name": "web",
      "threats": [
        {
          "param": "privileged",
          "value": "true",
          "type": "Privileged container",
          "describe": "Container is running in privileged mode, ...",
          "reference": "Remove --privileged, ...",
          "severity": "critical"
        }
      ]
    }
  ]
}
```

Findings keep the order of the Report and threats keep their severity
ranking. The file is written to cache/reports/{target}/threat_report.json and
overwritten on every run.
"""

import json
import logging
import os
from datetime import datetime

from threatscope.caching.constants import CACHE_DIR
from threatscope.reporting.aggregator import severity_rank

logger = logging.getLogger(__name__)


def build_report_dict(report):
    """Serializable view of a Report."""
    return {
        "target": report.target,
        "timestamp": datetime.now().isoformat(),
        "findings": [finding.to_dict() for finding in report],
    }


def severity_breakdown(report):
    """Count threats per severity, ordered critical first."""
    counts = {}
    for finding in report:
        for threat in finding.threats:
            counts[threat.severity] = counts.get(threat.severity, 0) + 1
    return dict(sorted(counts.items(), key=lambda item: severity_rank(item[0])))


def save_target_report(report, cache_dir=CACHE_DIR):
    """
    Save the JSON report of one target.

    @param report Report Findings of the target
    @param cache_dir str Root of the cache directory

    @return str|None Path to the written file, None when writing failed
    """
    report_dir = os.path.join(cache_dir, "reports", report.target or "unnamed")
    os.makedirs(report_dir, exist_ok=True)
    report_file = os.path.join(report_dir, "threat_report.json")

    try:
        with open(report_file, "w") as f:
            f.write(json.dumps(build_report_dict(report), indent=2))
        logger.info(f"Threat report saved for {report.target}: {report_file}")
        return report_file
    except OSError as e:
        logger.error(f"Error saving threat report for {report.target}: {e}")
        return None
