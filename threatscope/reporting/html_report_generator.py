"""
@file html_report_generator.py
@brief HTML threat report generation using Jinja2 templates

Renders every target scanned in a run into a single HTML dashboard with
statistics, per-target finding tables and severity-based color coding.

@details
Features:
- Targets scanned, vulnerable subjects and threat totals
- Severity distribution across the run
- Findings per target, worst threat first
- Template shipped in reporting/templates/threat_report.html
"""

import logging
import os
from datetime import datetime

from jinja2 import Environment, FileSystemLoader, select_autoescape

from threatscope.caching.constants import CACHE_DIR
from threatscope.reporting.report_generator import severity_breakdown

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")

SEVERITY_COLORS = {
    "critical": "#7C3AED",
    "high": "#DC2626",
    "medium": "#EAB308",
    "low": "#0EA5E9",
}


def aggregate_reports(reports):
    """
    Collect template data from the reports of one run.

    @param reports list Report objects, one per target
    @return dict {'targets': [...], 'statistics': {...}}
    """
    targets = []
    statistics = {
        "total_targets": len(reports),
        "total_findings": 0,
        "total_threats": 0,
        "severity_breakdown": {},
    }

    for report in reports:
        breakdown = severity_breakdown(report)
        targets.append({
            "name": report.target,
            "findings": list(report),
            "total_threats": report.total_threats(),
            "severity_distribution": breakdown,
        })
        statistics["total_findings"] += len(report)
        statistics["total_threats"] += report.total_threats()
        for severity, count in breakdown.items():
            statistics["severity_breakdown"][severity] = statistics["severity_breakdown"].get(severity, 0) + count

    return {"targets": targets, "statistics": statistics}


def generate_html_report(reports, output_file=None):
    """
    Generate the HTML dashboard for a run.

    @param reports list Report objects, one per target
    @param output_file str Output path (default: cache/threat_report.html)

    @return str|None Path to the generated file, None when there is nothing to render
    """
    if output_file is None:
        output_file = os.path.join(CACHE_DIR, "threat_report.html")

    if not reports:
        logger.warning("No scan results to render")
        return None

    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("threat_report.html")

    data = aggregate_reports(reports)
    html_content = template.render(
        targets=data["targets"],
        statistics=data["statistics"],
        severity_colors=SEVERITY_COLORS,
        generated_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    )

    os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
    with open(output_file, "w") as f:
        f.write(html_content)

    logger.info(f"HTML report generated: {output_file}")
    return output_file
