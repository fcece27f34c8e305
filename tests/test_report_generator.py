"""JSON and HTML report output."""

from __future__ import annotations

import json

from threatscope.core.models import Finding, Report, Threat
from threatscope.reporting.html_report_generator import generate_html_report
from threatscope.reporting.report_generator import save_target_report, severity_breakdown


def sample_report() -> Report:
    report = Report(target="web01")
    report.append(Finding("4f1c2a9b01de", "web", (
        Threat("privileged", "true", "Privileged container", "runs privileged", "drop it", "critical"),
        Threat("env", "DB_PASSWORD", "Weak password", "<script>alert(1)</script>", "rotate", "medium"),
    )))
    report.append(Finding("Host/web01", "web01", (
        Threat("Docker server", "18.09.1", "Engine version", "affected by CVE-2019-5736", "runc", "high"),
    )))
    return report


def test_json_report_layout(tmp_path) -> None:
    path = save_target_report(sample_report(), cache_dir=str(tmp_path))

    with open(path) as f:
        data = json.load(f)

    assert path == str(tmp_path / "reports" / "web01" / "threat_report.json")
    assert data["target"] == "web01"
    assert [f["subject_id"] for f in data["findings"]] == ["4f1c2a9b01de", "Host/web01"]
    assert data["findings"][0]["threats"][0] == {
        "param": "privileged",
        "value": "true",
        "type": "Privileged container",
        "describe": "runs privileged",
        "reference": "drop it",
        "severity": "critical",
    }


def test_severity_breakdown_is_ordered() -> None:
    assert list(severity_breakdown(sample_report()).items()) == [("critical", 1), ("high", 1), ("medium", 1)]


def test_html_report_escapes_content(tmp_path) -> None:
    output = tmp_path / "report.html"

    path = generate_html_report([sample_report(), Report(target="db01")], output_file=str(output))

    html = output.read_text()
    assert path == str(output)
    assert "4f1c2a9b01de" in html
    assert "&lt;script&gt;" in html
    assert "<script>alert(1)</script>" not in html
    assert "No threats found." in html


def test_html_report_needs_results(tmp_path) -> None:
    assert generate_html_report([], output_file=str(tmp_path / "report.html")) is None
