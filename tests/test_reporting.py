"""Tests for scoring and report generation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import ListLogSink, make_settings

from reconpipe.db import _init_test_database, store_findings
from reconpipe.pipeline import PipelineRun, StageRunner
from reconpipe.pipeline.reporting import (
    build_summary,
    failure_summary,
    report_failed_summary,
    safety_score,
    severity_counts,
    write_report,
)
from reconpipe.scan_log import ScanLog
from reconpipe.types import Finding, PortFinding


def _f(severity: str, name: str = "finding") -> Finding:
    return Finding(source="nuclei", name=name, severity=severity)


def _runner(sink: ListLogSink) -> StageRunner:
    executor = MagicMock()
    executor.scan_log = ScanLog(sink)
    return StageRunner(executor, MagicMock(), make_settings())


class TestSafetyScore:
    def test_no_findings(self):
        assert safety_score([]) == 100

    def test_twelve_medium(self):
        assert safety_score([_f("medium")] * 12) == 76

    def test_weights(self):
        assert safety_score([_f("critical"), _f("high"), _f("low"), _f("info")]) == 69

    def test_unknown_severity_charged_as_medium(self):
        assert safety_score([_f("weird")]) == 98

    def test_case_insensitive(self):
        assert safety_score([_f("HIGH")]) == 90

    def test_floor_at_zero(self):
        assert safety_score([_f("critical")] * 10) == 0


class TestSeverityCounts:
    def test_most_severe_first(self):
        counts = severity_counts([_f("low"), _f("critical"), _f("low"), _f("bogus")])
        assert list(counts.items()) == [("critical", 1), ("low", 2), ("bogus", 1)]


class TestBuildSummary:
    def test_contents(self):
        run = PipelineRun(scan_run_id="scan-1", domain="example.com")
        run.facts.host_status = "up"
        run.facts.ports = [
            PortFinding(port=443, protocol="tcp", state="open", service="https", version="nginx"),
            PortFinding(port=8080, protocol="tcp", state="closed", service="http-proxy"),
        ]
        run.facts.http = {
            "technologies": [{"name": "nginx", "category": "Web Server", "version": "1.24"}],
            "missing_headers": ["CSP", "HSTS"],
        }
        findings = [_f("low", "Info leak"), _f("critical", "RCE")]

        summary = build_summary(run, findings, 79)

        assert summary.startswith("### Scan Report: example.com")
        assert "**Safety Score:** 79/100" in summary
        assert "**Host Status:** up" in summary
        assert "**Open Ports:** 1" in summary
        assert "- 443/tcp https nginx" in summary
        assert "8080" not in summary
        assert "- nginx 1.24 (Web Server)" in summary
        assert "**Missing security headers:** CSP, HSTS" in summary
        assert summary.index("RCE") < summary.index("Info leak")

    def test_skipped_stage_reason(self):
        run = PipelineRun(scan_run_id="scan-1", domain="example.com")
        run.skipped["vuln_scan"] = "No web services found"
        assert "> vuln_scan: No web services found" in build_summary(run, [], 100)


class TestFailureSummaries:
    def test_report_failed(self):
        text = report_failed_summary(KeyError("technologies"))
        assert text.startswith("### Report Generation Failed")
        assert "**Error:** 'technologies'" in text

    def test_report_failed_empty_message(self):
        assert "**Error:** Unknown error" in report_failed_summary(RuntimeError())

    def test_recon_failed(self):
        assert failure_summary("nmap failed (timed out)") == (
            "### Recon Failed\n\n**Error:** nmap failed (timed out)"
        )
        assert failure_summary(None).endswith("Unknown error")


class TestWriteReport:
    @pytest.fixture(autouse=True)
    async def _setup_db(self):
        await _init_test_database()

    async def test_uses_stored_findings(self, log_sink):
        run = PipelineRun(scan_run_id="scan-1", domain="example.com")
        await store_findings("scan-1", [_f("high"), _f("medium")])

        await write_report(_runner(log_sink), run)

        assert run.vuln_count == 2
        assert run.safety_score == 88
        assert run.summary.startswith("### Scan Report")
        assert "Safety Score calculated: 88/100 from 2 findings" in log_sink.messages("info")

    async def test_falls_back_to_in_memory_findings(self, log_sink):
        run = PipelineRun(scan_run_id="scan-1", domain="example.com")
        run.facts.findings = [_f("critical")]

        await write_report(_runner(log_sink), run)

        assert run.safety_score == 80
        assert run.vuln_count == 1

    async def test_summary_failure_does_not_raise(self, log_sink):
        run = PipelineRun(scan_run_id="scan-1", domain="example.com")
        run.facts.http = {"technologies": [{"version": "1.0"}]}  # no name/category

        await write_report(_runner(log_sink), run)

        assert run.summary.startswith("### Report Generation Failed")
