"""Stage 4: scoring and the markdown summary.

The safety score is a weighted penalty over finding severities:

    critical 20, high 10, medium 2, low 1, info 0

so twelve medium findings cost 24 points and score 76/100.  Unknown
severities are charged as medium.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from reconpipe import db
from reconpipe.logger import logger
from reconpipe.parsers import SEVERITIES
from reconpipe.pipeline.runner import StageRunner
from reconpipe.pipeline.stages import Stage
from reconpipe.pipeline.state import PipelineRun
from reconpipe.types import Finding

STAGE = Stage.REPORTING

SEVERITY_WEIGHTS: dict[str, int] = {
    "critical": 20,
    "high": 10,
    "medium": 2,
    "low": 1,
    "info": 0,
}
_UNKNOWN_SEVERITY_WEIGHT = SEVERITY_WEIGHTS["medium"]


def safety_score(findings: Iterable[Finding]) -> int:
    penalty = sum(
        SEVERITY_WEIGHTS.get(f.severity.lower(), _UNKNOWN_SEVERITY_WEIGHT) for f in findings
    )
    return max(0, 100 - penalty)


def severity_counts(findings: Iterable[Finding]) -> dict[str, int]:
    counts = Counter(f.severity.lower() for f in findings)
    # Most severe first, unknown labels last
    ordered = {sev: counts.pop(sev) for sev in reversed(SEVERITIES) if sev in counts}
    ordered.update(counts)
    return ordered


def build_summary(run: PipelineRun, findings: list[Finding], score: int) -> str:
    facts = run.facts
    lines = [
        f"### Scan Report: {run.domain}",
        "",
        f"**Safety Score:** {score}/100",
        f"**Host Status:** {facts.host_status}",
        f"**Open Ports:** {len(facts.open_ports)}",
        f"**Vulnerabilities Found:** {len(findings)}",
    ]

    counts = severity_counts(findings)
    if counts:
        lines.append("")
        lines.append("| Severity | Count |")
        lines.append("| --- | --- |")
        lines.extend(f"| {sev} | {n} |" for sev, n in counts.items())

    if facts.open_ports:
        lines.append("")
        lines.append("#### Open Ports")
        for p in facts.open_ports:
            version = f" {p.version}" if p.version else ""
            lines.append(f"- {p.port}/{p.protocol} {p.service}{version}")

    techs = facts.http.get("technologies") or []
    if techs:
        lines.append("")
        lines.append("#### Technologies")
        lines.extend(
            f"- {t['name']} {t.get('version', '')}".rstrip() + f" ({t['category']})"
            for t in techs
        )

    missing = facts.http.get("missing_headers") or []
    if missing:
        lines.append("")
        lines.append(f"**Missing security headers:** {', '.join(missing)}")

    if findings:
        lines.append("")
        lines.append("#### Findings")
        for f in sorted(
            findings,
            key=lambda f: -SEVERITY_WEIGHTS.get(f.severity.lower(), _UNKNOWN_SEVERITY_WEIGHT),
        ):
            where = f" at {f.url}" if f.url else ""
            lines.append(f"- [{f.severity}] {f.name} ({f.source}){where}")

    for stage, reason in run.skipped.items():
        lines.append("")
        lines.append(f"> {stage}: {reason}")

    return "\n".join(lines)


def report_failed_summary(error: Exception) -> str:
    return (
        "### Report Generation Failed\n\n"
        "Scan data was collected successfully but the summary could not be generated.\n\n"
        f"**Error:** {str(error) or 'Unknown error'}"
    )


def failure_summary(error: str | None) -> str:
    return f"### Recon Failed\n\n**Error:** {error or 'Unknown error'}"


async def _load_findings(run: PipelineRun) -> list[Finding]:
    """Stored findings are authoritative; fall back to in-memory ones."""
    try:
        stored = await db.get_findings(run.scan_run_id)
    except Exception as exc:
        logger.warning("Could not load findings", scan_run_id=run.scan_run_id, err=str(exc))
        return run.facts.findings
    return stored or run.facts.findings


async def write_report(runner: StageRunner, run: PipelineRun) -> None:
    findings = await _load_findings(run)
    run.vuln_count = len(findings)
    try:
        run.safety_score = safety_score(findings)
        run.summary = build_summary(run, findings, run.safety_score)
    except Exception as exc:
        # Data is already collected; a broken summary must not fail the run
        logger.exception("Report generation failed", scan_run_id=run.scan_run_id)
        run.summary = report_failed_summary(exc)
        return

    await runner.scan_log.info(
        run.scan_run_id,
        STAGE,
        f"Safety Score calculated: {run.safety_score}/100 from {len(findings)} findings",
    )
