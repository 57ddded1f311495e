"""Stage 3: vulnerability scanning of the discovered web services."""

from __future__ import annotations

import shlex

from reconpipe import db
from reconpipe.errors import SessionStartError
from reconpipe.parsers import parse_nikto, parse_nuclei
from reconpipe.pipeline.runner import StageRunner
from reconpipe.pipeline.stages import Stage
from reconpipe.pipeline.state import PipelineRun

STAGE = Stage.VULN_SCAN


async def scan_vulnerabilities(runner: StageRunner, run: PipelineRun) -> None:
    scan_run_id = run.scan_run_id
    if not await runner.sessions.ensure_session_alive(scan_run_id):
        raise SessionStartError(
            "Session container unavailable for vulnerability scan", scan_run_id=scan_run_id
        )

    target = shlex.quote(run.domain)

    nuclei = await runner.run_tool(
        run,
        STAGE,
        "nuclei",
        f"nuclei -u https://{target} -severity low,medium,high -jsonl -timeout 5 "
        "-retries 1 -rate-limit 25 2>/dev/null | head -50",
        parser=parse_nuclei,
        tolerate_failure=True,
    )
    nikto = await runner.run_tool(
        run,
        STAGE,
        "nikto",
        f"nikto -h https://{target} -timeout 10 -maxtime 60 -nointeractive 2>/dev/null "
        "| head -40",
        parser=parse_nikto,
        tolerate_failure=True,
        timeout=180,
    )

    findings = [*(nuclei.parsed or []), *(nikto.parsed or [])]
    run.facts.findings = findings
    run.vuln_count = await db.store_findings(scan_run_id, findings)
    await runner.scan_log.info(
        scan_run_id,
        STAGE,
        f"Vulnerability scan found {len(nuclei.parsed or [])} nuclei and "
        f"{len(nikto.parsed or [])} nikto findings",
    )

    # Reporting needs no container
    await runner.sessions.end_session(scan_run_id)
