"""Stage 2: port enumeration.

nmap is the one required tool in the pipeline; without it there is nothing
to branch on.  Directory brute-forcing only runs when a web port is open.
"""

from __future__ import annotations

import shlex

from reconpipe import db
from reconpipe.errors import SessionStartError
from reconpipe.parsers import parse_gobuster, parse_nmap
from reconpipe.pipeline.runner import StageRunner
from reconpipe.pipeline.stages import Stage
from reconpipe.pipeline.state import PipelineRun
from reconpipe.pipeline.transitions import has_web_service

STAGE = Stage.PORT_SCAN


async def scan_ports(runner: StageRunner, run: PipelineRun) -> None:
    scan_run_id = run.scan_run_id
    if not await runner.sessions.ensure_session_alive(scan_run_id):
        raise SessionStartError(
            "Session container unavailable for port scan", scan_run_id=scan_run_id
        )

    target = shlex.quote(run.domain)
    facts = run.facts

    result = await runner.run_tool(
        run,
        STAGE,
        "nmap",
        f"nmap -sT -Pn -F --max-retries 1 --host-timeout 120s {target} 2>/dev/null",
        parser=parse_nmap,
    )
    parsed = result.parsed or {}
    facts.host_status = parsed.get("host_status", "unknown")
    facts.ports = parsed.get("ports", [])

    open_ports = facts.open_ports
    await db.update_scan_run(scan_run_id, total_ports=len(open_ports))
    listing = ", ".join(f"{p.port}/{p.protocol} ({p.service})" for p in open_ports) or "none"
    await runner.scan_log.info(
        scan_run_id, STAGE, f"Host {facts.host_status}, open ports: {listing}"
    )

    if not has_web_service(facts.ports, runner.settings.web_ports):
        return

    result = await runner.run_tool(
        run,
        STAGE,
        "gobuster",
        f"gobuster dir -u https://{target} -w /usr/share/wordlists/dirb/common.txt "
        "-t 20 --timeout 10s -q --no-error 2>/dev/null | head -30",
        parser=parse_gobuster,
        tolerate_failure=True,
        timeout=120,
    )
    facts.directories = result.parsed or []
    await runner.scan_log.info(
        scan_run_id, STAGE, f"Discovered {len(facts.directories)} directories"
    )
