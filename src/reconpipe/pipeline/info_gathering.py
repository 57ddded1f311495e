"""Stage 1: passive reconnaissance.

Starts the scan's session container, then collects DNS records, WHOIS,
subdomains, HTTP response headers, and reachability.  Every tool here is
best-effort: an empty answer is recorded, never fatal.
"""

from __future__ import annotations

import shlex

from reconpipe.errors import SessionStartError
from reconpipe.parsers import (
    parse_dig_short,
    parse_http_headers,
    parse_ping,
    parse_subdomains,
    parse_whois,
)
from reconpipe.pipeline.runner import StageRunner
from reconpipe.pipeline.stages import Stage
from reconpipe.pipeline.state import PipelineRun

DNS_RECORD_TYPES = ("A", "MX", "NS", "TXT")

STAGE = Stage.INFO_GATHERING


async def gather_info(runner: StageRunner, run: PipelineRun) -> None:
    scan_run_id = run.scan_run_id
    if not await runner.sessions.start_session(scan_run_id):
        raise SessionStartError("Failed to start session container", scan_run_id=scan_run_id)

    target = shlex.quote(run.domain)
    facts = run.facts

    for record_type in DNS_RECORD_TYPES:
        result = await runner.run_tool(
            run,
            STAGE,
            "dig",
            f"dig {target} {record_type} +short 2>/dev/null",
            parser=parse_dig_short,
            tolerate_failure=True,
        )
        facts.dns[record_type] = result.parsed or []

    result = await runner.run_tool(
        run,
        STAGE,
        "whois",
        f"whois {target} 2>/dev/null | head -80",
        parser=parse_whois,
        tolerate_failure=True,
    )
    facts.whois = result.parsed or {}

    result = await runner.run_tool(
        run,
        STAGE,
        "subfinder",
        f"subfinder -d {target} -silent -timeout 60 2>/dev/null | head -50",
        parser=parse_subdomains,
        tolerate_failure=True,
        timeout=120,
    )
    facts.subdomains = result.parsed or []

    result = await runner.run_tool(
        run,
        STAGE,
        "curl",
        f"curl -sI --connect-timeout 10 -L https://{target} 2>/dev/null | head -30",
        parser=parse_http_headers,
        tolerate_failure=True,
    )
    facts.http = result.parsed or {}

    result = await runner.run_tool(
        run,
        STAGE,
        "ping",
        f"ping -c 3 -W 5 {target} 2>/dev/null",
        parser=parse_ping,
        tolerate_failure=True,
    )
    facts.ping = result.parsed or {}

    techs = ", ".join(t["name"] for t in facts.http.get("technologies", [])) or "none"
    await runner.scan_log.info(
        scan_run_id,
        STAGE,
        f"Info gathering done: {sum(len(v) for v in facts.dns.values())} DNS records, "
        f"{len(facts.subdomains)} subdomains, technologies: {techs}",
    )
