"""Stage transition function.

Kept pure (no I/O, no clock) so the branching rules can be tested as a
table.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable

from reconpipe.pipeline.stages import Stage
from reconpipe.types import PortFinding, ScanFacts

NO_WEB_PORTS_REASON = (
    "No web ports found. Vulnerability scanning skipped. "
    "The target may only expose non-HTTP services."
)


def has_web_service(ports: Iterable[PortFinding], web_ports: Collection[int]) -> bool:
    return any(p.is_open and p.port in web_ports for p in ports)


def next_stage(current: Stage, facts: ScanFacts, web_ports: Collection[int]) -> Stage | None:
    """Return the stage to run after *current*, or None when the run is over."""
    match current:
        case Stage.INFO_GATHERING:
            return Stage.PORT_SCAN
        case Stage.PORT_SCAN:
            if has_web_service(facts.ports, web_ports):
                return Stage.VULN_SCAN
            return Stage.REPORTING
        case Stage.VULN_SCAN:
            return Stage.REPORTING
        case Stage.REPORTING:
            return None


def skip_reason(current: Stage, nxt: Stage | None) -> str | None:
    """Why the stage(s) between *current* and *nxt* are not run, if any are skipped."""
    if current is Stage.PORT_SCAN and nxt is Stage.REPORTING:
        return NO_WEB_PORTS_REASON
    return None
