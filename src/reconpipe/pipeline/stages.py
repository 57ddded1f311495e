"""The fixed stage sequence of a scan pipeline."""

from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    INFO_GATHERING = "info_gathering"
    PORT_SCAN = "port_scan"
    VULN_SCAN = "vuln_scan"
    REPORTING = "reporting"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.INFO_GATHERING,
    Stage.PORT_SCAN,
    Stage.VULN_SCAN,
    Stage.REPORTING,
)


def stage_index(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def progress_for(stage: Stage) -> int:
    """Percent complete reported when *stage* starts."""
    return round((stage_index(stage) + 1) / len(STAGE_ORDER) * 100)


def stages_between(current: Stage, nxt: Stage) -> list[Stage]:
    """Stages strictly after *current* and strictly before *nxt*."""
    return list(STAGE_ORDER[stage_index(current) + 1 : stage_index(nxt)])
