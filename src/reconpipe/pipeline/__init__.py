"""Scan pipeline — stages, their runner, and the scheduler that chains them.

Submodules:
  stages          — the fixed stage order and progress arithmetic
  state           — PipelineRun, the in-memory record of one run
  transitions     — pure next-stage / skip-reason rules
  runner          — StageRunner (stage status tracking, tool invocation)
  info_gathering, port_scan, vuln_scan, reporting — the stage bodies
  scheduler       — PipelineScheduler (event-driven chaining, failure handling)
"""

from reconpipe.pipeline.runner import StageResult, StageRunner
from reconpipe.pipeline.scheduler import STAGE_BODIES, PipelineScheduler
from reconpipe.pipeline.stages import STAGE_ORDER, Stage, progress_for
from reconpipe.pipeline.state import PipelineRun
from reconpipe.pipeline.transitions import has_web_service, next_stage, skip_reason

__all__ = [
    "STAGE_BODIES",
    "STAGE_ORDER",
    "PipelineRun",
    "PipelineScheduler",
    "Stage",
    "StageResult",
    "StageRunner",
    "has_web_service",
    "next_stage",
    "progress_for",
    "skip_reason",
]
