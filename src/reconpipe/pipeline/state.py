"""In-memory state of one pipeline run.

Only the scheduler and stage runner mutate a PipelineRun.  The stage
methods enforce the ordering rules: earlier stages are terminal, later ones
pending, at most one running, and progress never goes backwards.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from reconpipe.pipeline.stages import STAGE_ORDER, Stage, progress_for, stage_index
from reconpipe.types import TERMINAL_STATUSES, RunStatus, ScanFacts, StageState


def _initial_stages() -> dict[Stage, StageState]:
    return {stage: StageState.PENDING for stage in STAGE_ORDER}


@dataclass
class PipelineRun:
    scan_run_id: str
    domain: str
    stages: dict[Stage, StageState] = field(default_factory=_initial_stages)
    status: RunStatus = RunStatus.QUEUED
    progress: int = 0
    current_stage: Stage | None = None
    facts: ScanFacts = field(default_factory=ScanFacts)
    skipped: dict[Stage, str] = field(default_factory=dict)
    error: str | None = None
    summary: str | None = None
    safety_score: int | None = None
    vuln_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _require(self, stage: Stage, expected: StageState) -> None:
        actual = self.stages[stage]
        if actual is not expected:
            raise ValueError(f"Stage {stage} is {actual}, expected {expected}")

    def begin_stage(self, stage: Stage) -> None:
        self._require(stage, StageState.PENDING)
        for earlier in STAGE_ORDER[: stage_index(stage)]:
            if self.stages[earlier] in (StageState.PENDING, StageState.RUNNING):
                raise ValueError(f"Cannot start {stage} before {earlier} is finished")
        self.stages[stage] = StageState.RUNNING
        self.current_stage = stage
        self.status = RunStatus.SCANNING
        self.progress = max(self.progress, progress_for(stage))

    def finish_stage(self, stage: Stage) -> None:
        self._require(stage, StageState.RUNNING)
        self.stages[stage] = StageState.DONE

    def fail_stage(self, stage: Stage) -> None:
        self._require(stage, StageState.RUNNING)
        self.stages[stage] = StageState.FAILED

    def skip_stage(self, stage: Stage, reason: str) -> None:
        """A skipped stage counts as done; the reason is kept for the report."""
        self._require(stage, StageState.PENDING)
        self.stages[stage] = StageState.DONE
        self.skipped[stage] = reason

    # --- terminal transitions ---

    def complete(self) -> None:
        self.status = RunStatus.COMPLETED
        self.progress = 100
        self.current_stage = None

    def fail(self, error: str) -> None:
        self.status = RunStatus.FAILED
        self.error = error

    def cancel(self) -> None:
        self.status = RunStatus.CANCELLED

    # --- persistence helpers ---

    def stage_status(self) -> dict[str, str]:
        return {stage.value: state.value for stage, state in self.stages.items()}

    def facts_payload(self) -> dict[str, Any]:
        payload = asdict(self.facts)
        payload["skipped"] = {stage.value: reason for stage, reason in self.skipped.items()}
        return payload
