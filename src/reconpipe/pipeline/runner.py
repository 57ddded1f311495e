"""Stage runner — executes one stage body and tracks its status.

A stage moves ``pending → running`` (persisted with progress) before its
body runs and ``running → done | failed`` afterwards.  The outcome comes
back as a :class:`StageResult` rather than an exception so the scheduler
has one place that decides what a failure means.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

from reconpipe import db
from reconpipe.config import Settings
from reconpipe.container import CommandExecutor, SessionManager, run_with_recovery
from reconpipe.errors import PipelineError, ToolExecutionError, UnexpectedStageError
from reconpipe.logger import logger
from reconpipe.pipeline.stages import Stage
from reconpipe.pipeline.state import PipelineRun
from reconpipe.scan_log import ScanLog
from reconpipe.types import Parser, RunStatus, StageState, ToolExecutionResult, ToolInvocation

StageBody: TypeAlias = "Callable[[StageRunner, PipelineRun], Awaitable[None]]"


@dataclass
class StageResult:
    stage: Stage
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StageRunner:
    def __init__(
        self,
        executor: CommandExecutor,
        sessions: SessionManager,
        settings: Settings,
    ) -> None:
        self._executor = executor
        self.sessions = sessions
        self.settings = settings

    @property
    def scan_log(self) -> ScanLog:
        return self._executor.scan_log

    async def run_stage(self, run: PipelineRun, stage: Stage, body: StageBody) -> StageResult:
        """Run *body* as *stage* of *run*. Never raises for stage failures."""
        error: PipelineError | None = None
        try:
            await self._executor.checkpoint(run.scan_run_id, stage, stage.value)
            run.begin_stage(stage)
            await self._persist(run)
            await self.scan_log.info(run.scan_run_id, stage, f"Stage {stage} started")
            await body(self, run)
        except PipelineError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Unexpected stage error", scan_run_id=run.scan_run_id, stage=stage)
            error = UnexpectedStageError(
                f"{stage} failed unexpectedly: {exc}", scan_run_id=run.scan_run_id
            )
            error.__cause__ = exc

        if run.stages[stage] is not StageState.RUNNING:
            # Cancelled or failed before the stage began
            return StageResult(stage=stage, error=error)

        if error is None:
            run.finish_stage(stage)
            await self.scan_log.info(run.scan_run_id, stage, f"Stage {stage} completed")
        else:
            run.fail_stage(stage)
            await self.scan_log.error(run.scan_run_id, stage, f"Stage {stage} failed: {error}")
        await self._persist(run)
        return StageResult(stage=stage, error=error)

    async def _persist(self, run: PipelineRun) -> None:
        await db.set_scan_status(
            run.scan_run_id,
            RunStatus.SCANNING,
            progress=run.progress,
            current_stage=run.current_stage,
            stage_status=run.stage_status(),
        )

    async def run_tool(
        self,
        run: PipelineRun,
        stage: Stage,
        tool: str,
        command: str,
        *,
        parser: Parser | None = None,
        tolerate_failure: bool = False,
        timeout: float | None = None,
    ) -> ToolExecutionResult:
        """Run one tool through the recovery wrapper.

        Raises:
            ToolExecutionError: the tool didn't succeed and *tolerate_failure* is False.
        """
        invocation = ToolInvocation(
            command=command,
            scan_run_id=run.scan_run_id,
            stage=stage,
            tool=tool,
            timeout=timeout if timeout is not None else self.settings.timeout_for(tool),
            parser=parser,
            tolerate_failure=tolerate_failure,
        )
        await self.scan_log.info(run.scan_run_id, stage, f"Running {tool}")
        result = await run_with_recovery(self._executor, self.sessions, invocation)

        outcome = "timed out" if result.timed_out else f"exit {result.exit_code}"
        if result.success:
            await self.scan_log.info(
                run.scan_run_id, stage, f"{tool} finished in {result.duration:.1f}s"
            )
        elif tolerate_failure:
            await self.scan_log.warning(
                run.scan_run_id, stage, f"{tool} returned no usable result ({outcome})"
            )
        else:
            raise ToolExecutionError(
                f"{tool} failed ({outcome})",
                scan_run_id=run.scan_run_id,
                tool=tool,
                result=result,
            )
        return result
