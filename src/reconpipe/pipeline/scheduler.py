"""Pipeline scheduler — sequences stages and chains them through the event bus.

Each stage finishing emits the trigger for the next one; the scheduler is
subscribed to its own triggers, so stage N+1 never starts before stage N is
terminal.  Which stage comes next is decided by
:func:`~reconpipe.pipeline.transitions.next_stage`.

All failure handling for a run lives in :meth:`PipelineScheduler._fail`.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable

from reconpipe import db
from reconpipe.errors import PipelineError, ScanCancelledError, UnexpectedStageError
from reconpipe.event_bus import (
    Event,
    EventBus,
    InfoGatheringCompleted,
    Listener,
    ReportRequested,
    ScanFinished,
    ScanInitiated,
    VulnScanTriggered,
)
from reconpipe.logger import logger
from reconpipe.pipeline.info_gathering import gather_info
from reconpipe.pipeline.port_scan import scan_ports
from reconpipe.pipeline.reporting import failure_summary, write_report
from reconpipe.pipeline.runner import StageBody, StageRunner
from reconpipe.pipeline.stages import Stage, stages_between
from reconpipe.pipeline.state import PipelineRun
from reconpipe.pipeline.transitions import next_stage, skip_reason
from reconpipe.pipeline.vuln_scan import scan_vulnerabilities
from reconpipe.types import RunStatus
from reconpipe.utils import generate_scan_run_id, now_iso
from reconpipe.validators import validate_domain

STAGE_BODIES: dict[Stage, StageBody] = {
    Stage.INFO_GATHERING: gather_info,
    Stage.PORT_SCAN: scan_ports,
    Stage.VULN_SCAN: scan_vulnerabilities,
    Stage.REPORTING: write_report,
}

# Finished runs kept in memory for wait() and get_run(); the store keeps all of them
FINISHED_HISTORY = 200

# Trigger event → the stage it starts
_TRIGGERS: dict[type, Stage] = {
    ScanInitiated: Stage.INFO_GATHERING,
    InfoGatheringCompleted: Stage.PORT_SCAN,
    VulnScanTriggered: Stage.VULN_SCAN,
    ReportRequested: Stage.REPORTING,
}


class PipelineScheduler:
    def __init__(
        self,
        runner: StageRunner,
        bus: EventBus,
        *,
        bodies: dict[Stage, StageBody] | None = None,
        history: int = FINISHED_HISTORY,
    ) -> None:
        self._runner = runner
        self._bus = bus
        self._bodies = bodies or STAGE_BODIES
        self._runs: dict[str, PipelineRun] = {}
        self._done: dict[str, asyncio.Future[PipelineRun]] = {}
        self._history = history
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._unsubscribers: list[Callable[[], None]] = [
            bus.subscribe(event_type, self._listener_for(stage))
            for event_type, stage in _TRIGGERS.items()
        ]

    def close(self) -> None:
        """Detach from the event bus."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def get_run(self, scan_run_id: str) -> PipelineRun | None:
        return self._runs.get(scan_run_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, domain: str, scan_run_id: str | None = None) -> PipelineRun:
        """Validate *domain*, create the run record, and trigger the first stage.

        Raises:
            InvalidTargetError: the domain was rejected.
        """
        domain = validate_domain(domain)
        scan_run_id = scan_run_id or generate_scan_run_id()

        existing = self._runs.get(scan_run_id)
        if existing is not None and not existing.is_terminal:
            logger.info("Scan already in progress", scan_run_id=scan_run_id)
            return existing

        run = PipelineRun(scan_run_id=scan_run_id, domain=domain)
        await db.create_scan_run(scan_run_id, domain, run.stage_status())
        self._finished.pop(scan_run_id, None)
        self._runs[scan_run_id] = run
        self._done[scan_run_id] = asyncio.get_running_loop().create_future()

        await self._runner.scan_log.info(scan_run_id, "init", f"Scan queued for {domain}")
        self._bus.emit(ScanInitiated(scan_run_id=scan_run_id, domain=domain))
        return run

    async def wait(self, scan_run_id: str) -> PipelineRun:
        """Block until the run reaches a terminal state."""
        future = self._done.get(scan_run_id)
        if future is None:
            raise KeyError(scan_run_id)
        return await asyncio.shield(future)

    async def run_scan(self, domain: str, scan_run_id: str | None = None) -> PipelineRun:
        run = await self.start(domain, scan_run_id)
        return await self.wait(run.scan_run_id)

    async def cancel(self, scan_run_id: str) -> bool:
        """Mark the run cancelled; it stops at its next checkpoint.

        Returns False if the run is unknown or already finished.
        """
        if not await db.set_scan_status(scan_run_id, RunStatus.CANCELLED):
            return False
        await self._runner.scan_log.warning(scan_run_id, "control", "Cancellation requested")
        return True

    # ------------------------------------------------------------------
    # Chaining
    # ------------------------------------------------------------------

    def _listener_for(self, stage: Stage) -> Listener:
        async def _on_trigger(event: Event) -> None:
            run = self._runs.get(event.scan_run_id)
            if run is None or run.is_terminal:
                logger.debug("Ignoring trigger", trigger=event.event_name, scan=event.scan_run_id)
                return
            try:
                await self._advance(run, stage)
            except Exception as exc:
                logger.exception("Pipeline advance failed", scan_run_id=run.scan_run_id)
                error = UnexpectedStageError(str(exc), scan_run_id=run.scan_run_id)
                error.__cause__ = exc
                await self._fail(run, error)

        return _on_trigger

    async def _advance(self, run: PipelineRun, stage: Stage) -> None:
        result = await self._runner.run_stage(run, stage, self._bodies[stage])
        if result.error is not None:
            await self._fail(run, result.error)
            return

        nxt = next_stage(stage, run.facts, self._runner.settings.web_ports)
        if nxt is None:
            await self._complete(run)
            return

        reason = skip_reason(stage, nxt)
        for skipped in stages_between(stage, nxt):
            run.skip_stage(skipped, reason or "Not applicable")
            await self._runner.scan_log.warning(run.scan_run_id, skipped, reason or "Skipped")
        await db.update_scan_run(run.scan_run_id, stage_status=run.stage_status())

        self._bus.emit(self._trigger_for(nxt, run))

    def _trigger_for(self, stage: Stage, run: PipelineRun) -> Event:
        match stage:
            case Stage.PORT_SCAN:
                return InfoGatheringCompleted(scan_run_id=run.scan_run_id, domain=run.domain)
            case Stage.VULN_SCAN:
                return VulnScanTriggered(
                    scan_run_id=run.scan_run_id,
                    domain=run.domain,
                    open_ports=run.facts.open_ports,
                    directories=list(run.facts.directories),
                )
            case Stage.REPORTING:
                return ReportRequested(scan_run_id=run.scan_run_id, domain=run.domain)
            case _:
                raise ValueError(f"No trigger starts {stage}")

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _complete(self, run: PipelineRun) -> None:
        try:
            run.complete()
            persisted = await db.set_scan_status(
                run.scan_run_id,
                RunStatus.COMPLETED,
                progress=100,
                current_stage=None,
                stage_status=run.stage_status(),
                summary=run.summary,
                safety_score=run.safety_score,
                vuln_count=run.vuln_count,
                total_ports=len(run.facts.open_ports),
                facts=run.facts_payload(),
                completed_at=now_iso(),
            )
            if not persisted:
                # Cancelled after the last checkpoint; the cancellation wins
                run.cancel()
                logger.info("Scan cancelled during reporting", scan_run_id=run.scan_run_id)
            else:
                await self._runner.scan_log.info(
                    run.scan_run_id, Stage.REPORTING, "Scan completed successfully"
                )
        finally:
            # Normally already gone after the vuln scan; skipped scans still hold one
            await self._runner.sessions.end_session(run.scan_run_id)
            self._finish(run)

    async def _fail(self, run: PipelineRun, error: PipelineError) -> None:
        scan_run_id = run.scan_run_id
        try:
            match error:
                case ScanCancelledError():
                    run.cancel()
                    # Status is already "cancelled" in the store
                    await db.update_scan_run(
                        scan_run_id, stage_status=run.stage_status(), completed_at=now_iso()
                    )
                    logger.info("Scan cancelled", scan_run_id=scan_run_id)
                case _:
                    run.fail(str(error))
                    run.summary = failure_summary(run.error)
                    logger.error(
                        "Scan failed",
                        scan_run_id=scan_run_id,
                        error_type=type(error).__name__,
                        err=str(error),
                    )
                    await db.set_scan_status(
                        scan_run_id,
                        RunStatus.FAILED,
                        stage_status=run.stage_status(),
                        error=run.error,
                        summary=run.summary,
                        facts=run.facts_payload(),
                        completed_at=now_iso(),
                    )
        finally:
            await self._runner.sessions.kill_container(scan_run_id)
            self._finish(run)

    def _finish(self, run: PipelineRun) -> None:
        future = self._done.get(run.scan_run_id)
        if future is not None and not future.done():
            future.set_result(run)
        self._bus.emit(
            ScanFinished(scan_run_id=run.scan_run_id, status=run.status, error=run.error)
        )
        self._record_finished(run.scan_run_id)

    def _record_finished(self, scan_run_id: str) -> None:
        self._finished.pop(scan_run_id, None)
        self._finished[scan_run_id] = None
        while len(self._finished) > self._history:
            oldest, _ = self._finished.popitem(last=False)
            run = self._runs.get(oldest)
            if run is not None and run.is_terminal:
                del self._runs[oldest]
                self._done.pop(oldest, None)
