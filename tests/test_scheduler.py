"""End-to-end tests for the pipeline scheduler.

Runs whole scans against FakeRuntime and the in-memory database; stage
chaining goes through a real EventBus.
"""

from __future__ import annotations

import json

import pytest
from conftest import make_executor, make_settings

from reconpipe.container import DatabaseCancellationSource
from reconpipe.db import _init_test_database, get_findings, get_scan_run, get_scan_status
from reconpipe.errors import InvalidTargetError
from reconpipe.event_bus import EventBus, ScanFinished
from reconpipe.pipeline import STAGE_BODIES, PipelineScheduler, Stage, StageRunner
from reconpipe.pipeline.transitions import NO_WEB_PORTS_REASON
from reconpipe.types import RunStatus, StageState

CONTAINER = "reconpipe-worker-scan-1"

NMAP_WEB = """\
Nmap scan report for example.com (93.184.216.34)
Host is up (0.011s latency).
PORT    STATE  SERVICE
22/tcp  closed ssh
80/tcp  open   http
443/tcp open   https
"""

NMAP_SSH_ONLY = """\
Host is up (0.011s latency).
PORT   STATE SERVICE
22/tcp open  ssh
"""

NUCLEI_JSONL = "\n".join(
    json.dumps(
        {
            "template-id": template_id,
            "info": {"name": name, "severity": severity},
            "matched-at": "https://example.com",
        }
    )
    for template_id, name, severity in [
        ("exposed-git", "Exposed .git directory", "high"),
        ("missing-csp", "Missing CSP header", "medium"),
    ]
)


@pytest.fixture(autouse=True)
async def _setup_db():
    await _init_test_database()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


def _make_scheduler(runtime, log_sink, bus, **kwargs) -> PipelineScheduler:
    executor, sessions = make_executor(
        runtime, sink=log_sink, cancellation=DatabaseCancellationSource()
    )
    return PipelineScheduler(StageRunner(executor, sessions, make_settings()), bus, **kwargs)


@pytest.fixture
async def scheduler(runtime, log_sink, bus):
    sched = _make_scheduler(runtime, log_sink, bus)
    yield sched
    await bus.drain()
    sched.close()


@pytest.fixture
def finished(bus) -> list[ScanFinished]:
    events: list[ScanFinished] = []

    async def _on_finished(event: ScanFinished) -> None:
        events.append(event)

    bus.subscribe(ScanFinished, _on_finished)
    return events


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestFullPipeline:
    async def test_web_target_runs_every_stage(self, scheduler, runtime, bus, finished):
        runtime.respond("nmap", stdout=NMAP_WEB.encode())
        runtime.respond("nuclei", stdout=NUCLEI_JSONL.encode())

        run = await scheduler.run_scan("https://Example.com/", "scan-1")
        await bus.drain()

        assert run.status == RunStatus.COMPLETED
        assert run.domain == "example.com"
        assert set(run.stages.values()) == {StageState.DONE}
        assert run.progress == 100
        assert run.vuln_count == 2
        assert run.safety_score == 88
        assert "Exposed .git directory" in run.summary

        record = await get_scan_run("scan-1")
        assert record.status == "completed"
        assert record.progress == 100
        assert record.current_stage is None
        assert record.vuln_count == 2
        assert record.total_ports == 2
        assert record.completed_at is not None
        assert record.stage_status == {stage.value: "done" for stage in Stage}
        assert len(await get_findings("scan-1")) == 2

        # Session ended after the vulnerability scan
        assert runtime.removed == [CONTAINER]
        assert [e.status for e in finished] == ["completed"]

    async def test_tools_run_in_stage_order(self, scheduler, runtime):
        runtime.respond("nmap", stdout=NMAP_WEB.encode())

        await scheduler.run_scan("example.com", "scan-1")

        tools = [cmd.split()[0] for cmd in runtime.commands]
        first = {tool: tools.index(tool) for tool in ("whois", "nmap", "gobuster", "nuclei")}
        assert first["whois"] < first["nmap"] < first["gobuster"] < first["nuclei"]

    async def test_no_web_ports_skips_vuln_scan(self, scheduler, runtime, log_sink):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())

        run = await scheduler.run_scan("example.com", "scan-1")

        assert run.status == RunStatus.COMPLETED
        assert run.skipped == {Stage.VULN_SCAN: NO_WEB_PORTS_REASON}
        assert run.stages[Stage.VULN_SCAN] is StageState.DONE
        assert not any("nuclei" in cmd or "gobuster" in cmd for cmd in runtime.commands)
        assert NO_WEB_PORTS_REASON in log_sink.messages("warning")
        assert f"> vuln_scan: {NO_WEB_PORTS_REASON}" in run.summary
        # The session outlived the skipped vuln scan; completion tears it down
        assert runtime.removed == [CONTAINER]

    async def test_recovers_from_lost_session(self, scheduler, runtime, log_sink):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        runtime.lose_container_on("nmap")

        run = await scheduler.run_scan("example.com", "scan-1")

        assert run.status == RunStatus.COMPLETED
        assert runtime.created == [CONTAINER, CONTAINER]
        assert sum("Session lost during nmap" in m for m in log_sink.messages("warning")) == 1

    async def test_start_while_running_returns_same_run(self, scheduler, runtime):
        first = await scheduler.start("example.com", "scan-1")
        second = await scheduler.start("example.com", "scan-1")
        assert first is second
        await scheduler.wait("scan-1")

    async def test_rerun_of_finished_id_starts_fresh(self, scheduler, runtime):
        runtime.respond("nmap", stdout=NMAP_WEB.encode())
        runtime.respond("nuclei", stdout=NUCLEI_JSONL.encode())

        first = await scheduler.run_scan("example.com", "scan-1")
        second = await scheduler.run_scan("example.com", "scan-1")

        assert first is not second
        assert second.status == RunStatus.COMPLETED
        assert second.vuln_count == 2
        assert len(await get_findings("scan-1")) == 2
        record = await get_scan_run("scan-1")
        assert record.vuln_count == 2

    async def test_rerun_after_cancel_runs_to_completion(self, scheduler, runtime):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        await scheduler.start("example.com", "scan-1")
        assert await scheduler.cancel("scan-1")
        assert (await scheduler.wait("scan-1")).status == RunStatus.CANCELLED
        assert runtime.commands == []

        run = await scheduler.run_scan("example.com", "scan-1")

        assert run.status == RunStatus.COMPLETED
        assert any(cmd.startswith("nmap") for cmd in runtime.commands)
        assert await get_scan_status("scan-1") == "completed"


class TestRunHistory:
    async def test_oldest_finished_runs_are_forgotten(self, runtime, log_sink, bus):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        sched = _make_scheduler(runtime, log_sink, bus, history=2)
        try:
            for n in range(1, 4):
                await sched.run_scan("example.com", f"scan-{n}")
        finally:
            await bus.drain()
            sched.close()

        assert sched.get_run("scan-1") is None
        assert sched.get_run("scan-2") is not None
        assert sched.get_run("scan-3") is not None
        with pytest.raises(KeyError):
            await sched.wait("scan-1")
        # The store keeps every run
        assert await get_scan_status("scan-1") == "completed"

    async def test_rerun_moves_id_to_newest(self, runtime, log_sink, bus):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        sched = _make_scheduler(runtime, log_sink, bus, history=2)
        try:
            await sched.run_scan("example.com", "scan-1")
            await sched.run_scan("example.com", "scan-2")
            await sched.run_scan("example.com", "scan-1")
            await sched.run_scan("example.com", "scan-3")
        finally:
            await bus.drain()
            sched.close()

        assert sched.get_run("scan-2") is None
        assert sched.get_run("scan-1") is not None
        assert sched.get_run("scan-3") is not None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_required_tool_failure_fails_run(self, scheduler, runtime, bus, finished):
        runtime.respond("nmap", exit_code=1)

        run = await scheduler.run_scan("example.com", "scan-1")
        await bus.drain()

        assert run.status == RunStatus.FAILED
        assert run.error == "nmap failed (exit 1)"
        assert run.stages[Stage.INFO_GATHERING] is StageState.DONE
        assert run.stages[Stage.PORT_SCAN] is StageState.FAILED
        assert run.stages[Stage.VULN_SCAN] is StageState.PENDING
        assert run.summary.startswith("### Recon Failed")

        record = await get_scan_run("scan-1")
        assert record.status == "failed"
        assert record.error == "nmap failed (exit 1)"
        assert CONTAINER in runtime.removed
        assert [(e.status, e.error) for e in finished] == [("failed", "nmap failed (exit 1)")]

    async def test_optional_tool_failure_is_tolerated(self, scheduler, runtime, log_sink):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        runtime.respond("whois", exit_code=1)

        run = await scheduler.run_scan("example.com", "scan-1")

        assert run.status == RunStatus.COMPLETED
        assert "whois returned no usable result (exit 1)" in log_sink.messages("warning")

    async def test_session_start_failure(self, scheduler, runtime):
        runtime.fail_create = True

        run = await scheduler.run_scan("example.com", "scan-1")

        assert run.status == RunStatus.FAILED
        assert run.error == "Failed to start session container"
        assert run.stages[Stage.INFO_GATHERING] is StageState.FAILED
        assert runtime.commands == []

    async def test_unexpected_error_in_body(self, runtime, log_sink, bus):
        async def broken(runner, run):
            raise KeyError("boom")

        sched = _make_scheduler(
            runtime, log_sink, bus, bodies={**STAGE_BODIES, Stage.INFO_GATHERING: broken}
        )
        try:
            run = await sched.run_scan("example.com", "scan-1")
        finally:
            sched.close()

        assert run.status == RunStatus.FAILED
        assert "boom" in run.error
        assert await get_scan_status("scan-1") == "failed"

    async def test_invalid_target(self, scheduler):
        with pytest.raises(InvalidTargetError):
            await scheduler.start("localhost; id")
        assert await get_scan_run("scan-1") is None

    async def test_wait_unknown(self, scheduler):
        with pytest.raises(KeyError):
            await scheduler.wait("nope")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_before_first_stage(self, scheduler, runtime, bus, finished):
        run = await scheduler.start("example.com", "scan-1")
        assert await scheduler.cancel("scan-1")

        run = await scheduler.wait("scan-1")
        await bus.drain()

        assert run.status == RunStatus.CANCELLED
        assert set(run.stages.values()) == {StageState.PENDING}
        assert runtime.commands == []
        assert await get_scan_status("scan-1") == "cancelled"
        assert [e.status for e in finished] == ["cancelled"]

    async def test_cancel_mid_pipeline_stops_at_next_checkpoint(self, runtime, log_sink, bus):
        sched: PipelineScheduler

        async def cancel_during_info(runner, run):
            await sched.cancel(run.scan_run_id)

        sched = _make_scheduler(
            runtime,
            log_sink,
            bus,
            bodies={**STAGE_BODIES, Stage.INFO_GATHERING: cancel_during_info},
        )
        try:
            run = await sched.run_scan("example.com", "scan-1")
        finally:
            sched.close()

        assert run.status == RunStatus.CANCELLED
        assert run.stages[Stage.INFO_GATHERING] is StageState.DONE
        assert run.stages[Stage.PORT_SCAN] is StageState.PENDING
        assert not any("nmap" in cmd for cmd in runtime.commands)
        record = await get_scan_run("scan-1")
        assert record.status == "cancelled"
        assert record.stage_status["info_gathering"] == "done"

    async def test_cannot_cancel_finished_scan(self, scheduler, runtime):
        runtime.respond("nmap", stdout=NMAP_SSH_ONLY.encode())
        await scheduler.run_scan("example.com", "scan-1")

        assert not await scheduler.cancel("scan-1")
        assert await get_scan_status("scan-1") == "completed"

    async def test_cancel_unknown(self, scheduler):
        assert not await scheduler.cancel("nope")
