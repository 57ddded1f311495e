"""Tests for the EventBus pub/sub system."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from reconpipe.event_bus import (
    EventBus,
    InfoGatheringCompleted,
    ReportRequested,
    ScanFinished,
    ScanInitiated,
    VulnScanTriggered,
)
from reconpipe.types import PortFinding


@pytest.fixture
def bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()


class TestEventBus:
    """Test EventBus subscription and emission."""

    async def test_subscribe_and_emit(self, bus: EventBus) -> None:
        received: list[ScanInitiated] = []

        async def listener(event: ScanInitiated) -> None:
            received.append(event)

        bus.subscribe(ScanInitiated, listener)
        bus.emit(ScanInitiated(scan_run_id="scan-1", domain="example.com"))
        await bus.drain()

        assert received == [ScanInitiated(scan_run_id="scan-1", domain="example.com")]

    async def test_listeners_only_see_their_event_type(self, bus: EventBus) -> None:
        seen: list[str] = []

        async def on_report(event: ReportRequested) -> None:
            seen.append(event.event_name)

        bus.subscribe(ReportRequested, on_report)
        bus.emit(InfoGatheringCompleted(scan_run_id="scan-1", domain="example.com"))
        bus.emit(ReportRequested(scan_run_id="scan-1", domain="example.com"))
        await bus.drain()

        assert seen == ["agent/reporting.requested"]

    async def test_unsubscribe(self, bus: EventBus) -> None:
        received: list[ScanFinished] = []

        async def listener(event: ScanFinished) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(ScanFinished, listener)
        unsubscribe()
        unsubscribe()  # second call is a no-op
        bus.emit(ScanFinished(scan_run_id="scan-1", status="completed"))
        await bus.drain()

        assert received == []

    async def test_listener_error_does_not_affect_others(self, bus: EventBus) -> None:
        received: list[str] = []

        async def broken(event: ScanFinished) -> None:
            raise RuntimeError("boom")

        async def healthy(event: ScanFinished) -> None:
            received.append(event.scan_run_id)

        bus.subscribe(ScanFinished, broken)
        bus.subscribe(ScanFinished, healthy)
        bus.emit(ScanFinished(scan_run_id="scan-1", status="failed", error="x"))
        await bus.drain()

        assert received == ["scan-1"]

    async def test_drain_waits_for_chained_emits(self, bus: EventBus) -> None:
        order: list[str] = []

        async def first(event: ScanInitiated) -> None:
            await asyncio.sleep(0.01)
            order.append("initiated")
            bus.emit(ReportRequested(scan_run_id=event.scan_run_id, domain=event.domain))

        async def second(event: ReportRequested) -> None:
            order.append("report")

        bus.subscribe(ScanInitiated, first)
        bus.subscribe(ReportRequested, second)
        bus.emit(ScanInitiated(scan_run_id="scan-1", domain="example.com"))
        await bus.drain()

        assert order == ["initiated", "report"]

    async def test_emit_logs_event_name(self, bus: EventBus) -> None:
        async def listener(event: ScanFinished) -> None:
            pass

        bus.subscribe(ScanFinished, listener)
        with patch("reconpipe.event_bus.logger") as mock_logger:
            bus.emit(ScanFinished(scan_run_id="scan-1", status="completed"))
            await bus.drain()

        mock_logger.debug.assert_called_once_with("Event emitted", event_name="scan/finished")

    async def test_listener_error_is_logged_not_raised(self, bus: EventBus) -> None:
        async def broken(event: ScanFinished) -> None:
            raise RuntimeError("boom")

        bus.subscribe(ScanFinished, broken)
        with patch("reconpipe.event_bus.logger") as mock_logger:
            bus.emit(ScanFinished(scan_run_id="scan-1", status="failed"))
            await bus.drain()

        mock_logger.warning.assert_called_once_with(
            "EventBus listener error", event_name="scan/finished", err="boom"
        )

    async def test_drain_returns_when_listeners_already_finished(self, bus: EventBus) -> None:
        received: list[str] = []

        async def listener(event: ScanFinished) -> None:
            received.append(event.scan_run_id)

        bus.subscribe(ScanFinished, listener)
        bus.emit(ScanFinished(scan_run_id="scan-1", status="completed"))
        # Let the listener run to completion before draining
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await asyncio.wait_for(bus.drain(), timeout=1)
        assert received == ["scan-1"]

    async def test_emit_without_listeners(self, bus: EventBus) -> None:
        bus.emit(ScanFinished(scan_run_id="scan-1", status="completed"))
        await bus.drain()


class TestEvents:
    def test_event_names(self) -> None:
        assert ScanInitiated.event_name == "scan/initiated"
        assert InfoGatheringCompleted.event_name == "agent/info_gathering.completed"
        assert VulnScanTriggered.event_name == "agent3.triggered"
        assert ReportRequested.event_name == "agent/reporting.requested"

    def test_vuln_trigger_carries_ports(self) -> None:
        port = PortFinding(port=80, protocol="tcp", state="open", service="http")
        event = VulnScanTriggered(scan_run_id="scan-1", domain="example.com", open_ports=[port])
        assert event.open_ports == [port]
        assert event.directories == []
