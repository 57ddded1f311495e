"""Lightweight asyncio event bus for intra-process pub/sub.

Stage chaining runs on these events: each trigger names the next unit of
work, and the scheduler subscribes to its own triggers.  Observers (tests,
the CLI) can subscribe to :class:`ScanFinished`.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeAlias

from reconpipe.logger import logger
from reconpipe.types import DirectoryFinding, PortFinding

# --- Event types ---


@dataclass
class ScanInitiated:
    """A run was created; starts info gathering."""

    event_name: ClassVar[str] = "scan/initiated"

    scan_run_id: str
    domain: str


@dataclass
class InfoGatheringCompleted:
    """Info gathering finished; starts the port scan."""

    event_name: ClassVar[str] = "agent/info_gathering.completed"

    scan_run_id: str
    domain: str


@dataclass
class VulnScanTriggered:
    """Port scan found web services; starts the vulnerability scan."""

    event_name: ClassVar[str] = "agent3.triggered"

    scan_run_id: str
    domain: str
    open_ports: list[PortFinding] = field(default_factory=list)
    directories: list[DirectoryFinding] = field(default_factory=list)


@dataclass
class ReportRequested:
    event_name: ClassVar[str] = "agent/reporting.requested"

    scan_run_id: str
    domain: str


@dataclass
class ScanFinished:
    """Terminal notification; nothing in the pipeline listens to it."""

    event_name: ClassVar[str] = "scan/finished"

    scan_run_id: str
    status: str
    error: str | None = None


Event: TypeAlias = (
    ScanInitiated | InfoGatheringCompleted | VulnScanTriggered | ReportRequested | ScanFinished
)
Listener: TypeAlias = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)
        # Strong references so in-flight listeners aren't garbage collected
        self._pending: set[asyncio.Future[None]] = set()

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        logger.debug("Event emitted", event_name=event.event_name)
        for listener in self._listeners[type(event)]:
            future = asyncio.ensure_future(_safe_call(listener, event))
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every in-flight listener to finish (shutdown and tests)."""
        while True:
            # Finished futures can linger until their discard callback runs
            pending = [f for f in self._pending if not f.done()]
            if not pending:
                self._pending.clear()
                return
            await asyncio.wait(pending)


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning(
            "EventBus listener error", event_name=event.event_name, err=str(exc)
        )
