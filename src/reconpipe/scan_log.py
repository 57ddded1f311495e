"""Per-scan log records — the user-visible audit trail of a pipeline run.

Every record is mirrored to the structlog logger and appended to a sink
(the ``scan_logs`` table by default).  Sink failures are logged and
swallowed: losing a log line must never fail a scan.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol

from reconpipe import db
from reconpipe.logger import logger
from reconpipe.types import LogLevel, ScanLogRecord


class LogSink(Protocol):
    async def write(self, record: ScanLogRecord) -> None: ...


class DatabaseLogSink:
    async def write(self, record: ScanLogRecord) -> None:
        await db.append_scan_log(record)


class ScanLog:
    def __init__(self, sink: LogSink | None = None) -> None:
        self._sink: LogSink = sink or DatabaseLogSink()

    async def log(self, scan_run_id: str, level: LogLevel, stage: str, message: str) -> None:
        record = ScanLogRecord(
            scan_run_id=scan_run_id,
            level=level,
            stage=stage,
            message=message,
            timestamp=datetime.now(UTC).isoformat(),
        )
        getattr(logger, level)(message, scan_run_id=scan_run_id, stage=stage)
        try:
            await self._sink.write(record)
        except Exception as exc:
            logger.warning("Scan log write failed", scan_run_id=scan_run_id, err=str(exc))

    async def info(self, scan_run_id: str, stage: str, message: str) -> None:
        await self.log(scan_run_id, "info", stage, message)

    async def warning(self, scan_run_id: str, stage: str, message: str) -> None:
        await self.log(scan_run_id, "warning", stage, message)

    async def error(self, scan_run_id: str, stage: str, message: str) -> None:
        await self.log(scan_run_id, "error", stage, message)


def truncate_for_log(text: str, cap: int, marker: str = "") -> str:
    """Cap *text* at *cap* characters, appending *marker* when cut."""
    if len(text) <= cap:
        return text
    return text[:cap] + marker
