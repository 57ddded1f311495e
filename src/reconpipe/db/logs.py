"""Append-only per-scan log records."""

from __future__ import annotations

from reconpipe.db._connection import _get_db
from reconpipe.types import ScanLogRecord


async def append_scan_log(record: ScanLogRecord) -> None:
    db = _get_db()
    await db.execute(
        """
        INSERT INTO scan_logs (scan_run_id, level, stage, message, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """,
        (record.scan_run_id, record.level, record.stage, record.message, record.timestamp),
    )
    await db.commit()


async def get_scan_logs(scan_run_id: str, limit: int = 500) -> list[ScanLogRecord]:
    """Oldest-first log records for a scan."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM scan_logs WHERE scan_run_id = ? ORDER BY id LIMIT ?",
        (scan_run_id, limit),
    )
    return [
        ScanLogRecord(
            scan_run_id=row["scan_run_id"],
            level=row["level"],
            stage=row["stage"],
            message=row["message"],
            timestamp=row["timestamp"],
        )
        for row in await cursor.fetchall()
    ]
