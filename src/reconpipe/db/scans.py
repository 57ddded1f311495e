"""Scan run records — status, progress, and per-stage state."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from reconpipe.db._connection import _get_db, _update_by_id, atomic_write
from reconpipe.types import TERMINAL_STATUSES, RunStatus, ScanRunRecord

_UPDATABLE = {
    "status",
    "progress",
    "current_stage",
    "stage_status",
    "summary",
    "safety_score",
    "total_ports",
    "vuln_count",
    "error",
    "facts",
    "completed_at",
    "updated_at",
}
_JSON_FIELDS = {"stage_status", "facts"}


def _row_to_scan_run(row) -> ScanRunRecord:
    return ScanRunRecord(
        id=row["id"],
        domain=row["domain"],
        status=row["status"],
        progress=row["progress"],
        current_stage=row["current_stage"],
        stage_status=json.loads(row["stage_status"] or "{}"),
        summary=row["summary"],
        safety_score=row["safety_score"],
        total_ports=row["total_ports"],
        vuln_count=row["vuln_count"],
        error=row["error"],
        facts=json.loads(row["facts"]) if row["facts"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


async def create_scan_run(
    scan_run_id: str, domain: str, stage_status: dict[str, str] | None = None
) -> None:
    """Insert a queued scan run.

    Reusing an id starts the run over: the row is reset to a fresh queued
    state and the previous attempt's findings are deleted.  Log records are
    kept, so the audit trail spans every attempt.
    """
    now = datetime.now(UTC).isoformat()
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT INTO scan_runs
                (id, domain, status, progress, stage_status, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                domain = excluded.domain,
                status = excluded.status,
                progress = 0,
                current_stage = NULL,
                stage_status = excluded.stage_status,
                summary = NULL,
                safety_score = NULL,
                total_ports = NULL,
                vuln_count = NULL,
                error = NULL,
                facts = NULL,
                completed_at = NULL,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at
            """,
            (
                scan_run_id,
                domain,
                RunStatus.QUEUED.value,
                json.dumps(stage_status or {}),
                now,
                now,
            ),
        )
        await db.execute("DELETE FROM findings WHERE scan_run_id = ?", (scan_run_id,))


async def get_scan_run(scan_run_id: str) -> ScanRunRecord | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM scan_runs WHERE id = ?", (scan_run_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_scan_run(row)


async def get_scan_status(scan_run_id: str) -> str | None:
    """Current status string, or None for an unknown scan."""
    db = _get_db()
    cursor = await db.execute("SELECT status FROM scan_runs WHERE id = ?", (scan_run_id,))
    row = await cursor.fetchone()
    return row["status"] if row else None


async def update_scan_run(scan_run_id: str, **updates: Any) -> None:
    """Partial update; dict values for JSON columns are serialized."""
    for key in _JSON_FIELDS & updates.keys():
        if updates[key] is not None and not isinstance(updates[key], str):
            updates[key] = json.dumps(updates[key])
    updates.setdefault("updated_at", datetime.now(UTC).isoformat())
    await _update_by_id("scan_runs", scan_run_id, updates, _UPDATABLE)


async def list_scan_runs(status: str | None = None, limit: int = 50) -> list[ScanRunRecord]:
    db = _get_db()
    if status is None:
        cursor = await db.execute(
            "SELECT * FROM scan_runs ORDER BY created_at DESC LIMIT ?", (limit,)
        )
    else:
        cursor = await db.execute(
            "SELECT * FROM scan_runs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
            (status, limit),
        )
    return [_row_to_scan_run(row) for row in await cursor.fetchall()]


async def set_scan_status(scan_run_id: str, status: str, **updates: Any) -> bool:
    """Move a run to *status* plus any other column updates, in one statement.

    A cancelled run is never moved anywhere else, and only a run that is
    still in flight can be cancelled.  Returns False if nothing matched.
    """
    for key in _JSON_FIELDS & updates.keys():
        if updates[key] is not None and not isinstance(updates[key], str):
            updates[key] = json.dumps(updates[key])
    updates = {k: v for k, v in updates.items() if k in _UPDATABLE}
    updates["status"] = str(status)
    updates.setdefault("updated_at", datetime.now(UTC).isoformat())

    if status == RunStatus.CANCELLED:
        guard = f"status NOT IN ({', '.join('?' * len(TERMINAL_STATUSES))})"
        guard_args: tuple[str, ...] = tuple(s.value for s in TERMINAL_STATUSES)
    else:
        guard = "status != ?"
        guard_args = (RunStatus.CANCELLED.value,)

    assignments = ", ".join(f"{key} = ?" for key in updates)
    db = _get_db()
    cursor = await db.execute(
        f"UPDATE scan_runs SET {assignments} WHERE id = ? AND {guard}",
        (*updates.values(), scan_run_id, *guard_args),
    )
    await db.commit()
    return cursor.rowcount > 0
