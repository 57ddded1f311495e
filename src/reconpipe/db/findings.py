"""Vulnerability findings reported by the scanners."""

from __future__ import annotations

from datetime import UTC, datetime

from reconpipe.db._connection import _get_db, atomic_write
from reconpipe.types import Finding


async def store_findings(scan_run_id: str, findings: list[Finding]) -> int:
    """Insert all findings in one transaction. Returns the number stored."""
    if not findings:
        return 0
    now = datetime.now(UTC).isoformat()
    async with atomic_write() as db:
        for f in findings:
            await db.execute(
                """
                INSERT INTO findings
                    (scan_run_id, source, template_id, name, severity, url,
                     description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scan_run_id,
                    f.source,
                    f.template_id,
                    f.name,
                    f.severity,
                    f.url,
                    f.description,
                    now,
                ),
            )
    return len(findings)


async def get_findings(scan_run_id: str) -> list[Finding]:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM findings WHERE scan_run_id = ? ORDER BY id", (scan_run_id,)
    )
    return [
        Finding(
            source=row["source"],
            name=row["name"],
            severity=row["severity"],
            template_id=row["template_id"],
            url=row["url"],
            description=row["description"],
        )
        for row in await cursor.fetchall()
    ]


async def count_findings_by_severity(scan_run_id: str) -> dict[str, int]:
    db = _get_db()
    cursor = await db.execute(
        "SELECT severity, COUNT(*) AS n FROM findings WHERE scan_run_id = ? GROUP BY severity",
        (scan_run_id,),
    )
    return {row["severity"]: row["n"] for row in await cursor.fetchall()}
