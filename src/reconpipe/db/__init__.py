"""SQLite persistence layer.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

Submodules:
  _connection  — schema, init, write lock
  scans        — scan run status, progress, per-stage state
  logs         — append-only scan log records
  findings     — vulnerability findings
"""

# Re-export every public symbol so that `from reconpipe.db import X` works.

from reconpipe.db._connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from reconpipe.db.findings import count_findings_by_severity, get_findings, store_findings
from reconpipe.db.logs import append_scan_log, get_scan_logs
from reconpipe.db.scans import (
    create_scan_run,
    get_scan_run,
    get_scan_status,
    list_scan_runs,
    set_scan_status,
    update_scan_run,
)

__all__ = [
    "_get_db",
    "_init_test_database",
    "append_scan_log",
    "atomic_write",
    "close_database",
    "count_findings_by_severity",
    "create_scan_run",
    "get_findings",
    "get_scan_logs",
    "get_scan_run",
    "get_scan_status",
    "init_database",
    "list_scan_runs",
    "set_scan_status",
    "store_findings",
    "update_scan_run",
]
