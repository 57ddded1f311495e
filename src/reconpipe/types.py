"""Data models for reconpipe."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, TypeAlias

Parser: TypeAlias = Callable[[str], Any]
LogLevel: TypeAlias = Literal["info", "warning", "error", "critical"]


class SessionState(StrEnum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STALE = "stale"
    TERMINATED = "terminated"


class StageState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class RunStatus(StrEnum):
    QUEUED = "queued"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


# --- Execution ---


@dataclass
class ToolInvocation:
    """A request to run one shell command inside a scan's sandbox."""

    command: str
    scan_run_id: str
    stage: str
    tool: str
    timeout: float  # seconds
    parser: Parser | None = None
    tolerate_failure: bool = False  # non-success means "no signal", not a hard failure


@dataclass
class ToolExecutionResult:
    stdout: bytes
    stderr: bytes
    exit_code: int  # -1 when the command never reported one (timeout, kill)
    duration: float  # seconds
    timed_out: bool = False
    parsed: Any = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


@dataclass
class ScanLogRecord:
    scan_run_id: str
    level: LogLevel
    stage: str
    message: str
    timestamp: str  # ISO 8601, UTC


# --- Findings ---


@dataclass
class PortFinding:
    port: int
    protocol: str
    state: str  # "open", "closed", "filtered"
    service: str
    version: str | None = None

    @property
    def is_open(self) -> bool:
        return self.state == "open"


@dataclass
class DirectoryFinding:
    path: str
    status_code: int
    size: int | None = None


@dataclass
class Finding:
    """One vulnerability or misconfiguration reported by a scanner."""

    source: str  # "nuclei", "nikto"
    name: str
    severity: str  # "critical", "high", "medium", "low", "info"
    template_id: str | None = None
    url: str | None = None
    description: str | None = None


@dataclass
class ScanFacts:
    """Cross-stage facts accumulated while a pipeline runs.

    Branching decisions read ``ports``; everything else feeds the report.
    """

    dns: dict[str, list[str]] = field(default_factory=dict)
    whois: dict[str, Any] = field(default_factory=dict)
    subdomains: list[str] = field(default_factory=list)
    http: dict[str, Any] = field(default_factory=dict)
    ping: dict[str, Any] = field(default_factory=dict)
    host_status: str = "unknown"
    ports: list[PortFinding] = field(default_factory=list)
    directories: list[DirectoryFinding] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)

    @property
    def open_ports(self) -> list[PortFinding]:
        return [p for p in self.ports if p.is_open]


# --- Persisted records ---


@dataclass
class ScanRunRecord:
    id: str
    domain: str
    status: str
    progress: int
    current_stage: str | None
    stage_status: dict[str, str]
    created_at: str
    updated_at: str
    summary: str | None = None
    safety_score: int | None = None
    total_ports: int | None = None
    vuln_count: int | None = None
    error: str | None = None
    facts: dict[str, Any] | None = None
    completed_at: str | None = None
