"""Pipeline error taxonomy.

Every failure a stage can surface is a :class:`PipelineError` subclass so the
scheduler can ``match`` on the variant instead of sniffing messages:

  SessionStartError     — no sandbox could be started; fatal before any work
  SessionLostError      — the sandbox vanished mid-pipeline; recoverable once
  ToolExecutionError    — a required tool returned non-zero or timed out
  ScanCancelledError    — the user cancelled; terminal but not a failure
  UnexpectedStageError  — anything else, wrapped with the original as __cause__
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reconpipe.types import ToolExecutionResult


class PipelineError(Exception):
    """Base class for errors that end a stage."""

    def __init__(self, message: str, *, scan_run_id: str | None = None) -> None:
        super().__init__(message)
        self.scan_run_id = scan_run_id


class SessionStartError(PipelineError):
    pass


class SessionLostError(PipelineError):
    """The session container no longer exists (docker answered 404)."""


class ToolExecutionError(PipelineError):
    def __init__(
        self,
        message: str,
        *,
        scan_run_id: str | None = None,
        tool: str,
        result: ToolExecutionResult,
    ) -> None:
        super().__init__(message, scan_run_id=scan_run_id)
        self.tool = tool
        self.result = result


class ScanCancelledError(PipelineError):
    pass


class UnexpectedStageError(PipelineError):
    pass


class ContainerNotFoundError(Exception):
    """Raised by the docker adapter when a named container does not exist.

    Runtime-level signal; the execution layer re-raises it as
    :class:`SessionLostError` for session-bound work.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"No such container: {name}")
        self.name = name


class InvalidTargetError(ValueError):
    """The requested scan target failed validation."""
