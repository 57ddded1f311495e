"""Container execution layer — sandboxes and the commands run inside them.

This package is split into focused submodules:
  _docker    — docker SDK adapter (threads, not-found translation)
  _demux     — 8-byte frame demultiplexer for exec output streams
  _session   — per-scan ContainerSession and the SessionManager table
  _exec      — CommandExecutor (cancellation check, timeout race, output capture)
  _recovery  — respawn-and-retry-once wrapper for lost sessions
"""

from reconpipe.container._demux import demux_stream, encode_frame
from reconpipe.container._docker import ContainerInfo, DockerRuntime, ExecHandle
from reconpipe.container._exec import (
    LOG_TRUNCATION_MARKER,
    CancellationSource,
    CommandExecutor,
    DatabaseCancellationSource,
)
from reconpipe.container._recovery import run_with_recovery
from reconpipe.container._session import ContainerSession, SessionManager

__all__ = [
    "LOG_TRUNCATION_MARKER",
    "CancellationSource",
    "CommandExecutor",
    "ContainerInfo",
    "ContainerSession",
    "DatabaseCancellationSource",
    "DockerRuntime",
    "ExecHandle",
    "SessionManager",
    "demux_stream",
    "encode_frame",
    "run_with_recovery",
]
