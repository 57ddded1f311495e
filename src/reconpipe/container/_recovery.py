"""Session-loss recovery — respawn the sandbox and retry exactly once."""

from __future__ import annotations

from reconpipe.container._exec import CommandExecutor
from reconpipe.container._session import SessionManager
from reconpipe.errors import SessionLostError
from reconpipe.types import ToolExecutionResult, ToolInvocation


async def run_with_recovery(
    executor: CommandExecutor,
    sessions: SessionManager,
    invocation: ToolInvocation,
) -> ToolExecutionResult:
    """Execute *invocation*, recovering once from a vanished session container.

    Only :class:`SessionLostError` triggers recovery.  If the respawn fails,
    the original error is re-raised; a failure on the retry propagates as-is.
    """
    try:
        return await executor.execute(invocation)
    except SessionLostError:
        await executor.scan_log.warning(
            invocation.scan_run_id,
            invocation.stage,
            f"Session lost during {invocation.tool}, respawning container and retrying once",
        )
        if not await sessions.ensure_session_alive(invocation.scan_run_id):
            raise
    return await executor.execute(invocation)
