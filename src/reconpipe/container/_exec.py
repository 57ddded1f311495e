"""Command execution — run one ToolInvocation and capture its result.

Session mode execs ``sh -c <command>`` in the scan's sandbox and reads the
multiplexed stream; ephemeral mode (no session known for the scan) runs the
command in a single-use container that is always removed afterwards.

Both modes race the command against its timeout.  When the timer wins the
command is killed, ``timed_out`` is set, and whatever output arrived is
kept.  Every other exception propagates — a half-read result is never
passed off as a real one.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Protocol

from reconpipe import db
from reconpipe.config import ContainerConfig, ExecutionConfig
from reconpipe.container._demux import demux_stream
from reconpipe.container._docker import (
    LABEL_SCAN_RUN,
    LABEL_STAGE,
    LABEL_TOOL,
    LABEL_TYPE,
    DockerRuntime,
)
from reconpipe.container._session import ContainerSession, SessionManager
from reconpipe.errors import ContainerNotFoundError, ScanCancelledError, SessionLostError
from reconpipe.logger import logger
from reconpipe.scan_log import ScanLog, truncate_for_log
from reconpipe.types import RunStatus, ToolExecutionResult, ToolInvocation

LOG_TRUNCATION_MARKER = "\n\n... [Log truncated due to database size limits] ..."


class CancellationSource(Protocol):
    async def get_status(self, scan_run_id: str) -> str | None: ...


class DatabaseCancellationSource:
    """Reads the run status straight from the ``scan_runs`` table."""

    async def get_status(self, scan_run_id: str) -> str | None:
        return await db.get_scan_status(scan_run_id)


class CommandExecutor:
    def __init__(
        self,
        runtime: DockerRuntime,
        sessions: SessionManager,
        scan_log: ScanLog,
        *,
        config: ExecutionConfig,
        container: ContainerConfig,
        cancellation: CancellationSource | None = None,
    ) -> None:
        self._runtime = runtime
        self._sessions = sessions
        self.scan_log = scan_log
        self._config = config
        self._ephemeral_prefix = container.ephemeral_prefix
        self._cancellation: CancellationSource = cancellation or DatabaseCancellationSource()

    async def execute(self, invocation: ToolInvocation) -> ToolExecutionResult:
        """Run *invocation* and return its result.

        Raises:
            ScanCancelledError: the scan was cancelled before the command started.
            SessionLostError: the session container disappeared.
        """
        await self.checkpoint(invocation.scan_run_id, invocation.stage, invocation.tool)

        start = time.monotonic()
        session = self._sessions.get(invocation.scan_run_id)
        if session is None:
            result = await self._run_ephemeral(invocation, start)
        else:
            result = await self._run_in_session(session, invocation, start)

        await self._log_output(invocation, result)
        if invocation.parser is not None and result.stdout:
            result.parsed = self._parse(invocation, result)
        return result

    # ------------------------------------------------------------------
    # Cancellation checkpoint
    # ------------------------------------------------------------------

    async def checkpoint(self, scan_run_id: str, stage: str, skipping: str) -> None:
        """Raise ScanCancelledError (after killing the sandbox) if the run was cancelled."""
        try:
            status = await self._cancellation.get_status(scan_run_id)
        except Exception as exc:
            logger.debug("Cancellation check failed", scan_run_id=scan_run_id, err=str(exc))
            return
        if status != RunStatus.CANCELLED:
            return

        await self.scan_log.warning(
            scan_run_id, stage, f"Scan cancelled by user, skipping {skipping}"
        )
        await self._sessions.kill_container(scan_run_id)
        raise ScanCancelledError("Scan cancelled by user", scan_run_id=scan_run_id)

    # ------------------------------------------------------------------
    # Session mode
    # ------------------------------------------------------------------

    async def _run_in_session(
        self, session: ContainerSession, invocation: ToolInvocation, start: float
    ) -> ToolExecutionResult:
        assert session.container_id is not None
        session.touch()
        try:
            return await self._exec_and_collect(session.container_id, invocation, start)
        except ContainerNotFoundError as exc:
            raise SessionLostError(
                f"Session container {session.container_name} no longer exists",
                scan_run_id=invocation.scan_run_id,
            ) from exc

    async def _exec_and_collect(
        self, container_id: str, invocation: ToolInvocation, start: float
    ) -> ToolExecutionResult:
        marker = uuid.uuid4().hex
        handle = await self._runtime.exec_start(container_id, invocation.command, marker)
        timed_out = False
        try:
            raw = await asyncio.wait_for(
                self._runtime.read_stream(handle), timeout=invocation.timeout
            )
        except TimeoutError:
            timed_out = True
            raw = bytes(handle.buffer)
            logger.warning(
                "Command timed out, killing",
                scan_run_id=invocation.scan_run_id,
                tool=invocation.tool,
                timeout=invocation.timeout,
            )
            await self._runtime.kill_exec(handle)
        finally:
            self._runtime.close_stream(handle)

        exit_code = -1 if timed_out else await self._runtime.exec_exit_code(handle)
        stdout, stderr = demux_stream(raw)
        return ToolExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=time.monotonic() - start,
            timed_out=timed_out,
        )

    # ------------------------------------------------------------------
    # Ephemeral mode
    # ------------------------------------------------------------------

    def _ephemeral_name(self, scan_run_id: str) -> str:
        return f"{self._ephemeral_prefix}{scan_run_id[-8:]}-{int(time.time() * 1000)}"

    async def _run_ephemeral(
        self, invocation: ToolInvocation, start: float
    ) -> ToolExecutionResult:
        name = self._ephemeral_name(invocation.scan_run_id)
        labels = {
            LABEL_SCAN_RUN: invocation.scan_run_id,
            LABEL_TYPE: "ephemeral",
            LABEL_STAGE: invocation.stage,
            LABEL_TOOL: invocation.tool,
        }
        logger.debug("Running ephemeral container", container=name, tool=invocation.tool)
        container_id = await self._runtime.start_ephemeral(name, invocation.command, labels)

        timed_out = False
        try:
            try:
                exit_code = await asyncio.wait_for(
                    self._runtime.wait_container(container_id), timeout=invocation.timeout
                )
            except TimeoutError:
                timed_out = True
                exit_code = -1
                logger.warning(
                    "Ephemeral command timed out, killing",
                    container=name,
                    tool=invocation.tool,
                    timeout=invocation.timeout,
                )
                await self._runtime.kill(container_id)
            stdout, stderr = await self._runtime.container_logs(container_id)
        finally:
            try:
                await self._runtime.remove_container(container_id)
            except Exception as exc:
                logger.warning("Ephemeral cleanup failed", container=name, err=str(exc))

        return ToolExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=time.monotonic() - start,
            timed_out=timed_out,
        )

    # ------------------------------------------------------------------
    # Output handling
    # ------------------------------------------------------------------

    async def _log_output(self, invocation: ToolInvocation, result: ToolExecutionResult) -> None:
        scan_run_id, stage, tool = invocation.scan_run_id, invocation.stage, invocation.tool
        outcome = "timed out" if result.timed_out else f"exit {result.exit_code}"

        stdout = result.stdout_text
        if stdout.strip():
            body = truncate_for_log(stdout, self._config.log_stdout_cap, LOG_TRUNCATION_MARKER)
            await self.scan_log.info(scan_run_id, stage, f"[{tool}] output ({outcome}):\n{body}")

        stderr = result.stderr_text.strip()
        if stderr:
            body = truncate_for_log(stderr, self._config.log_stderr_cap)
            await self.scan_log.warning(scan_run_id, stage, f"[{tool}] stderr: {body}")

    def _parse(self, invocation: ToolInvocation, result: ToolExecutionResult) -> object:
        assert invocation.parser is not None
        try:
            return invocation.parser(result.stdout_text)
        except Exception as exc:
            logger.warning(
                "Output parser failed",
                scan_run_id=invocation.scan_run_id,
                tool=invocation.tool,
                err=str(exc),
            )
            return None
