"""Composition root — wires the docker runtime, sessions, executor, pipeline,
reaper, and HTTP server together, and owns process lifecycle.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from aiohttp import web

from reconpipe.config import Settings, get_settings
from reconpipe.container import CommandExecutor, DockerRuntime, SessionManager
from reconpipe.db import close_database, init_database
from reconpipe.event_bus import EventBus
from reconpipe.http_server import HttpDeps, start_http_server
from reconpipe.logger import logger, set_level
from reconpipe.pipeline import PipelineRun, PipelineScheduler, StageRunner
from reconpipe.reaper import run_reaper_loop
from reconpipe.scan_log import ScanLog
from reconpipe.types import ToolExecutionResult, ToolInvocation
from reconpipe.utils import create_background_task, generate_terminal_id


class ReconApp:
    def __init__(self, settings: Settings | None = None, runtime: DockerRuntime | None = None):
        self.settings = settings or get_settings()
        set_level(self.settings.logging.level)
        self.runtime = runtime or DockerRuntime.from_settings(self.settings)
        self.bus = EventBus()
        self.sessions = SessionManager(self.runtime, self.settings.container)
        self.executor = CommandExecutor(
            self.runtime,
            self.sessions,
            ScanLog(),
            config=self.settings.execution,
            container=self.settings.container,
        )
        self.scheduler = PipelineScheduler(
            StageRunner(self.executor, self.sessions, self.settings), self.bus
        )
        self._http_runner: web.AppRunner | None = None
        self._reaper_task: asyncio.Task[Any] | None = None
        self._shutting_down = False
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _check_docker(self) -> None:
        if not await self.runtime.ping():
            raise RuntimeError("Docker daemon is not reachable")
        image = self.settings.container.image
        if not await self.runtime.image_exists(image):
            logger.warning("Worker image not found; session starts will fail", image=image)

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        # Hard-exit watchdog in case container teardown hangs
        asyncio.get_running_loop().call_later(30, lambda: os._exit(1))

        await self.stop()

    async def stop(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
        if self._http_runner is not None:
            await self._http_runner.cleanup()
        self.scheduler.close()
        await self.sessions.kill_all()
        await close_database()
        self._stopped.set()

    async def run(self) -> None:
        """Serve the HTTP API until SIGINT/SIGTERM."""
        await init_database()
        await self._check_docker()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        if self.settings.reaper.enabled:
            self._reaper_task = create_background_task(
                run_reaper_loop(self.sessions, self.settings.reaper), name="session-reaper"
            )
        self._http_runner = await start_http_server(self._make_http_deps())
        await self._stopped.wait()

    async def scan(self, domain: str) -> PipelineRun:
        """Run one scan in the foreground and tear everything down afterwards."""
        await init_database()
        try:
            await self._check_docker()
            return await self.scheduler.run_scan(domain)
        finally:
            await self.bus.drain()
            await self.stop()

    # ------------------------------------------------------------------
    # Dependency adapters
    # ------------------------------------------------------------------

    def _make_http_deps(self) -> HttpDeps:
        app = self

        class _Deps:
            async def start_scan(self, domain: str, scan_run_id: str | None) -> PipelineRun:
                return await app.scheduler.start(domain, scan_run_id)

            async def cancel_scan(self, scan_run_id: str) -> bool:
                return await app.scheduler.cancel(scan_run_id)

            async def terminate_session(self, scan_run_id: str) -> None:
                await app.sessions.kill_container(scan_run_id)

            async def exec_command(
                self, command: str, session_id: str | None
            ) -> tuple[str, ToolExecutionResult]:
                # A live scan session runs it in that sandbox, anything else ephemerally
                session_id = session_id or generate_terminal_id()
                invocation = ToolInvocation(
                    command=command,
                    scan_run_id=session_id,
                    stage="terminal",
                    tool="terminal",
                    timeout=app.settings.timeout_for("terminal"),
                )
                return session_id, await app.executor.execute(invocation)

            async def health(self) -> dict[str, Any]:
                docker_ok = await app.runtime.ping()
                image_ok = docker_ok and await app.runtime.image_exists(
                    app.settings.container.image
                )
                return {
                    "docker": docker_ok,
                    "image": image_ok,
                    "active_sessions": len(app.sessions.active_sessions()),
                }

        return _Deps()
