"""Embedded HTTP server — scan control API and health check.

Exposes endpoints on ``server.host:server.port``.  There is no
authentication; bind it to a private interface.  ``/api/terminal/exec``
runs arbitrary shell commands in a worker container.
"""

from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any, Protocol

from aiohttp import web

from reconpipe import db
from reconpipe.config import get_settings
from reconpipe.errors import InvalidTargetError, ScanCancelledError, SessionLostError
from reconpipe.logger import logger
from reconpipe.pipeline import PipelineRun
from reconpipe.types import ToolExecutionResult

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    async def start_scan(self, domain: str, scan_run_id: str | None) -> PipelineRun: ...

    async def cancel_scan(self, scan_run_id: str) -> bool: ...

    async def terminate_session(self, scan_run_id: str) -> None: ...

    async def exec_command(
        self, command: str, session_id: str | None
    ) -> tuple[str, ToolExecutionResult]: ...

    async def health(self) -> dict[str, Any]: ...


deps_key = web.AppKey("deps", HttpDeps)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(reason="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(reason="Expected a JSON object")
    return body


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    status = await deps.health()
    healthy = status.get("docker", False) and status.get("image", False)
    return web.json_response(
        {
            "status": "ok" if healthy else "degraded",
            "uptime_seconds": round(time.monotonic() - _start_time),
            **status,
        }
    )


async def _handle_scan_start(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _read_json(request)
    domain = body.get("domain")
    scan_run_id = body.get("scanRunId")
    if scan_run_id is not None and not isinstance(scan_run_id, str):
        return web.json_response({"error": "scanRunId must be a string"}, status=400)

    try:
        run = await deps.start_scan(domain, scan_run_id)
    except InvalidTargetError as exc:
        logger.warning("Rejected scan target", target=str(domain)[:100], err=str(exc))
        return web.json_response({"error": str(exc)}, status=400)

    return web.json_response(
        {"scanRunId": run.scan_run_id, "domain": run.domain, "status": str(run.status)},
        status=202,
    )


async def _handle_scan_cancel(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    scan_run_id = request.match_info["scan_run_id"]
    if await db.get_scan_status(scan_run_id) is None:
        return web.json_response({"error": "scan not found"}, status=404)
    cancelled = await deps.cancel_scan(scan_run_id)
    if not cancelled:
        return web.json_response({"error": "scan already finished"}, status=409)
    return web.json_response({"scanRunId": scan_run_id, "status": "cancelled"})


async def _handle_scan_list(request: web.Request) -> web.Response:
    status = request.query.get("status")
    runs = await db.list_scan_runs(status=status)
    return web.json_response(
        [
            {"id": r.id, "domain": r.domain, "status": r.status, "progress": r.progress}
            for r in runs
        ]
    )


async def _handle_scan_get(request: web.Request) -> web.Response:
    scan_run_id = request.match_info["scan_run_id"]
    record = await db.get_scan_run(scan_run_id)
    if record is None:
        return web.json_response({"error": "scan not found"}, status=404)
    payload = asdict(record)
    payload["finding_counts"] = await db.count_findings_by_severity(scan_run_id)
    return web.json_response(payload)


async def _handle_scan_logs(request: web.Request) -> web.Response:
    scan_run_id = request.match_info["scan_run_id"]
    try:
        limit = int(request.query.get("limit", "500"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    logs = await db.get_scan_logs(scan_run_id, limit=max(1, min(limit, 5000)))
    return web.json_response([asdict(record) for record in logs])


async def _handle_session_terminate(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _read_json(request)
    session_id = body.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return web.json_response({"error": "sessionId is required"}, status=400)
    await deps.terminate_session(session_id)
    return web.json_response({"sessionId": session_id, "terminated": True})


async def _handle_terminal_exec(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _read_json(request)
    command = body.get("command")
    session_id = body.get("sessionId")
    if not isinstance(command, str) or not command.strip():
        return web.json_response({"error": "command is required"}, status=400)
    if session_id is not None and (not isinstance(session_id, str) or not session_id):
        return web.json_response({"error": "sessionId must be a non-empty string"}, status=400)

    logger.info("Terminal command received", session_id=session_id, command=command[:100])
    try:
        session_id, result = await deps.exec_command(command, session_id)
    except (ScanCancelledError, SessionLostError) as exc:
        return web.json_response({"error": str(exc)}, status=409)

    return web.json_response(
        {
            "sessionId": session_id,
            "stdout": result.stdout_text,
            "stderr": result.stderr_text,
            "exitCode": result.exit_code,
            "timedOut": result.timed_out,
            "duration": round(result.duration, 3),
        }
    )


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


def build_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_post("/api/scan/start", _handle_scan_start)
    app.router.add_post("/api/scan/{scan_run_id}/cancel", _handle_scan_cancel)
    app.router.add_get("/api/scans", _handle_scan_list)
    app.router.add_get("/api/scan/{scan_run_id}", _handle_scan_get)
    app.router.add_get("/api/scan/{scan_run_id}/logs", _handle_scan_logs)
    app.router.add_post("/api/session/terminate", _handle_session_terminate)
    app.router.add_post("/api/terminal/exec", _handle_terminal_exec)
    return app


async def start_http_server(deps: HttpDeps) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    server = get_settings().server
    runner = web.AppRunner(build_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, server.host, server.port)
    await site.start()
    logger.info("HTTP server listening", host=server.host, port=server.port)
    return runner
