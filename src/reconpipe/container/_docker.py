"""Docker Engine adapter — the only module that talks to the docker SDK.

All public methods are async so they don't block the event loop.  The
underlying SDK calls are blocking HTTP requests and run in a thread via
``asyncio.to_thread``.

"Not found" answers from the engine (HTTP 404, or 409 for a container that
exists but is no longer running) are translated here into
:class:`~reconpipe.errors.ContainerNotFoundError`, so nothing above this
layer needs to know docker's exception types.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.utils.socket import read as socket_read

from reconpipe.config import ContainerConfig, Settings
from reconpipe.errors import ContainerNotFoundError
from reconpipe.logger import logger

# Environment variable stamped on every exec so a timed-out command's whole
# process tree can be found and killed from inside the container.
EXEC_MARKER_ENV = "RECONPIPE_EXEC_ID"

LABEL_SCAN_RUN = "reconpipe.scan_run_id"
LABEL_TYPE = "reconpipe.type"
LABEL_STAGE = "reconpipe.stage"
LABEL_TOOL = "reconpipe.tool"

_READ_CHUNK = 4096


@dataclass
class ContainerInfo:
    id: str
    name: str
    running: bool


@dataclass
class ExecHandle:
    """An in-flight exec: its id plus the raw attached socket."""

    exec_id: str
    container_id: str
    marker: str
    sock: Any
    buffer: bytearray = field(default_factory=bytearray)
    closed: bool = False


def _is_gone(exc: APIError) -> bool:
    if isinstance(exc, NotFound) or exc.status_code == 404:
        return True
    explanation = str(exc.explanation or exc).lower()
    return exc.status_code == 409 and "not running" in explanation


class DockerRuntime:
    """Named-container operations needed by the session manager and executor."""

    def __init__(self, client: docker.DockerClient, container: ContainerConfig) -> None:
        self._client = client
        self._config = container

    @classmethod
    def from_settings(cls, settings: Settings) -> DockerRuntime:
        if settings.docker.base_url:
            client = docker.DockerClient(
                base_url=settings.docker.base_url, timeout=settings.docker.api_timeout_s
            )
        else:
            client = docker.from_env(timeout=settings.docker.api_timeout_s)
        return cls(client, settings.container)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self._client.ping))
        except Exception as exc:
            logger.warning("Docker ping failed", err=str(exc))
            return False

    async def image_exists(self, image: str) -> bool:
        try:
            await asyncio.to_thread(self._client.images.get, image)
        except ImageNotFound:
            return False
        return True

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    def _find_sync(self, name: str) -> ContainerInfo | None:
        try:
            container = self._client.containers.get(name)
        except NotFound:
            return None
        state = container.attrs.get("State", {})
        return ContainerInfo(id=container.id, name=name, running=bool(state.get("Running")))

    async def find_container(self, name: str) -> ContainerInfo | None:
        """Look up a container by name; None if it doesn't exist."""
        return await asyncio.to_thread(self._find_sync, name)

    def _host_config_kwargs(self) -> dict[str, Any]:
        c = self._config
        return {
            "user": c.user,
            "privileged": c.privileged,
            "cap_add": list(c.cap_add),
            "mem_limit": f"{c.memory_mb}m",
            "cpu_shares": c.cpu_shares,
            "network_mode": c.network_mode,
        }

    def _create_session_sync(self, name: str, labels: dict[str, str]) -> str:
        container = self._client.containers.run(
            self._config.image,
            name=name,
            # Keep the sandbox idle forever; work arrives via exec
            entrypoint=["tail", "-f", "/dev/null"],
            detach=True,
            tty=True,
            stop_signal="SIGKILL",
            auto_remove=False,
            labels=labels,
            **self._host_config_kwargs(),
        )
        return container.id

    async def create_session_container(self, name: str, labels: dict[str, str]) -> str:
        """Create and start a long-lived sandbox. Returns its container id."""
        start = time.monotonic()
        container_id = await asyncio.to_thread(self._create_session_sync, name, labels)
        logger.info(
            "Session container created",
            container=name,
            id=container_id[:12],
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return container_id

    def _remove_sync(self, name_or_id: str) -> bool:
        try:
            container = self._client.containers.get(name_or_id)
            container.remove(force=True)
        except NotFound:
            return False
        except APIError as exc:
            # Removal already in progress counts as removed
            if exc.status_code == 409:
                return False
            raise
        return True

    async def remove_container(self, name_or_id: str) -> bool:
        """Force-kill and remove a container (idempotent).

        Returns True if a container was removed, False if it was already gone.
        """
        return await asyncio.to_thread(self._remove_sync, name_or_id)

    def _list_sync(self, label: str) -> list[str]:
        containers = self._client.containers.list(all=True, filters={"label": label})
        return [c.name for c in containers]

    async def list_managed(self) -> list[str]:
        """Names of every container carrying our type label."""
        return await asyncio.to_thread(self._list_sync, LABEL_TYPE)

    # ------------------------------------------------------------------
    # Exec (session mode)
    # ------------------------------------------------------------------

    def _probe_sync(self, container_id: str) -> None:
        api = self._client.api
        try:
            exec_id = api.exec_create(container_id, ["true"], stdout=False, stderr=False)["Id"]
            api.exec_start(exec_id, detach=True)
        except APIError as exc:
            if _is_gone(exc):
                raise ContainerNotFoundError(container_id) from exc
            raise

    async def exec_probe(self, container_id: str) -> None:
        """Run a no-op exec. Raises ContainerNotFoundError if the sandbox is gone."""
        await asyncio.to_thread(self._probe_sync, container_id)

    def _exec_start_sync(self, container_id: str, command: str, marker: str) -> ExecHandle:
        api = self._client.api
        try:
            exec_id = api.exec_create(
                container_id,
                ["sh", "-c", command],
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                environment={EXEC_MARKER_ENV: marker},
            )["Id"]
            sock = api.exec_start(exec_id, tty=False, socket=True)
        except APIError as exc:
            if _is_gone(exc):
                raise ContainerNotFoundError(container_id) from exc
            raise
        return ExecHandle(exec_id=exec_id, container_id=container_id, marker=marker, sock=sock)

    async def exec_start(self, container_id: str, command: str, marker: str) -> ExecHandle:
        """Start ``sh -c command`` and attach to its multiplexed output."""
        return await asyncio.to_thread(self._exec_start_sync, container_id, command, marker)

    def _read_sync(self, handle: ExecHandle) -> bytes:
        while True:
            try:
                chunk = socket_read(handle.sock, _READ_CHUNK)
            except OSError:
                if handle.closed:
                    break
                raise
            if not chunk:
                break
            handle.buffer += chunk
        return bytes(handle.buffer)

    async def read_stream(self, handle: ExecHandle) -> bytes:
        """Read the raw (still framed) stream until the exec closes it.

        Bytes are accumulated on the handle so a caller that gives up early
        (timeout) can still recover the partial output.
        """
        return await asyncio.to_thread(self._read_sync, handle)

    def close_stream(self, handle: ExecHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            handle.sock.close()
        except OSError as exc:
            logger.debug("Exec socket close failed", exec_id=handle.exec_id[:12], err=str(exc))

    def _exit_code_sync(self, exec_id: str) -> int:
        api = self._client.api
        # The stream can hit EOF a moment before the engine records the exit
        for _ in range(20):
            try:
                info = api.exec_inspect(exec_id)
            except APIError as exc:
                if _is_gone(exc):
                    raise ContainerNotFoundError(exec_id) from exc
                raise
            if not info.get("Running") and info.get("ExitCode") is not None:
                return int(info["ExitCode"])
            time.sleep(0.05)
        return -1

    async def exec_exit_code(self, handle: ExecHandle) -> int:
        return await asyncio.to_thread(self._exit_code_sync, handle.exec_id)

    def _kill_marked_sync(self, container_id: str, marker: str) -> None:
        script = (
            "for p in /proc/[0-9]*; do "
            f'if grep -qs "{EXEC_MARKER_ENV}={marker}" "$p/environ"; then '
            'kill -9 "${p#/proc/}" 2>/dev/null; fi; done'
        )
        api = self._client.api
        exec_id = api.exec_create(container_id, ["sh", "-c", script], user="0")["Id"]
        api.exec_start(exec_id)

    async def kill_exec(self, handle: ExecHandle) -> None:
        """SIGKILL every process spawned by *handle*'s exec."""
        try:
            await asyncio.to_thread(self._kill_marked_sync, handle.container_id, handle.marker)
        except APIError as exc:
            logger.warning("Exec kill failed", exec_id=handle.exec_id[:12], err=str(exc))

    # ------------------------------------------------------------------
    # Single-use containers (ephemeral mode)
    # ------------------------------------------------------------------

    def _start_ephemeral_sync(self, name: str, command: str, labels: dict[str, str]) -> str:
        container = self._client.containers.run(
            self._config.image,
            command=["sh", "-c", command],
            name=name,
            detach=True,
            labels=labels,
            **self._host_config_kwargs(),
        )
        return container.id

    async def start_ephemeral(self, name: str, command: str, labels: dict[str, str]) -> str:
        return await asyncio.to_thread(self._start_ephemeral_sync, name, command, labels)

    def _wait_sync(self, container_id: str) -> int:
        result = self._client.containers.get(container_id).wait()
        return int(result.get("StatusCode", -1))

    async def wait_container(self, container_id: str) -> int:
        """Block until the container exits; returns its exit status."""
        return await asyncio.to_thread(self._wait_sync, container_id)

    def _kill_sync(self, container_id: str) -> None:
        try:
            self._client.containers.get(container_id).kill()
        except NotFound:
            return
        except APIError as exc:
            if not _is_gone(exc):
                raise

    async def kill(self, container_id: str) -> None:
        await asyncio.to_thread(self._kill_sync, container_id)

    def _logs_sync(self, container_id: str) -> tuple[bytes, bytes]:
        container = self._client.containers.get(container_id)
        stdout = container.logs(stdout=True, stderr=False)
        stderr = container.logs(stdout=False, stderr=True)
        return stdout, stderr

    async def container_logs(self, container_id: str) -> tuple[bytes, bytes]:
        return await asyncio.to_thread(self._logs_sync, container_id)
