"""Shared test fixtures for reconpipe."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

import pytest

from reconpipe.container import ContainerInfo, ExecHandle, encode_frame
from reconpipe.container._demux import STDERR, STDOUT
from reconpipe.errors import ContainerNotFoundError
from reconpipe.types import ScanLogRecord

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(execution=ExecutionConfig(log_stdout_cap=10))
    """
    from reconpipe.config import (
        ContainerConfig,
        DockerConfig,
        ExecutionConfig,
        LoggingConfig,
        PipelineConfig,
        ReaperConfig,
        ServerConfig,
        Settings,
    )

    defaults = {
        "container": ContainerConfig(),
        "docker": DockerConfig(),
        "execution": ExecutionConfig(),
        "pipeline": PipelineConfig(),
        "reaper": ReaperConfig(),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


@dataclass
class FakeCommand:
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    hang: bool = False  # never finishes; stdout is delivered before the hang


class FakeRuntime:
    """In-memory stand-in for DockerRuntime.

    Commands are answered from registered responses: the first needle that
    appears in the command wins; anything else exits 0 with no output.
    """

    def __init__(self) -> None:
        self.containers: dict[str, ContainerInfo] = {}
        self.created: list[str] = []
        self.removed: list[str] = []
        self.commands: list[str] = []
        self.ephemeral: list[str] = []
        self.killed_markers: list[str] = []
        self.killed_containers: list[str] = []
        self.closed_streams: list[str] = []
        self.create_delay = 0.0
        self.fail_create = False
        self._responses: list[tuple[str, FakeCommand]] = []
        self._lose_on: list[str] = []
        self._inflight: dict[str, FakeCommand] = {}
        self._ids = itertools.count(1)

    # --- test controls ---

    def respond(self, needle: str, **kwargs) -> None:
        self._responses.append((needle, FakeCommand(**kwargs)))

    def lose_container_on(self, needle: str) -> None:
        """The next command containing *needle* finds its container gone."""
        self._lose_on.append(needle)

    def add_container(self, name: str, *, running: bool = True) -> str:
        cid = f"cid-{next(self._ids)}"
        self.containers[name] = ContainerInfo(id=cid, name=name, running=running)
        return cid

    def _lookup(self, command: str) -> FakeCommand:
        for needle, response in self._responses:
            if needle in command:
                return response
        return FakeCommand()

    def _by_id(self, container_id: str) -> ContainerInfo | None:
        for info in self.containers.values():
            if info.id == container_id:
                return info
        return None

    # --- DockerRuntime surface ---

    async def ping(self) -> bool:
        return True

    async def image_exists(self, image: str) -> bool:
        return True

    async def find_container(self, name: str) -> ContainerInfo | None:
        return self.containers.get(name)

    async def create_session_container(self, name: str, labels: dict[str, str]) -> str:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create:
            raise RuntimeError("image not found")
        self.created.append(name)
        return self.add_container(name)

    async def remove_container(self, name_or_id: str) -> bool:
        info = self.containers.get(name_or_id) or self._by_id(name_or_id)
        if info is None:
            return False
        del self.containers[info.name]
        self.removed.append(info.name)
        return True

    async def list_managed(self) -> list[str]:
        return list(self.containers)

    async def exec_probe(self, container_id: str) -> None:
        info = self._by_id(container_id)
        if info is None or not info.running:
            raise ContainerNotFoundError(container_id)

    async def exec_start(self, container_id: str, command: str, marker: str) -> ExecHandle:
        for needle in list(self._lose_on):
            if needle in command:
                self._lose_on.remove(needle)
                info = self._by_id(container_id)
                if info is not None:
                    del self.containers[info.name]
                break
        await self.exec_probe(container_id)
        self.commands.append(command)
        exec_id = f"exec-{next(self._ids)}"
        self._inflight[exec_id] = self._lookup(command)
        return ExecHandle(exec_id=exec_id, container_id=container_id, marker=marker, sock=None)

    async def read_stream(self, handle: ExecHandle) -> bytes:
        response = self._inflight[handle.exec_id]
        if response.stdout:
            handle.buffer += encode_frame(STDOUT, response.stdout)
        if response.hang:
            await asyncio.Event().wait()
        if response.stderr:
            handle.buffer += encode_frame(STDERR, response.stderr)
        return bytes(handle.buffer)

    def close_stream(self, handle: ExecHandle) -> None:
        handle.closed = True
        self.closed_streams.append(handle.exec_id)

    async def exec_exit_code(self, handle: ExecHandle) -> int:
        return self._inflight[handle.exec_id].exit_code

    async def kill_exec(self, handle: ExecHandle) -> None:
        self.killed_markers.append(handle.marker)

    async def start_ephemeral(self, name: str, command: str, labels: dict[str, str]) -> str:
        self.commands.append(command)
        self.ephemeral.append(name)
        cid = self.add_container(name)
        self._inflight[cid] = self._lookup(command)
        return cid

    async def wait_container(self, container_id: str) -> int:
        response = self._inflight[container_id]
        if response.hang:
            await asyncio.Event().wait()
        return response.exit_code

    async def kill(self, container_id: str) -> None:
        self.killed_containers.append(container_id)

    async def container_logs(self, container_id: str) -> tuple[bytes, bytes]:
        response = self._inflight[container_id]
        return response.stdout, response.stderr


class ListLogSink:
    """Collects scan log records in memory."""

    def __init__(self) -> None:
        self.records: list[ScanLogRecord] = []

    async def write(self, record: ScanLogRecord) -> None:
        self.records.append(record)

    def messages(self, level: str | None = None) -> list[str]:
        return [r.message for r in self.records if level is None or r.level == level]


class StaticCancellation:
    """Cancellation source that reports a fixed status per scan."""

    def __init__(self, statuses: dict[str, str] | None = None) -> None:
        self.statuses = statuses or {}

    async def get_status(self, scan_run_id: str) -> str | None:
        return self.statuses.get(scan_run_id)


def make_executor(runtime, *, sink=None, cancellation=None, settings=None):
    """Build ``(executor, sessions)`` around *runtime* with in-memory collaborators."""
    from reconpipe.container import CommandExecutor, SessionManager
    from reconpipe.scan_log import ScanLog

    s = settings or make_settings()
    sessions = SessionManager(runtime, s.container)
    executor = CommandExecutor(
        runtime,
        sessions,
        ScanLog(sink or ListLogSink()),
        config=s.execution,
        container=s.container,
        cancellation=cancellation or StaticCancellation(),
    )
    return executor, sessions


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O.
    """
    monkeypatch.setattr("reconpipe.config._settings", make_settings())


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    import reconpipe.db._connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def log_sink() -> ListLogSink:
    return ListLogSink()
