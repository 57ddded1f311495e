"""Per-scan container sessions.

A ContainerSession is one long-lived sandbox bound to a single scan run.
The SessionManager is the sole owner of the ``scan_run_id → container``
table.  Every mutation of an entry happens under that scan's lock, so two
coroutines starting the same scan concurrently end up sharing one
container instead of racing to create two.

Sandboxes are found again by deterministic name (``prefix + scan_run_id``),
which lets a restarted process adopt containers left running by its
predecessor instead of leaking duplicates.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from reconpipe.config import ContainerConfig
from reconpipe.container._docker import LABEL_SCAN_RUN, LABEL_TYPE, DockerRuntime
from reconpipe.errors import ContainerNotFoundError
from reconpipe.logger import logger
from reconpipe.types import SessionState


@dataclass
class ContainerSession:
    scan_run_id: str
    container_name: str
    container_id: str | None = None
    state: SessionState = SessionState.ABSENT
    last_used: float = field(default_factory=time.monotonic)

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING and self.container_id is not None

    def touch(self) -> None:
        self.last_used = time.monotonic()


class SessionManager:
    """Create, adopt, verify, and tear down per-scan sandboxes."""

    def __init__(self, runtime: DockerRuntime, config: ContainerConfig) -> None:
        self._runtime = runtime
        self._prefix = config.name_prefix
        self._sessions: dict[str, ContainerSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def container_name(self, scan_run_id: str) -> str:
        return f"{self._prefix}{scan_run_id}"

    @contextlib.asynccontextmanager
    async def _lock(self, scan_run_id: str) -> AsyncIterator[None]:
        # A lock lives only while some coroutine holds or awaits it
        lock = self._locks.setdefault(scan_run_id, asyncio.Lock())
        self._lock_users[scan_run_id] = self._lock_users.get(scan_run_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[scan_run_id] -= 1
            if not self._lock_users[scan_run_id]:
                del self._lock_users[scan_run_id]
                del self._locks[scan_run_id]

    def get(self, scan_run_id: str) -> ContainerSession | None:
        """Return the live session for *scan_run_id*, if one is known."""
        session = self._sessions.get(scan_run_id)
        if session is not None and session.is_running:
            return session
        return None

    def active_sessions(self) -> list[ContainerSession]:
        return [s for s in self._sessions.values() if s.is_running]

    def touch(self, scan_run_id: str) -> None:
        session = self._sessions.get(scan_run_id)
        if session is not None:
            session.touch()

    # ------------------------------------------------------------------
    # Start / adopt
    # ------------------------------------------------------------------

    async def start_session(self, scan_run_id: str) -> bool:
        """Ensure a running sandbox exists for *scan_run_id*.

        Reuses the known handle, adopts a running container with the
        deterministic name, or replaces a stopped one with a fresh
        container.  Returns False if no sandbox could be started.
        """
        async with self._lock(scan_run_id):
            return await self._start_locked(scan_run_id)

    async def _start_locked(self, scan_run_id: str) -> bool:
        existing = self._sessions.get(scan_run_id)
        if existing is not None and existing.is_running:
            existing.touch()
            return True

        name = self.container_name(scan_run_id)
        session = ContainerSession(
            scan_run_id=scan_run_id, container_name=name, state=SessionState.STARTING
        )
        self._sessions[scan_run_id] = session

        try:
            info = await self._runtime.find_container(name)
            if info is not None and info.running:
                session.container_id = info.id
                logger.info(
                    "Adopted running session container", scan_run_id=scan_run_id, container=name
                )
            else:
                if info is not None:
                    logger.info("Removing stopped session container", container=name)
                    await self._runtime.remove_container(name)
                session.container_id = await self._runtime.create_session_container(
                    name,
                    labels={LABEL_SCAN_RUN: scan_run_id, LABEL_TYPE: "session"},
                )
        except Exception as exc:
            logger.error(
                "Failed to start session container",
                scan_run_id=scan_run_id,
                container=name,
                err=str(exc),
            )
            session.state = SessionState.TERMINATED
            self._sessions.pop(scan_run_id, None)
            return False

        session.state = SessionState.RUNNING
        session.touch()
        return True

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def ensure_session_alive(self, scan_run_id: str) -> bool:
        """Verify the session with a no-op exec and respawn it if it's gone.

        With no known session this is exactly :meth:`start_session`.
        Only a not-found answer counts as gone; any other docker error from
        the check propagates and the sandbox is left alone.
        """
        async with self._lock(scan_run_id):
            session = self._sessions.get(scan_run_id)
            if session is not None and session.is_running:
                if await self._probe(session):
                    session.touch()
                    return True
                logger.warning(
                    "Session container is stale, respawning",
                    scan_run_id=scan_run_id,
                    container=session.container_name,
                )
                session.state = SessionState.STALE
                self._sessions.pop(scan_run_id, None)
                await self._force_remove(session.container_name)
            return await self._start_locked(scan_run_id)

    async def _probe(self, session: ContainerSession) -> bool:
        assert session.container_id is not None
        try:
            await self._runtime.exec_probe(session.container_id)
        except ContainerNotFoundError:
            return False
        return True

    async def _force_remove(self, name: str) -> None:
        try:
            await self._runtime.remove_container(name)
        except Exception as exc:
            logger.warning("Force-remove failed", container=name, err=str(exc))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def end_session(self, scan_run_id: str) -> None:
        """Kill and remove the scan's sandbox. Never raises.

        The in-memory reference is cleared even if removal fails.
        """
        async with self._lock(scan_run_id):
            session = self._sessions.pop(scan_run_id, None)
            if session is None:
                logger.debug("No session to end", scan_run_id=scan_run_id)
                return
            try:
                removed = await self._runtime.remove_container(
                    session.container_id or session.container_name
                )
                logger.info(
                    "Session ended",
                    scan_run_id=scan_run_id,
                    container=session.container_name,
                    removed=removed,
                )
            except Exception as exc:
                logger.warning(
                    "Error ending session", container=session.container_name, err=str(exc)
                )
            finally:
                session.state = SessionState.TERMINATED

    async def kill_container(self, scan_run_id: str) -> None:
        """Failure-path teardown: remove by name without assuming a live session."""
        async with self._lock(scan_run_id):
            session = self._sessions.pop(scan_run_id, None)
            if session is not None:
                session.state = SessionState.TERMINATED
            await self._force_remove(self.container_name(scan_run_id))
            logger.info("Session container killed", scan_run_id=scan_run_id)

    async def reap_idle(self, ttl: float) -> list[str]:
        """End sessions unused for more than *ttl* seconds. Returns their scan ids."""
        cutoff = time.monotonic() - ttl
        stale = [s.scan_run_id for s in self._sessions.values() if s.last_used < cutoff]
        for scan_run_id in stale:
            logger.info("Reaping idle session", scan_run_id=scan_run_id)
            await self.end_session(scan_run_id)
        return stale

    async def kill_all(self) -> None:
        """Tear down every known session plus any leftover labeled containers."""
        for scan_run_id in list(self._sessions):
            await self.end_session(scan_run_id)
        try:
            leftovers = await self._runtime.list_managed()
        except Exception as exc:
            logger.warning("Could not list leftover containers", err=str(exc))
            return
        for name in leftovers:
            await self._force_remove(name)
