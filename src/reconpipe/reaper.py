"""Idle session reaper.

Sessions normally end with their pipeline.  A crashed or abandoned run can
leave its sandbox behind, so a background loop ends any session that has not
executed a command within ``reaper.session_ttl_s``.
"""

from __future__ import annotations

import asyncio

from reconpipe.config import ReaperConfig
from reconpipe.container import SessionManager
from reconpipe.logger import logger


async def reap_once(sessions: SessionManager, ttl_s: float) -> list[str]:
    reaped = await sessions.reap_idle(ttl_s)
    if reaped:
        logger.info("Reaped idle sessions", count=len(reaped), scan_run_ids=reaped)
    return reaped


async def run_reaper_loop(sessions: SessionManager, config: ReaperConfig) -> None:
    """Run until cancelled. Errors in one sweep never stop the loop."""
    await asyncio.sleep(config.initial_delay_s)
    while True:
        try:
            await reap_once(sessions, config.session_ttl_s)
        except Exception:
            logger.exception("Error in session reaper")
        await asyncio.sleep(config.interval_s)
