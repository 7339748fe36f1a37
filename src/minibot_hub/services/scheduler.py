"""APScheduler-based periodic maintenance: expiring idle sessions."""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from minibot_hub.config import SessionConfig
from minibot_hub.core.session import SessionRegistry
from minibot_hub.log import get_logger
from minibot_hub.services.base import Service

logger = get_logger(__name__)

SWEEP_JOB_ID = "session_sweep"


class SessionSweeper(Service):
    """Removes sessions idle longer than the configured TTL."""

    name = "session_sweeper"

    def __init__(self, config: SessionConfig, sessions: SessionRegistry):
        self._config = config
        self._sessions = sessions
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    async def start(self) -> None:
        if self._config.ttl_seconds <= 0:
            logger.info("session_sweeper_disabled")
            return
        self._scheduler.add_job(
            self.sweep,
            IntervalTrigger(seconds=self._config.sweep_interval),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info(
            "session_sweeper_started",
            interval=self._config.sweep_interval,
            ttl=self._config.ttl_seconds,
        )

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("session_sweeper_stopped")

    @property
    def healthy(self) -> bool:
        return self._config.ttl_seconds <= 0 or self._scheduler.running

    async def sweep(self) -> int:
        removed = self._sessions.purge_expired()
        logger.debug("session_sweep_done", removed=removed, live=self._sessions.stats())
        return removed
