"""Service lifecycle manager."""

from __future__ import annotations

from minibot_hub.config import SessionConfig
from minibot_hub.core.session import SessionRegistry
from minibot_hub.log import get_logger
from minibot_hub.services.base import Service
from minibot_hub.services.scheduler import SessionSweeper

logger = get_logger(__name__)


class ServiceManager:
    """Manages startup and shutdown of all background services."""

    def __init__(self, sessions_config: SessionConfig, sessions: SessionRegistry):
        self._sweeper = SessionSweeper(sessions_config, sessions)
        self._services: list[Service] = [self._sweeper]

    def get_sweeper(self) -> SessionSweeper:
        return self._sweeper

    async def start_all(self) -> None:
        """Start all services. Failures are logged and do not block startup."""
        for service in self._services:
            try:
                await service.start()
            except Exception as e:
                logger.warning("service_start_failed", service=service.name, error=str(e))
        logger.info("all_services_started")

    async def stop_all(self) -> None:
        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception as e:
                logger.warning("service_stop_failed", service=service.name, error=str(e))
        logger.info("all_services_stopped")

    def health_check_all(self) -> dict[str, bool]:
        return {service.name: service.healthy for service in self._services}
