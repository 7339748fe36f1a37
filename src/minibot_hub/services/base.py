"""Lifecycle contract for background services."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """Started after the database is open, stopped before it closes."""

    name: str = "service"

    @abstractmethod
    async def start(self) -> None:
        """Begin background work and return promptly."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop background work. Safe to call on a service that never started."""

    @property
    def healthy(self) -> bool:
        return True
