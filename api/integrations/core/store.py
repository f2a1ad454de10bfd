"""
Expiring key/value storage for OAuth state and rate-limit windows.

Both maps are process-local, so the service must run as a single instance
unless a shared ExpiringStore implementation is swapped in.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

SWEEP_INTERVAL_SECONDS = 60


class ExpiringStore(ABC):
    """Key/value store whose entries carry an absolute expiry (clock seconds)."""

    @abstractmethod
    def now(self) -> float:
        """Current time on the store's clock."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value, or None if missing or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, expires_at: float) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""

    @abstractmethod
    def keys(self) -> list[str]:
        ...


class InMemoryStore(ExpiringStore):
    """Dict-backed ExpiringStore with an injectable clock."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)


async def run_periodic_sweep(
    stores: list[ExpiringStore],
    interval: float = SWEEP_INTERVAL_SECONDS,
) -> None:
    """Sweep expired entries forever. Started from the app lifespan."""
    while True:
        await asyncio.sleep(interval)
        removed = sum(store.sweep() for store in stores)
        if removed:
            logger.debug(f"[STORE] Swept {removed} expired entries")
