"""Environment signals used to gate background downloads.

Every signal is optional: ``None`` means "unknown" and the corresponding
gate is skipped rather than treated as a failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

import psutil

if TYPE_CHECKING:
    from newsdesk.storage.db import ArticleStore

logger = logging.getLogger(__name__)

DEFAULT_POWER_FLOOR_PERCENT = 20.0


class ConnectionQuality(str, Enum):
    OFFLINE = "offline"
    SLOW = "slow"
    CELLULAR = "cellular"
    GOOD = "good"

    @property
    def is_weak(self) -> bool:
        return self in (ConnectionQuality.OFFLINE, ConnectionQuality.SLOW, ConnectionQuality.CELLULAR)


class ResourceAdvisor(Protocol):
    async def is_online(self) -> Optional[bool]:
        ...

    async def connection_quality(self) -> Optional[ConnectionQuality]:
        ...

    async def power_ok(self) -> Optional[bool]:
        ...

    async def storage_usage_percent(self) -> Optional[float]:
        ...


class PermissiveAdvisor:
    """Reports nothing, so no gate ever blocks."""

    async def is_online(self) -> Optional[bool]:
        return None

    async def connection_quality(self) -> Optional[ConnectionQuality]:
        return None

    async def power_ok(self) -> Optional[bool]:
        return None

    async def storage_usage_percent(self) -> Optional[float]:
        return None


@dataclass
class StaticAdvisor:
    """Fixed signals, for tests and CLI overrides."""

    online: Optional[bool] = None
    quality: Optional[ConnectionQuality] = None
    power: Optional[bool] = None
    storage_percent: Optional[float] = None

    async def is_online(self) -> Optional[bool]:
        return self.online

    async def connection_quality(self) -> Optional[ConnectionQuality]:
        return self.quality

    async def power_ok(self) -> Optional[bool]:
        return self.power

    async def storage_usage_percent(self) -> Optional[float]:
        return self.storage_percent


class SystemAdvisor:
    """Host signals via psutil: battery state and storage headroom.

    Storage usage comes from the attached store's quota accounting when a
    store is given, otherwise from the disk holding ``probe_path``.
    Connectivity is not probed here; callers pass ``online`` explicitly.
    """

    def __init__(
        self,
        store: Optional["ArticleStore"] = None,
        online: Optional[bool] = None,
        power_floor_percent: float = DEFAULT_POWER_FLOOR_PERCENT,
        probe_path: str = ".",
    ) -> None:
        self.store = store
        self.online = online
        self.power_floor_percent = power_floor_percent
        self.probe_path = probe_path

    async def is_online(self) -> Optional[bool]:
        return self.online

    async def connection_quality(self) -> Optional[ConnectionQuality]:
        if self.online is False:
            return ConnectionQuality.OFFLINE
        return None

    async def power_ok(self) -> Optional[bool]:
        try:
            battery = psutil.sensors_battery() if hasattr(psutil, "sensors_battery") else None
        except Exception as e:
            logger.debug("Battery probe failed: %s", e)
            return None
        if battery is None:
            return None
        return bool(battery.power_plugged) or battery.percent >= self.power_floor_percent

    async def storage_usage_percent(self) -> Optional[float]:
        if self.store is not None and self.store.available:
            return (await self.store.estimate_usage()).percentage
        try:
            return psutil.disk_usage(str(Path(self.probe_path).resolve())).percent
        except OSError as e:
            logger.debug("Disk probe failed: %s", e)
            return None
