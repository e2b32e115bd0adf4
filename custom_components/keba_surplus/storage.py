"""Persistent state and event log for KEBA Surplus Charging."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, replace
from itertools import count
from typing import Any, Mapping, Optional

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store
from homeassistant.util import dt as dt_util

from .const import (
    CONF_LOG_LEVEL,
    DEFAULT_LOG_LEVEL,
    LOG_CATEGORY_SYSTEM,
    LOG_CATEGORY_WALLBOX,
    MAX_LOG_ENTRIES,
    STORAGE_KEY_FMT,
    STORAGE_SAVE_DELAY_SECONDS,
    STORAGE_VERSION,
)
from .helpers import build_strategy_config
from .models import ChargingContext, ChargingStrategy, ChargingStrategyConfig, ControlState, PlugTracking

_LOGGER = logging.getLogger(__name__)


class ChargingStorage:
    """Single store per config entry.

    Holds the charging context, the active strategy, the control state and
    plug tracking. Every change updates memory first and schedules a
    coalesced write. The event log is kept in memory only.
    """

    def __init__(
        self,
        store: Store,
        entry_config: Mapping[str, Any],
        max_logs: int = MAX_LOG_ENTRIES,
    ) -> None:
        self._store = store
        self._entry_config = dict(entry_config)
        self._context = ChargingContext()
        self._active_strategy = ChargingStrategy.OFF
        self._control_state = ControlState()
        self._plug_tracking = PlugTracking()
        self._logs: deque[dict[str, Any]] = deque(maxlen=max_logs)
        self._log_ids = count(1)

    async def async_load(self) -> None:
        data = await self._store.async_load()
        if not isinstance(data, dict):
            _LOGGER.debug("No stored charging state, starting with defaults")
            return

        self._context = ChargingContext.from_dict(data.get("context"))
        try:
            self._active_strategy = ChargingStrategy(data.get("active_strategy", "off"))
        except ValueError:
            _LOGGER.warning("Stored strategy %s unknown, using off", data.get("active_strategy"))
            self._active_strategy = ChargingStrategy.OFF
        control = data.get("control_state") or {}
        self._control_state = ControlState(
            battery_lock=bool(control.get("battery_lock", False)),
            grid_charging=bool(control.get("grid_charging", False)),
        )
        plug = data.get("plug_tracking") or {}
        self._plug_tracking = PlugTracking(
            last_plug_status=plug.get("last_plug_status"),
            last_plug_change=plug.get("last_plug_change"),
        )
        _LOGGER.debug(
            "Charging state loaded: strategy=%s active=%s",
            self._active_strategy.value,
            self._context.is_active,
        )

    def _data_to_save(self) -> dict[str, Any]:
        return {
            "context": self._context.to_dict(),
            "active_strategy": self._active_strategy.value,
            "control_state": asdict(self._control_state),
            "plug_tracking": asdict(self._plug_tracking),
        }

    def _schedule_save(self) -> None:
        self._store.async_delay_save(self._data_to_save, STORAGE_SAVE_DELAY_SECONDS)

    async def async_flush(self) -> None:
        """Write pending state now instead of waiting for the delayed save."""
        await self._store.async_save(self._data_to_save())

    # Settings

    def get_settings(self) -> dict[str, Any]:
        """Merged entry data and options plus the active strategy."""
        settings = dict(self._entry_config)
        settings["active_strategy"] = self._active_strategy.value
        return settings

    def get_strategy_config(self) -> ChargingStrategyConfig:
        """Validated config; raises ConfigInvalid."""
        return build_strategy_config(self._entry_config, self._active_strategy)

    @property
    def active_strategy(self) -> ChargingStrategy:
        return self._active_strategy

    def set_active_strategy(self, strategy: ChargingStrategy | str) -> None:
        strategy = ChargingStrategy(strategy)
        if strategy == self._active_strategy:
            return
        self._active_strategy = strategy
        self._schedule_save()

    # Charging context

    def get_context(self) -> ChargingContext:
        """Return a copy; mutate through update_context or save_context."""
        return replace(self._context)

    def update_context(self, **patch: Any) -> ChargingContext:
        """Apply a partial update and persist it."""
        self._context = replace(self._context, **patch)
        self._schedule_save()
        return replace(self._context)

    def save_context(self, context: ChargingContext) -> None:
        self._context = replace(context)
        self._schedule_save()

    # Control state and plug tracking

    def get_control_state(self) -> ControlState:
        return replace(self._control_state)

    def save_control_state(self, control_state: ControlState) -> None:
        self._control_state = replace(control_state)
        self._schedule_save()

    def get_plug_tracking(self) -> PlugTracking:
        return replace(self._plug_tracking)

    def save_plug_tracking(self, tracking: PlugTracking) -> None:
        self._plug_tracking = replace(tracking)
        self._schedule_save()

    # Event log

    def add_log(self, level: str, category: str, message: str) -> dict[str, Any]:
        entry = {
            "id": next(self._log_ids),
            "timestamp": dt_util.utcnow().isoformat(),
            "level": level,
            "category": category,
            "message": message,
        }
        self._logs.append(entry)
        return entry

    def get_logs(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        logs = list(self._logs)
        if limit is not None:
            return logs[-limit:] if limit > 0 else []
        return logs



_LEVEL_BY_NAME = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_WALLBOX_MODULES = ("transport", "protocol")


class EventLogHandler(logging.Handler):
    """Copy integration log records into the storage event log."""

    def __init__(self, storage: ChargingStorage, level_name: str = DEFAULT_LOG_LEVEL) -> None:
        super().__init__(_LEVEL_BY_NAME.get(level_name, logging.INFO))
        self._storage = storage
        self._logger: Optional[logging.Logger] = None
        self._previous_level = logging.NOTSET

    def attach(self, logger: logging.Logger) -> None:
        """Add to ``logger`` and lower its level so configured records get through."""
        self._logger = logger
        self._previous_level = logger.level
        if logger.getEffectiveLevel() > self.level:
            logger.setLevel(self.level)
        logger.addHandler(self)

    def detach(self) -> None:
        if self._logger is None:
            return
        self._logger.removeHandler(self)
        self._logger.setLevel(self._previous_level)
        self._logger = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            self.handleError(record)
            return
        module = record.name.rsplit(".", 1)[-1]
        category = LOG_CATEGORY_WALLBOX if module in _WALLBOX_MODULES else LOG_CATEGORY_SYSTEM
        level = "error" if record.levelno >= logging.ERROR else record.levelname.lower()
        self._storage.add_log(level, category, message)


def log_level_from_config(config: Mapping[str, Any]) -> str:
    level = config.get(CONF_LOG_LEVEL, DEFAULT_LOG_LEVEL)
    return level if level in _LEVEL_BY_NAME else DEFAULT_LOG_LEVEL


def create_store(hass: HomeAssistant, entry_id: str) -> Store:
    return Store(hass, STORAGE_VERSION, STORAGE_KEY_FMT.format(entry_id=entry_id))
