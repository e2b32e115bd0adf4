"""Data classes shared by the controller, storage and entities."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from homeassistant.util import dt as dt_util

from .const import (
    DEFAULT_INPUT_X1_STRATEGY,
    DEFAULT_MIN_CHANGE_INTERVAL,
    DEFAULT_MIN_CURRENT_CHANGE,
    DEFAULT_MIN_START_POWER,
    DEFAULT_PHYSICAL_PHASE_SWITCH,
    DEFAULT_START_DELAY,
    DEFAULT_STOP_DELAY,
    DEFAULT_STOP_THRESHOLD,
    MAX_CURRENT_1P_AMPERE,
    MAX_CURRENT_3P_AMPERE,
    STRATEGY_MAX_WITH_BATTERY,
    STRATEGY_MAX_WITHOUT_BATTERY,
    STRATEGY_OFF,
    STRATEGY_SURPLUS_BATTERY_PRIO,
    STRATEGY_SURPLUS_VEHICLE_PRIO,
)


class ChargingStrategy(str, Enum):
    """Charging strategies the controller can run."""

    OFF = STRATEGY_OFF
    SURPLUS_BATTERY_PRIO = STRATEGY_SURPLUS_BATTERY_PRIO
    SURPLUS_VEHICLE_PRIO = STRATEGY_SURPLUS_VEHICLE_PRIO
    MAX_WITH_BATTERY = STRATEGY_MAX_WITH_BATTERY
    MAX_WITHOUT_BATTERY = STRATEGY_MAX_WITHOUT_BATTERY

    @property
    def is_max_power(self) -> bool:
        return self in (ChargingStrategy.MAX_WITH_BATTERY, ChargingStrategy.MAX_WITHOUT_BATTERY)

    @property
    def is_surplus(self) -> bool:
        return self in (
            ChargingStrategy.SURPLUS_BATTERY_PRIO,
            ChargingStrategy.SURPLUS_VEHICLE_PRIO,
        )


STRATEGY_OPTIONS = [strategy.value for strategy in ChargingStrategy]


def rated_max_current(phases: int) -> int:
    """Return the rated maximum current for a phase count."""
    return MAX_CURRENT_1P_AMPERE if phases == 1 else MAX_CURRENT_3P_AMPERE


@dataclass
class ChargingStrategyConfig:
    """Validated strategy configuration used by one evaluation cycle."""
    active_strategy: ChargingStrategy = ChargingStrategy.OFF
    min_start_power_watt: float = DEFAULT_MIN_START_POWER  # W surplus needed to start
    stop_threshold_watt: float = DEFAULT_STOP_THRESHOLD  # W surplus below which stop timer runs
    start_delay_seconds: float = DEFAULT_START_DELAY
    stop_delay_seconds: float = DEFAULT_STOP_DELAY
    physical_phase_switch: int = DEFAULT_PHYSICAL_PHASE_SWITCH  # 1 or 3
    min_current_change_ampere: float = DEFAULT_MIN_CURRENT_CHANGE
    min_change_interval_seconds: float = DEFAULT_MIN_CHANGE_INTERVAL
    input_x1_strategy: ChargingStrategy = ChargingStrategy(DEFAULT_INPUT_X1_STRATEGY)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["active_strategy"] = self.active_strategy.value
        data["input_x1_strategy"] = self.input_x1_strategy.value
        return data


def _datetime_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str_to_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = dt_util.parse_datetime(str(value))
    return dt_util.as_utc(parsed) if parsed is not None else None


_CONTEXT_TIMESTAMPS = ("last_adjustment", "start_delay_tracker_since", "below_threshold_since")


@dataclass
class ChargingContext:
    """Live control state of the charging station.

    Invariants kept by the controller:
    - ``is_active`` False means ``current_ampere`` and ``target_ampere`` are 0
    - ``current_phases`` is 1 or 3
    - ``start_delay_tracker_since`` is only set while inactive,
      ``below_threshold_since`` only while active
    """
    strategy: ChargingStrategy = ChargingStrategy.OFF
    is_active: bool = False
    current_ampere: float = 0
    target_ampere: float = 0
    current_phases: int = 3
    last_adjustment: Optional[datetime] = None
    start_delay_tracker_since: Optional[datetime] = None
    below_threshold_since: Optional[datetime] = None
    adjustment_count: int = 0
    calculated_surplus: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the store and for status output."""
        data = asdict(self)
        data["strategy"] = self.strategy.value
        for key in _CONTEXT_TIMESTAMPS:
            data[key] = _datetime_to_str(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ChargingContext":
        """Restore from stored data, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "strategy" in values:
            try:
                values["strategy"] = ChargingStrategy(values["strategy"])
            except ValueError:
                values["strategy"] = ChargingStrategy.OFF
        for key in _CONTEXT_TIMESTAMPS:
            if key in values:
                values[key] = _str_to_datetime(values[key])
        if values.get("current_phases") not in (1, 3):
            values["current_phases"] = 3
        return cls(**values)


@dataclass
class ControlState:
    """State of the externally switched battery functions."""
    battery_lock: bool = False
    grid_charging: bool = False


@dataclass
class PlugTracking:
    """Audit record of the last plug status change."""
    last_plug_status: Optional[int] = None
    last_plug_change: Optional[str] = None  # ISO timestamp


@dataclass
class PowerSample:
    """One reading of the household power flows (W)."""
    pv_power: float
    battery_power: float  # positive = charging, negative = discharging
    house_power: float  # includes wallbox draw
    grid_power: float  # positive = import
    battery_soc: Optional[float] = None
    wallbox_power: float = 0
    autarky: Optional[float] = None
    self_consumption: Optional[float] = None
    timestamp: datetime = field(default_factory=dt_util.utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
