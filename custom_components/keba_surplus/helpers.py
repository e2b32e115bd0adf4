"""Helper functions for KEBA Surplus Charging."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import voluptuous as vol
from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import HomeAssistant

from .const import (
    CONF_INPUT_X1_STRATEGY,
    CONF_MIN_CHANGE_INTERVAL,
    CONF_MIN_CURRENT_CHANGE,
    CONF_MIN_START_POWER,
    CONF_PHYSICAL_PHASE_SWITCH,
    CONF_START_DELAY,
    CONF_STOP_DELAY,
    CONF_STOP_THRESHOLD,
    DEFAULT_INPUT_X1_STRATEGY,
    DEFAULT_MIN_CHANGE_INTERVAL,
    DEFAULT_MIN_CURRENT_CHANGE,
    DEFAULT_MIN_START_POWER,
    DEFAULT_PHYSICAL_PHASE_SWITCH,
    DEFAULT_START_DELAY,
    DEFAULT_STOP_DELAY,
    DEFAULT_STOP_THRESHOLD,
)
from .exceptions import ConfigInvalid
from .models import STRATEGY_OPTIONS, ChargingStrategy, ChargingStrategyConfig

_LOGGER = logging.getLogger(__name__)

_NON_NEGATIVE = vol.All(vol.Coerce(float), vol.Range(min=0))

STRATEGY_CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required("active_strategy"): vol.In(STRATEGY_OPTIONS),
        vol.Required(CONF_MIN_START_POWER): _NON_NEGATIVE,
        vol.Required(CONF_STOP_THRESHOLD): _NON_NEGATIVE,
        vol.Required(CONF_START_DELAY): _NON_NEGATIVE,
        vol.Required(CONF_STOP_DELAY): _NON_NEGATIVE,
        vol.Required(CONF_PHYSICAL_PHASE_SWITCH): vol.All(vol.Coerce(int), vol.In([1, 3])),
        vol.Required(CONF_MIN_CURRENT_CHANGE): _NON_NEGATIVE,
        vol.Required(CONF_MIN_CHANGE_INTERVAL): _NON_NEGATIVE,
        vol.Required(CONF_INPUT_X1_STRATEGY): vol.In(STRATEGY_OPTIONS),
    },
    extra=vol.REMOVE_EXTRA,
)

_STRATEGY_DEFAULTS = {
    CONF_MIN_START_POWER: DEFAULT_MIN_START_POWER,
    CONF_STOP_THRESHOLD: DEFAULT_STOP_THRESHOLD,
    CONF_START_DELAY: DEFAULT_START_DELAY,
    CONF_STOP_DELAY: DEFAULT_STOP_DELAY,
    CONF_PHYSICAL_PHASE_SWITCH: DEFAULT_PHYSICAL_PHASE_SWITCH,
    CONF_MIN_CURRENT_CHANGE: DEFAULT_MIN_CURRENT_CHANGE,
    CONF_MIN_CHANGE_INTERVAL: DEFAULT_MIN_CHANGE_INTERVAL,
    CONF_INPUT_X1_STRATEGY: DEFAULT_INPUT_X1_STRATEGY,
}


def build_strategy_config(
    settings: Mapping[str, Any], active_strategy: str | ChargingStrategy
) -> ChargingStrategyConfig:
    """Assemble and validate the strategy config.

    Missing keys fall back to defaults; present but invalid values raise
    ConfigInvalid instead of being replaced.
    """
    raw = {key: settings.get(key, default) for key, default in _STRATEGY_DEFAULTS.items()}
    raw["active_strategy"] = (
        active_strategy.value if isinstance(active_strategy, ChargingStrategy) else active_strategy
    )
    try:
        validated = STRATEGY_CONFIG_SCHEMA(raw)
    except vol.Invalid as err:
        raise ConfigInvalid(f"Invalid charging strategy configuration: {err}") from err

    return ChargingStrategyConfig(
        active_strategy=ChargingStrategy(validated["active_strategy"]),
        min_start_power_watt=validated[CONF_MIN_START_POWER],
        stop_threshold_watt=validated[CONF_STOP_THRESHOLD],
        start_delay_seconds=validated[CONF_START_DELAY],
        stop_delay_seconds=validated[CONF_STOP_DELAY],
        physical_phase_switch=validated[CONF_PHYSICAL_PHASE_SWITCH],
        min_current_change_ampere=validated[CONF_MIN_CURRENT_CHANGE],
        min_change_interval_seconds=validated[CONF_MIN_CHANGE_INTERVAL],
        input_x1_strategy=ChargingStrategy(validated[CONF_INPUT_X1_STRATEGY]),
    )


def is_valid_state(state: Any) -> bool:
    """Check if a state value is usable."""
    return state not in (None, STATE_UNAVAILABLE, STATE_UNKNOWN, "")


def read_float_state(hass: HomeAssistant, entity_id: Optional[str]) -> Optional[float]:
    """Return the numeric state of an entity, or None if it has none."""
    if not entity_id:
        return None
    state = hass.states.get(entity_id)
    if state is None or not is_valid_state(state.state):
        _LOGGER.debug("Entity %s unavailable", entity_id)
        return None
    try:
        return float(state.state)
    except (TypeError, ValueError):
        _LOGGER.warning("Entity %s has non-numeric state %s", entity_id, state.state)
        return None


def compute_autarky(house_power: float, grid_power: float) -> Optional[float]:
    """Share of house consumption not covered by grid import (%)."""
    if house_power <= 0:
        return None
    grid_import = max(0.0, grid_power)
    return round(max(0.0, min(100.0, (1 - grid_import / house_power) * 100)), 1)


def compute_self_consumption(pv_power: float, grid_power: float) -> Optional[float]:
    """Share of PV production not exported (%)."""
    if pv_power <= 0:
        return None
    grid_export = max(0.0, -grid_power)
    return round(max(0.0, min(100.0, (1 - grid_export / pv_power) * 100)), 1)
