"""Config flow for KEBA Surplus Charging integration."""
from __future__ import annotations

from typing import Any, Mapping

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.data_entry_flow import FlowResult
from homeassistant.helpers import selector

from .const import (
    CONF_BATTERY_POWER_ENTITY,
    CONF_BATTERY_SOC_ENTITY,
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_GRID_CHARGE_DISABLE_COMMAND,
    CONF_GRID_CHARGE_ENABLE_COMMAND,
    CONF_GRID_POWER_ENTITY,
    CONF_HOUSE_POWER_ENTITY,
    CONF_INPUT_X1_STRATEGY,
    CONF_INTERLOCK_ENABLED,
    CONF_INTERLOCK_MIN_INTERVAL,
    CONF_INTERLOCK_PREFIX,
    CONF_INVERT_BATTERY_POWER,
    CONF_LOG_LEVEL,
    CONF_MIN_CHANGE_INTERVAL,
    CONF_MIN_CURRENT_CHANGE,
    CONF_MIN_START_POWER,
    CONF_PHYSICAL_PHASE_SWITCH,
    CONF_PV_POWER_ENTITY,
    CONF_START_DELAY,
    CONF_STOP_DELAY,
    CONF_STOP_THRESHOLD,
    CONF_WALLBOX_HOST,
    DEFAULT_INPUT_X1_STRATEGY,
    DEFAULT_INTERLOCK_MIN_INTERVAL,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MIN_CHANGE_INTERVAL,
    DEFAULT_MIN_CURRENT_CHANGE,
    DEFAULT_MIN_START_POWER,
    DEFAULT_PHYSICAL_PHASE_SWITCH,
    DEFAULT_START_DELAY,
    DEFAULT_STOP_DELAY,
    DEFAULT_STOP_THRESHOLD,
    DOMAIN,
    LOG_LEVELS,
    STRATEGY_OFF,
)
from .exceptions import ConfigInvalid
from .helpers import build_strategy_config
from .models import STRATEGY_OPTIONS

_POWER_ENTITY = selector.EntitySelector(
    selector.EntitySelectorConfig(domain="sensor", device_class="power")
)


def _number(min_value: float, max_value: float, step: float, unit: str) -> selector.NumberSelector:
    return selector.NumberSelector(
        selector.NumberSelectorConfig(
            min=min_value,
            max=max_value,
            step=step,
            unit_of_measurement=unit,
            mode=selector.NumberSelectorMode.BOX,
        )
    )


def _optional_entity(key: str, defaults: Mapping[str, Any]) -> vol.Optional:
    value = defaults.get(key)
    if value:
        return vol.Optional(key, description={"suggested_value": value})
    return vol.Optional(key)


def build_user_schema(defaults: Mapping[str, Any] | None = None) -> vol.Schema:
    """Schema for the wallbox and meter step."""
    defaults = defaults or {}
    return vol.Schema(
        {
            vol.Required(CONF_WALLBOX_HOST, default=defaults.get(CONF_WALLBOX_HOST, "")): str,
            vol.Required(
                CONF_PV_POWER_ENTITY, default=defaults.get(CONF_PV_POWER_ENTITY, vol.UNDEFINED)
            ): _POWER_ENTITY,
            vol.Required(
                CONF_HOUSE_POWER_ENTITY,
                default=defaults.get(CONF_HOUSE_POWER_ENTITY, vol.UNDEFINED),
            ): _POWER_ENTITY,
            _optional_entity(CONF_BATTERY_POWER_ENTITY, defaults): _POWER_ENTITY,
            _optional_entity(CONF_GRID_POWER_ENTITY, defaults): _POWER_ENTITY,
            _optional_entity(CONF_BATTERY_SOC_ENTITY, defaults): selector.EntitySelector(
                selector.EntitySelectorConfig(domain="sensor", device_class="battery")
            ),
            vol.Optional(
                CONF_INVERT_BATTERY_POWER,
                default=defaults.get(CONF_INVERT_BATTERY_POWER, False),
            ): selector.BooleanSelector(),
            vol.Optional(
                CONF_INTERLOCK_ENABLED, default=defaults.get(CONF_INTERLOCK_ENABLED, False)
            ): selector.BooleanSelector(),
        }
    )


def build_options_schema(config: Mapping[str, Any]) -> vol.Schema:
    """Schema for strategy tuning, interlock commands and log level."""
    strategy_selector = selector.SelectSelector(
        selector.SelectSelectorConfig(
            options=[option for option in STRATEGY_OPTIONS if option != STRATEGY_OFF],
            translation_key="charging_strategy",
            mode=selector.SelectSelectorMode.DROPDOWN,
        )
    )
    return vol.Schema(
        {
            vol.Required(
                CONF_MIN_START_POWER, default=config.get(CONF_MIN_START_POWER, DEFAULT_MIN_START_POWER)
            ): _number(0, 22000, 50, "W"),
            vol.Required(
                CONF_STOP_THRESHOLD, default=config.get(CONF_STOP_THRESHOLD, DEFAULT_STOP_THRESHOLD)
            ): _number(0, 22000, 50, "W"),
            vol.Required(
                CONF_START_DELAY, default=config.get(CONF_START_DELAY, DEFAULT_START_DELAY)
            ): _number(0, 3600, 5, "s"),
            vol.Required(
                CONF_STOP_DELAY, default=config.get(CONF_STOP_DELAY, DEFAULT_STOP_DELAY)
            ): _number(0, 3600, 5, "s"),
            vol.Required(
                CONF_PHYSICAL_PHASE_SWITCH,
                default=str(config.get(CONF_PHYSICAL_PHASE_SWITCH, DEFAULT_PHYSICAL_PHASE_SWITCH)),
            ): selector.SelectSelector(
                selector.SelectSelectorConfig(
                    options=["1", "3"], mode=selector.SelectSelectorMode.LIST
                )
            ),
            vol.Required(
                CONF_MIN_CURRENT_CHANGE,
                default=config.get(CONF_MIN_CURRENT_CHANGE, DEFAULT_MIN_CURRENT_CHANGE),
            ): _number(0, 10, 1, "A"),
            vol.Required(
                CONF_MIN_CHANGE_INTERVAL,
                default=config.get(CONF_MIN_CHANGE_INTERVAL, DEFAULT_MIN_CHANGE_INTERVAL),
            ): _number(0, 3600, 5, "s"),
            vol.Required(
                CONF_INPUT_X1_STRATEGY,
                default=config.get(CONF_INPUT_X1_STRATEGY, DEFAULT_INPUT_X1_STRATEGY),
            ): strategy_selector,
            vol.Optional(
                CONF_INTERLOCK_PREFIX, default=config.get(CONF_INTERLOCK_PREFIX, "")
            ): str,
            vol.Optional(
                CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
                default=config.get(CONF_DISCHARGE_LOCK_ENABLE_COMMAND, ""),
            ): str,
            vol.Optional(
                CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
                default=config.get(CONF_DISCHARGE_LOCK_DISABLE_COMMAND, ""),
            ): str,
            vol.Optional(
                CONF_GRID_CHARGE_ENABLE_COMMAND,
                default=config.get(CONF_GRID_CHARGE_ENABLE_COMMAND, ""),
            ): str,
            vol.Optional(
                CONF_GRID_CHARGE_DISABLE_COMMAND,
                default=config.get(CONF_GRID_CHARGE_DISABLE_COMMAND, ""),
            ): str,
            vol.Optional(
                CONF_INTERLOCK_MIN_INTERVAL,
                default=config.get(CONF_INTERLOCK_MIN_INTERVAL, DEFAULT_INTERLOCK_MIN_INTERVAL),
            ): _number(0, 60, 1, "s"),
            vol.Optional(
                CONF_LOG_LEVEL, default=config.get(CONF_LOG_LEVEL, DEFAULT_LOG_LEVEL)
            ): selector.SelectSelector(
                selector.SelectSelectorConfig(
                    options=list(LOG_LEVELS), mode=selector.SelectSelectorMode.DROPDOWN
                )
            ),
        }
    )


def normalize_options(user_input: Mapping[str, Any]) -> dict[str, Any]:
    """Convert selector output (strings, floats) to stored types."""
    options = dict(user_input)
    if CONF_PHYSICAL_PHASE_SWITCH in options:
        options[CONF_PHYSICAL_PHASE_SWITCH] = int(options[CONF_PHYSICAL_PHASE_SWITCH])
    for key in (CONF_START_DELAY, CONF_STOP_DELAY, CONF_MIN_CHANGE_INTERVAL):
        if key in options:
            options[key] = int(options[key])
    return options


def validate_options(options: Mapping[str, Any]) -> dict[str, str]:
    """Return form errors for the options step."""
    errors: dict[str, str] = {}
    try:
        config = build_strategy_config(options, STRATEGY_OFF)
    except ConfigInvalid:
        errors["base"] = "invalid_strategy_config"
        return errors
    if config.stop_threshold_watt > config.min_start_power_watt:
        errors[CONF_STOP_THRESHOLD] = "stop_above_start"
    return errors


class ConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for KEBA Surplus Charging."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Handle the initial step - wallbox address and meter entities."""
        errors: dict[str, str] = {}
        if user_input is not None:
            host = user_input[CONF_WALLBOX_HOST].strip()
            if not host:
                errors[CONF_WALLBOX_HOST] = "host_required"
            else:
                await self.async_set_unique_id(host)
                self._abort_if_unique_id_configured()
                data = dict(user_input)
                data[CONF_WALLBOX_HOST] = host
                return self.async_create_entry(title=f"KEBA {host}", data=data)

        return self.async_show_form(
            step_id="user",
            data_schema=build_user_schema(user_input),
            errors=errors,
        )

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        """Return the options flow."""
        return OptionsFlowHandler(config_entry)


class OptionsFlowHandler(config_entries.OptionsFlow):
    """Handle options flow for KEBA Surplus Charging."""

    def __init__(self, config_entry: config_entries.ConfigEntry) -> None:
        """Initialize options flow."""
        self._entry = config_entry

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Strategy tuning and battery interlock commands."""
        existing_config = {**self._entry.data, **self._entry.options}
        errors: dict[str, str] = {}

        if user_input is not None:
            options = normalize_options(user_input)
            errors = validate_options(options)
            if not errors:
                return self.async_create_entry(title="", data=options)
            existing_config.update(user_input)

        return self.async_show_form(
            step_id="init",
            data_schema=build_options_schema(existing_config),
            errors=errors,
        )
