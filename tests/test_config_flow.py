"""Config flow tests for KEBA Surplus Charging."""
from __future__ import annotations

import pytest
import voluptuous as vol
from homeassistant.data_entry_flow import FlowResultType
from pytest_homeassistant_custom_component.common import MockConfigEntry

from custom_components.keba_surplus.config_flow import (
    OptionsFlowHandler,
    build_user_schema,
    normalize_options,
    validate_options,
)
from custom_components.keba_surplus.const import (
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_HOUSE_POWER_ENTITY,
    CONF_INPUT_X1_STRATEGY,
    CONF_MIN_CHANGE_INTERVAL,
    CONF_MIN_CURRENT_CHANGE,
    CONF_MIN_START_POWER,
    CONF_PHYSICAL_PHASE_SWITCH,
    CONF_PV_POWER_ENTITY,
    CONF_START_DELAY,
    CONF_STOP_DELAY,
    CONF_STOP_THRESHOLD,
    CONF_WALLBOX_HOST,
    DEFAULT_MIN_START_POWER,
    DOMAIN,
)


def _options_input(**overrides):
    user_input = {
        CONF_MIN_START_POWER: 1800.0,
        CONF_STOP_THRESHOLD: 1200.0,
        CONF_START_DELAY: 60.0,
        CONF_STOP_DELAY: 240.0,
        CONF_PHYSICAL_PHASE_SWITCH: "1",
        CONF_MIN_CURRENT_CHANGE: 1.0,
        CONF_MIN_CHANGE_INTERVAL: 30.0,
        CONF_INPUT_X1_STRATEGY: "max_with_battery",
        CONF_DISCHARGE_LOCK_ENABLE_COMMAND: "-d 1",
    }
    user_input.update(overrides)
    return user_input


def _default_for(schema: vol.Schema, field_name: str):
    key = next(key for key in schema.schema if getattr(key, "schema", None) == field_name)
    default = getattr(key, "default", None)
    return default() if callable(default) else default


def test_user_schema_requires_host_and_meters():
    schema = build_user_schema()
    required = {
        key.schema for key in schema.schema if isinstance(key, vol.Required)
    }

    assert {CONF_WALLBOX_HOST, CONF_PV_POWER_ENTITY, CONF_HOUSE_POWER_ENTITY} <= required


def test_normalize_options_converts_selector_values():
    options = normalize_options(_options_input())

    assert options[CONF_PHYSICAL_PHASE_SWITCH] == 1
    assert options[CONF_START_DELAY] == 60
    assert isinstance(options[CONF_STOP_DELAY], int)
    assert options[CONF_MIN_CHANGE_INTERVAL] == 30


def test_validate_options_rejects_stop_above_start():
    errors = validate_options(
        normalize_options(_options_input(**{CONF_STOP_THRESHOLD: 2500.0}))
    )

    assert errors == {CONF_STOP_THRESHOLD: "stop_above_start"}


def test_validate_options_rejects_invalid_values():
    errors = validate_options({CONF_PHYSICAL_PHASE_SWITCH: 2})

    assert errors == {"base": "invalid_strategy_config"}
    assert validate_options(normalize_options(_options_input())) == {}


@pytest.mark.asyncio
async def test_options_flow_returns_updated_options():
    entry = MockConfigEntry(domain=DOMAIN, data={CONF_WALLBOX_HOST: "192.168.1.20"})
    handler = OptionsFlowHandler(entry)

    result = await handler.async_step_init(_options_input())

    assert result["type"] == FlowResultType.CREATE_ENTRY
    assert result["data"][CONF_PHYSICAL_PHASE_SWITCH] == 1
    assert result["data"][CONF_INPUT_X1_STRATEGY] == "max_with_battery"
    # Options flow should not have mutated the original entry data
    assert entry.data == {CONF_WALLBOX_HOST: "192.168.1.20"}


@pytest.mark.asyncio
async def test_options_flow_shows_errors():
    entry = MockConfigEntry(domain=DOMAIN, data={})
    handler = OptionsFlowHandler(entry)

    result = await handler.async_step_init(_options_input(**{CONF_STOP_THRESHOLD: 5000.0}))

    assert result["type"] == FlowResultType.FORM
    assert result["errors"] == {CONF_STOP_THRESHOLD: "stop_above_start"}


@pytest.mark.asyncio
async def test_options_flow_defaults_reflect_existing_options():
    entry = MockConfigEntry(
        domain=DOMAIN,
        data={CONF_WALLBOX_HOST: "192.168.1.20"},
        options={CONF_STOP_THRESHOLD: 900, CONF_PHYSICAL_PHASE_SWITCH: 1},
    )
    handler = OptionsFlowHandler(entry)

    result = await handler.async_step_init()

    assert result["type"] == FlowResultType.FORM
    schema = result["data_schema"]
    assert _default_for(schema, CONF_STOP_THRESHOLD) == 900
    assert _default_for(schema, CONF_PHYSICAL_PHASE_SWITCH) == "1"
    assert _default_for(schema, CONF_MIN_START_POWER) == DEFAULT_MIN_START_POWER
