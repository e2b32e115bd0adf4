"""Tests for helper functions and shared models."""
from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from custom_components.keba_surplus.const import CONF_MIN_START_POWER, CONF_START_DELAY
from custom_components.keba_surplus.exceptions import ConfigInvalid
from custom_components.keba_surplus.helpers import (
    build_strategy_config,
    compute_autarky,
    compute_self_consumption,
    is_valid_state,
    read_float_state,
)
from custom_components.keba_surplus.models import (
    ChargingContext,
    ChargingStrategy,
    rated_max_current,
)


class FakeStates:
    def __init__(self, states):
        self._states = {key: SimpleNamespace(state=value) for key, value in states.items()}

    def get(self, entity_id):
        return self._states.get(entity_id)


def test_is_valid_state():
    assert is_valid_state("12.5")
    assert not is_valid_state("unavailable")
    assert not is_valid_state("unknown")
    assert not is_valid_state(None)
    assert not is_valid_state("")


def test_read_float_state():
    hass = SimpleNamespace(
        states=FakeStates({"sensor.pv": "4200.5", "sensor.bad": "n/a", "sensor.off": "unavailable"})
    )

    assert read_float_state(hass, "sensor.pv") == pytest.approx(4200.5)
    assert read_float_state(hass, "sensor.bad") is None
    assert read_float_state(hass, "sensor.off") is None
    assert read_float_state(hass, "sensor.missing") is None
    assert read_float_state(hass, None) is None


def test_autarky_and_self_consumption():
    assert compute_autarky(2000, 500) == 75.0
    assert compute_autarky(2000, -800) == 100.0
    assert compute_autarky(0, 100) is None
    assert compute_self_consumption(4000, -1000) == 75.0
    assert compute_self_consumption(4000, 300) == 100.0
    assert compute_self_consumption(0, -100) is None


def test_build_strategy_config_uses_defaults_for_missing_keys():
    config = build_strategy_config({CONF_MIN_START_POWER: "2000"}, "surplus_battery_prio")

    assert config.active_strategy is ChargingStrategy.SURPLUS_BATTERY_PRIO
    assert config.min_start_power_watt == 2000
    assert config.physical_phase_switch == 3
    assert config.input_x1_strategy is ChargingStrategy.MAX_WITHOUT_BATTERY


@pytest.mark.parametrize(
    "settings",
    [
        {CONF_START_DELAY: -5},
        {CONF_MIN_START_POWER: "lots"},
    ],
)
def test_build_strategy_config_rejects_invalid_values(settings):
    with pytest.raises(ConfigInvalid):
        build_strategy_config(settings, "off")


def test_build_strategy_config_rejects_unknown_strategy():
    with pytest.raises(ConfigInvalid):
        build_strategy_config({}, "turbo")


def test_rated_max_current():
    assert rated_max_current(1) == 32
    assert rated_max_current(3) == 16


def test_context_serialization_round_trip_keeps_timestamps():
    since = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
    context = ChargingContext(
        strategy=ChargingStrategy.SURPLUS_VEHICLE_PRIO,
        is_active=True,
        current_ampere=8,
        target_ampere=10,
        current_phases=1,
        last_adjustment=since,
        adjustment_count=4,
    )

    data = context.to_dict()
    assert data["strategy"] == "surplus_vehicle_prio"
    assert data["last_adjustment"] == "2026-06-01T12:00:00+00:00"
    assert ChargingContext.from_dict(data) == context


def test_strategy_flags():
    assert ChargingStrategy.MAX_WITH_BATTERY.is_max_power
    assert not ChargingStrategy.MAX_WITH_BATTERY.is_surplus
    assert ChargingStrategy.SURPLUS_BATTERY_PRIO.is_surplus
    assert not ChargingStrategy.OFF.is_surplus
    assert not ChargingStrategy.OFF.is_max_power
