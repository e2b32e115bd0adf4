"""Diagnostics tests for KEBA Surplus Charging."""
from __future__ import annotations

from types import SimpleNamespace

import pytest
from pytest_homeassistant_custom_component.common import MockConfigEntry

from custom_components.keba_surplus.const import (
    CONF_INTERLOCK_PREFIX,
    CONF_STOP_THRESHOLD,
    CONF_WALLBOX_HOST,
    DOMAIN,
)
from custom_components.keba_surplus.diagnostics import (
    async_get_config_entry_diagnostics,
)
from custom_components.keba_surplus.protocol import StaticInfoReport


class DummyHass:
    def __init__(self) -> None:
        self.data: dict = {}


class DummyStorage:
    def __init__(self, logs):
        self._logs = logs

    def get_logs(self, limit=None):
        return self._logs[-limit:] if limit else list(self._logs)


@pytest.mark.asyncio
async def test_diagnostics_redacts_host_and_interlock_commands():
    hass = DummyHass()
    entry = MockConfigEntry(
        domain=DOMAIN,
        data={CONF_WALLBOX_HOST: "192.168.1.20"},
        options={CONF_INTERLOCK_PREFIX: "e3dcset -p secret", CONF_STOP_THRESHOLD: 1000},
    )
    logs = [{"id": index, "message": f"entry {index}"} for index in range(150)]
    coordinator = SimpleNamespace(
        data={"wallbox": {"state": 3}, "sample": {"pv_power": 4200}},
        last_update_success=True,
        last_cycle_at=None,
        skipped_cycles=2,
        controller=SimpleNamespace(get_status=lambda: {"is_active": True}),
        storage=DummyStorage(logs),
        transport=SimpleNamespace(is_running=True, has_pending_request=False),
        interlock=SimpleNamespace(enabled=True, last_command="e3dcset -p *** -d 1"),
        device_details=StaticInfoReport(product="KC-P30-EC2404B2", serial="22334455", firmware="P30 v 3.10.57"),
    )
    hass.data[DOMAIN] = {entry.entry_id: coordinator}

    diagnostics = await async_get_config_entry_diagnostics(hass, entry)

    assert diagnostics["config_entry"]["data"][CONF_WALLBOX_HOST] == "**REDACTED**"
    assert diagnostics["config_entry"]["options"][CONF_INTERLOCK_PREFIX] == "**REDACTED**"
    assert diagnostics["config_entry"]["options"][CONF_STOP_THRESHOLD] == 1000
    assert diagnostics["coordinator_meta"]["skipped_cycles"] == 2
    assert diagnostics["status"] == {"is_active": True}
    assert diagnostics["transport"] == {"running": True, "pending_request": False}
    assert diagnostics["interlock"] == {"enabled": True, "last_command": "e3dcset -p *** -d 1"}
    assert diagnostics["device"]["serial"] == "**REDACTED**"
    assert diagnostics["device"]["firmware"] == "P30 v 3.10.57"
    assert diagnostics["wallbox"] == {"state": 3}
    assert diagnostics["sample"] == {"pv_power": 4200}
    assert len(diagnostics["logs"]) == 100
    assert diagnostics["logs"][-1]["message"] == "entry 149"


@pytest.mark.asyncio
async def test_diagnostics_without_coordinator():
    hass = DummyHass()
    entry = MockConfigEntry(domain=DOMAIN, data={})

    diagnostics = await async_get_config_entry_diagnostics(hass, entry)

    assert diagnostics == {"error": "coordinator_unavailable"}
