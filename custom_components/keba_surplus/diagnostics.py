"""Diagnostics helpers for KEBA Surplus Charging."""
from __future__ import annotations

from copy import deepcopy
from dataclasses import asdict
from typing import Any

from homeassistant.components.diagnostics import async_redact_data
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant

from .const import (
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_GRID_CHARGE_DISABLE_COMMAND,
    CONF_GRID_CHARGE_ENABLE_COMMAND,
    CONF_INTERLOCK_PREFIX,
    CONF_WALLBOX_HOST,
    DOMAIN,
)

TO_REDACT = {
    CONF_WALLBOX_HOST,
    CONF_INTERLOCK_PREFIX,
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
    CONF_GRID_CHARGE_ENABLE_COMMAND,
    CONF_GRID_CHARGE_DISABLE_COMMAND,
}

RECENT_LOG_ENTRIES = 100


async def async_get_config_entry_diagnostics(
    hass: HomeAssistant, entry: ConfigEntry
) -> dict[str, Any]:
    """Return diagnostics for a given config entry."""
    coordinator = hass.data.get(DOMAIN, {}).get(entry.entry_id)
    if coordinator is None:
        return {"error": "coordinator_unavailable"}

    data = coordinator.data or {}
    transport = coordinator.transport
    interlock = coordinator.interlock

    return {
        "config_entry": {
            "entry_id": entry.entry_id,
            "data": async_redact_data(dict(entry.data), TO_REDACT),
            "options": async_redact_data(dict(entry.options), TO_REDACT),
        },
        "coordinator_meta": {
            "last_update_success": coordinator.last_update_success,
            "last_cycle_at": coordinator.last_cycle_at,
            "skipped_cycles": coordinator.skipped_cycles,
        },
        "status": coordinator.controller.get_status(),
        "transport": {
            "running": transport.is_running if transport is not None else False,
            "pending_request": transport.has_pending_request if transport is not None else False,
        },
        "interlock": {
            "enabled": interlock.enabled if interlock is not None else False,
            # Already masked by the interlock client.
            "last_command": interlock.last_command if interlock is not None else None,
        },
        "device": (
            async_redact_data(asdict(coordinator.device_details), {"serial"})
            if coordinator.device_details is not None
            else None
        ),
        "wallbox": deepcopy(data.get("wallbox")),
        "sample": deepcopy(data.get("sample")),
        "logs": coordinator.storage.get_logs(RECENT_LOG_ENTRIES),
    }
