"""The KEBA Surplus Charging integration."""
from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.exceptions import ConfigEntryNotReady, HomeAssistantError

from .broadcast import BroadcastListener
from .const import (
    ATTR_ENABLED,
    ATTR_ENTRY_ID,
    ATTR_STRATEGY,
    DOMAIN,
    SERVICE_SET_GRID_CHARGING,
    SERVICE_SWITCH_STRATEGY,
)
from .controller import ChargingStrategyController
from .coordinator import KebaSurplusCoordinator
from .exceptions import TransportError
from .interlock import BatteryInterlockClient
from .models import STRATEGY_OPTIONS
from .storage import ChargingStorage, EventLogHandler, create_store, log_level_from_config
from .transport import WallboxTransport

_LOGGER = logging.getLogger(__name__)

PLATFORMS: list[Platform] = [Platform.SELECT, Platform.SENSOR, Platform.BINARY_SENSOR]

SWITCH_STRATEGY_SERVICE_SCHEMA = vol.Schema(
    {
        vol.Optional(ATTR_ENTRY_ID): str,
        vol.Required(ATTR_STRATEGY): vol.In(STRATEGY_OPTIONS),
    }
)

SET_GRID_CHARGING_SERVICE_SCHEMA = vol.Schema(
    {
        vol.Optional(ATTR_ENTRY_ID): str,
        vol.Required(ATTR_ENABLED): vol.Boolean(),
    }
)


def _merged_config(entry: ConfigEntry) -> dict[str, Any]:
    config: dict[str, Any] = dict(entry.data)
    if entry.options:
        config.update(entry.options)
    return config


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up KEBA Surplus Charging from a config entry."""
    config = _merged_config(entry)

    storage = ChargingStorage(create_store(hass, entry.entry_id), config)
    await storage.async_load()

    log_handler = EventLogHandler(storage, log_level_from_config(config))
    log_handler.attach(logging.getLogger(__package__))

    transport = WallboxTransport()
    try:
        await transport.async_start()
    except TransportError as err:
        log_handler.detach()
        raise ConfigEntryNotReady(str(err)) from err

    interlock = BatteryInterlockClient(config)
    controller = ChargingStrategyController(transport, interlock, storage)
    coordinator = KebaSurplusCoordinator(hass, entry, controller, storage, transport)
    coordinator.interlock = interlock
    coordinator.log_handler = log_handler

    listener = BroadcastListener(
        hass,
        transport,
        controller,
        storage,
        lambda: coordinator.wallbox_address,
        coordinator.async_request_refresh,
    )
    coordinator.broadcast_listener = listener

    try:
        await coordinator.async_fetch_device_details()
        await coordinator.async_config_entry_first_refresh()
    except Exception:
        await transport.async_stop()
        log_handler.detach()
        raise

    listener.async_start()

    hass.data.setdefault(DOMAIN, {})
    hass.data[DOMAIN][entry.entry_id] = coordinator

    _register_services_once(hass)

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    entry.async_on_unload(entry.add_update_listener(async_reload_entry))

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    if unload_ok := await hass.config_entries.async_unload_platforms(entry, PLATFORMS):
        coordinator: KebaSurplusCoordinator = hass.data[DOMAIN].pop(entry.entry_id)
        if coordinator.broadcast_listener is not None:
            coordinator.broadcast_listener.async_stop()
        if coordinator.transport is not None:
            await coordinator.transport.async_stop()
        await coordinator.storage.async_flush()
        if coordinator.log_handler is not None:
            coordinator.log_handler.detach()

    return unload_ok


async def async_reload_entry(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Handle an options update.

    After the reload the discharge lock is brought in line with the active
    strategy; interlock errors propagate.
    """
    await hass.config_entries.async_reload(entry.entry_id)
    coordinator: KebaSurplusCoordinator | None = hass.data.get(DOMAIN, {}).get(entry.entry_id)
    if coordinator is None:
        return
    await coordinator.controller.async_handle_strategy_change(coordinator.storage.active_strategy)


def _register_services_once(hass: HomeAssistant) -> None:
    """Register domain services if not already registered."""
    registry = hass.data.setdefault(DOMAIN, {})
    if registry.get("services_registered"):
        return

    def _coordinator_entries() -> dict[str, KebaSurplusCoordinator]:
        """Return mapping of entry_id to coordinator, ignoring auxiliary keys."""
        return {
            entry_id: coordinator
            for entry_id, coordinator in hass.data.get(DOMAIN, {}).items()
            if isinstance(coordinator, KebaSurplusCoordinator)
        }

    def _resolve_coordinator(provided_id: str | None) -> KebaSurplusCoordinator:
        """Resolve which config entry to target for a service call."""
        coordinators = _coordinator_entries()
        if provided_id:
            if provided_id in coordinators:
                return coordinators[provided_id]
            raise HomeAssistantError(f"No KEBA Surplus config entry with id {provided_id}")

        if not coordinators:
            raise HomeAssistantError("No KEBA Surplus config entries loaded.")

        if len(coordinators) == 1:
            return next(iter(coordinators.values()))

        raise HomeAssistantError("Multiple KEBA Surplus entries configured; specify entry_id.")

    async def _async_handle_switch_strategy(call: ServiceCall) -> None:
        coordinator = _resolve_coordinator(call.data.get(ATTR_ENTRY_ID))
        await coordinator.controller.async_switch_strategy(
            call.data[ATTR_STRATEGY], coordinator.wallbox_address
        )
        await coordinator.async_request_refresh()

    async def _async_handle_set_grid_charging(call: ServiceCall) -> None:
        coordinator = _resolve_coordinator(call.data.get(ATTR_ENTRY_ID))
        if not await coordinator.controller.async_set_grid_charging(call.data[ATTR_ENABLED]):
            raise HomeAssistantError("Grid charge command is not configured")
        await coordinator.async_request_refresh()

    hass.services.async_register(
        DOMAIN,
        SERVICE_SWITCH_STRATEGY,
        _async_handle_switch_strategy,
        schema=SWITCH_STRATEGY_SERVICE_SCHEMA,
    )
    hass.services.async_register(
        DOMAIN,
        SERVICE_SET_GRID_CHARGING,
        _async_handle_set_grid_charging,
        schema=SET_GRID_CHARGING_SERVICE_SCHEMA,
    )

    registry["services_registered"] = True
