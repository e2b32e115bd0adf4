"""Select platform for choosing the charging strategy."""
from __future__ import annotations

import logging

from homeassistant.components.select import SelectEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN
from .coordinator import KebaSurplusCoordinator
from .models import STRATEGY_OPTIONS

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the select platform."""
    coordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([ChargingStrategySelect(coordinator, entry)], False)


class ChargingStrategySelect(CoordinatorEntity, SelectEntity):
    """Active charging strategy."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        """Initialize the select entity."""
        super().__init__(coordinator)
        self.entry = entry
        self._attr_has_entity_name = True
        self._attr_name = "Charging Strategy"
        self._attr_unique_id = f"{entry.entry_id}_charging_strategy"
        self._attr_icon = "mdi:solar-power-variant"
        self._attr_options = list(STRATEGY_OPTIONS)
        self._attr_translation_key = "charging_strategy"
        self._attr_device_info = coordinator.build_device_info()

    @property
    def current_option(self) -> str | None:
        return self.coordinator.storage.active_strategy.value

    async def async_select_option(self, option: str) -> None:
        """Switch strategy; interlock errors are raised to the caller."""
        _LOGGER.debug("Strategy %s selected", option)
        await self.coordinator.controller.async_switch_strategy(
            option, self.coordinator.wallbox_address
        )
        self.async_write_ha_state()
        await self.coordinator.async_request_refresh()
