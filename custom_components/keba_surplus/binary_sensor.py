"""Binary sensor platform for KEBA Surplus Charging."""
from __future__ import annotations

from typing import Any

from homeassistant.components.binary_sensor import (
    BinarySensorDeviceClass,
    BinarySensorEntity,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN
from .coordinator import KebaSurplusCoordinator


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the binary sensor platform."""
    coordinator = hass.data[DOMAIN][entry.entry_id]

    entities = [
        ChargingActiveBinarySensor(coordinator, entry),
        BatteryProtectionBinarySensor(coordinator, entry),
        BatteryLockBinarySensor(coordinator, entry),
    ]

    async_add_entities(entities, False)


class KebaSurplusBinarySensorBase(CoordinatorEntity, BinarySensorEntity):
    """Base class for KEBA Surplus binary sensors."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        """Initialize the binary sensor."""
        super().__init__(coordinator)
        self.entry = entry
        self._attr_has_entity_name = True
        self._attr_device_info = coordinator.build_device_info()

    def _status(self) -> dict[str, Any]:
        if not self.coordinator.data:
            return {}
        return self.coordinator.data.get("status") or {}


class ChargingActiveBinarySensor(KebaSurplusBinarySensorBase):
    """Wallbox is charging under control of the integration."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Charging Active"
        self._attr_unique_id = f"{entry.entry_id}_charging_active"
        self._attr_icon = "mdi:ev-plug-type2"
        self._attr_device_class = BinarySensorDeviceClass.BATTERY_CHARGING

    @property
    def is_on(self) -> bool | None:
        return bool(self._status().get("is_active", False))

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        status = self._status()
        return {
            "start_delay_tracker_since": status.get("start_delay_tracker_since"),
            "below_threshold_since": status.get("below_threshold_since"),
            "last_adjustment": status.get("last_adjustment"),
            "adjustment_count": status.get("adjustment_count"),
        }


class BatteryProtectionBinarySensor(KebaSurplusBinarySensorBase):
    """Current is derated because the home battery keeps discharging."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Battery Discharge Protection"
        self._attr_unique_id = f"{entry.entry_id}_battery_protection"
        self._attr_icon = "mdi:battery-alert"

    @property
    def is_on(self) -> bool | None:
        return self.coordinator.controller.battery_protection_active

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        status = self._status()
        return {
            "battery_discharging": status.get("battery_discharging"),
            "battery_discharge_duration_seconds": status.get("battery_discharge_duration_seconds"),
        }


class BatteryLockBinarySensor(KebaSurplusBinarySensorBase):
    """Home battery discharge lock engaged through the interlock."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Battery Discharge Lock"
        self._attr_unique_id = f"{entry.entry_id}_battery_lock"
        self._attr_icon = "mdi:battery-lock"

    @property
    def is_on(self) -> bool | None:
        return bool(self._status().get("battery_lock", False))

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        return {"grid_charging": self._status().get("grid_charging")}
