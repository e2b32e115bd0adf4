"""Sensor platform for KEBA Surplus Charging."""
from __future__ import annotations

import logging
from typing import Any

from homeassistant.components.sensor import (
    SensorDeviceClass,
    SensorEntity,
    SensorStateClass,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import UnitOfElectricCurrent, UnitOfEnergy, UnitOfPower
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import DOMAIN
from .coordinator import KebaSurplusCoordinator

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the sensor platform."""
    coordinator = hass.data[DOMAIN][entry.entry_id]

    entities = [
        ChargingStatusSensor(coordinator, entry),
        SurplusPowerSensor(coordinator, entry),
        CommandedCurrentSensor(coordinator, entry),
        TargetCurrentSensor(coordinator, entry),
        DetectedPhasesSensor(coordinator, entry),
        WallboxPowerSensor(coordinator, entry),
        SessionEnergySensor(coordinator, entry),
    ]

    async_add_entities(entities, False)


class KebaSurplusSensorBase(CoordinatorEntity, SensorEntity):
    """Base class for KEBA Surplus sensors."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        """Initialize the sensor."""
        super().__init__(coordinator)
        self.entry = entry
        self._attr_has_entity_name = True
        self._attr_device_info = coordinator.build_device_info()

    def _status(self) -> dict[str, Any]:
        if not self.coordinator.data:
            return {}
        return self.coordinator.data.get("status") or {}

    def _wallbox(self) -> dict[str, Any]:
        if not self.coordinator.data:
            return {}
        return self.coordinator.data.get("wallbox") or {}


class ChargingStatusSensor(KebaSurplusSensorBase):
    """Active strategy with the full controller status as attributes."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Charging Status"
        self._attr_unique_id = f"{entry.entry_id}_charging_status"
        self._attr_icon = "mdi:ev-station"

    @property
    def native_value(self) -> str | None:
        status = self._status()
        if not status:
            return None
        strategy = status.get("strategy", "off")
        return f"{strategy}: charging" if status.get("is_active") else f"{strategy}: idle"

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        status = self._status()
        if not status:
            return {"data_available": False}
        attributes = dict(status)
        attributes["wallbox"] = self._wallbox()
        attributes["plug_tracking"] = self.coordinator.data.get("plug_tracking")
        attributes["skipped_cycles"] = self.coordinator.skipped_cycles
        return attributes


class SurplusPowerSensor(KebaSurplusSensorBase):
    """Surplus computed for the active strategy."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Calculated Surplus"
        self._attr_unique_id = f"{entry.entry_id}_calculated_surplus"
        self._attr_icon = "mdi:solar-power"
        self._attr_device_class = SensorDeviceClass.POWER
        self._attr_state_class = SensorStateClass.MEASUREMENT
        self._attr_native_unit_of_measurement = UnitOfPower.WATT

    @property
    def native_value(self) -> float | None:
        return self._status().get("calculated_surplus")

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        if not self.coordinator.data or not self.coordinator.data.get("sample"):
            return {}
        sample = self.coordinator.data["sample"]
        return {
            "pv_power": sample.get("pv_power"),
            "house_power": sample.get("house_power"),
            "battery_power": sample.get("battery_power"),
            "grid_power": sample.get("grid_power"),
            "wallbox_power": sample.get("wallbox_power"),
            "battery_soc": sample.get("battery_soc"),
            "autarky": sample.get("autarky"),
            "self_consumption": sample.get("self_consumption"),
        }


class CommandedCurrentSensor(KebaSurplusSensorBase):
    """Current last confirmed by the wallbox."""

    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Charging Current"
        self._attr_unique_id = f"{entry.entry_id}_current_ampere"
        self._attr_device_class = SensorDeviceClass.CURRENT
        self._attr_native_unit_of_measurement = UnitOfElectricCurrent.AMPERE

    @property
    def native_value(self) -> float | None:
        return self._status().get("current_ampere")


class TargetCurrentSensor(KebaSurplusSensorBase):
    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Target Current"
        self._attr_unique_id = f"{entry.entry_id}_target_ampere"
        self._attr_device_class = SensorDeviceClass.CURRENT
        self._attr_native_unit_of_measurement = UnitOfElectricCurrent.AMPERE

    @property
    def native_value(self) -> float | None:
        return self._status().get("target_ampere")


class DetectedPhasesSensor(KebaSurplusSensorBase):
    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Phases"
        self._attr_unique_id = f"{entry.entry_id}_current_phases"
        self._attr_icon = "mdi:sine-wave"

    @property
    def native_value(self) -> int | None:
        return self._status().get("current_phases")


class WallboxPowerSensor(KebaSurplusSensorBase):
    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Wallbox Power"
        self._attr_unique_id = f"{entry.entry_id}_wallbox_power"
        self._attr_device_class = SensorDeviceClass.POWER
        self._attr_state_class = SensorStateClass.MEASUREMENT
        self._attr_native_unit_of_measurement = UnitOfPower.WATT

    @property
    def native_value(self) -> float | None:
        return self._wallbox().get("power_w")

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        wallbox = self._wallbox()
        return {
            "state": wallbox.get("state_name"),
            "currents_a": wallbox.get("currents_a"),
            "voltages_v": wallbox.get("voltages_v"),
            "max_current_a": wallbox.get("max_current_a"),
        }


class SessionEnergySensor(KebaSurplusSensorBase):
    def __init__(self, coordinator: KebaSurplusCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Session Energy"
        self._attr_unique_id = f"{entry.entry_id}_session_energy"
        self._attr_device_class = SensorDeviceClass.ENERGY
        self._attr_state_class = SensorStateClass.TOTAL_INCREASING
        self._attr_native_unit_of_measurement = UnitOfEnergy.KILO_WATT_HOUR

    @property
    def native_value(self) -> float | None:
        return self._wallbox().get("session_energy_kwh")
