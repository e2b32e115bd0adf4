"""Data coordinator for KEBA Surplus Charging."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Optional

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed
from homeassistant.util import dt as dt_util

from .const import (
    CONF_BATTERY_POWER_ENTITY,
    CONF_BATTERY_SOC_ENTITY,
    CONF_GRID_POWER_ENTITY,
    CONF_HOUSE_POWER_ENTITY,
    CONF_INVERT_BATTERY_POWER,
    CONF_PV_POWER_ENTITY,
    CONF_WALLBOX_HOST,
    DOMAIN,
    UPDATE_INTERVAL_SECONDS,
    WALLBOX_STATE_NAMES,
)
from .controller import ChargingStrategyController
from .exceptions import ConfigInvalid, DeviceError, DeviceNotConfigured
from .helpers import compute_autarky, compute_self_consumption, read_float_state
from .models import PowerSample
from .protocol import StaticInfoReport
from .storage import ChargingStorage
from .transport import WallboxTransport

_LOGGER = logging.getLogger(__name__)


class KebaSurplusCoordinator(DataUpdateCoordinator):
    """Run the charging evaluation cycle every 15 seconds."""

    def __init__(
        self,
        hass: HomeAssistant,
        entry: ConfigEntry,
        controller: ChargingStrategyController,
        storage: ChargingStorage,
        transport: Optional[WallboxTransport] = None,
    ) -> None:
        """Initialize the coordinator."""
        self.hass = hass
        self.entry = entry
        merged_config: dict[str, Any] = dict(entry.data)
        if entry.options:
            merged_config.update(entry.options)
        self.config = merged_config

        self.controller = controller
        self.storage = storage
        self.transport = transport
        self.interlock = None
        self.broadcast_listener = None
        self.log_handler = None
        self.device_details: Optional[StaticInfoReport] = None

        # An evaluation still running when the next tick fires makes that tick a no-op.
        self._cycle_lock = asyncio.Lock()
        self.skipped_cycles = 0
        self.last_cycle_at = None

        super().__init__(
            hass,
            _LOGGER,
            name=DOMAIN,
            update_interval=timedelta(seconds=UPDATE_INTERVAL_SECONDS),
        )

    @property
    def wallbox_address(self) -> Optional[str]:
        host = self.config.get(CONF_WALLBOX_HOST)
        return host.strip() if isinstance(host, str) and host.strip() else None

    async def async_fetch_device_details(self) -> None:
        """Read report 1 once for the device registry; failures are not fatal."""
        if self.transport is None or self.wallbox_address is None:
            return
        try:
            report = await self.transport.async_request_report(self.wallbox_address, 1)
        except DeviceError as err:
            _LOGGER.warning("Reading wallbox identity failed: %s", err)
            return
        self.device_details = StaticInfoReport.from_report(report)
        _LOGGER.info(
            "Wallbox %s, firmware %s",
            self.device_details.product,
            self.device_details.firmware,
        )

    def build_device_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "identifiers": {(DOMAIN, self.entry.entry_id)},
            "name": "KEBA Surplus Charging",
            "manufacturer": "KEBA",
            "model": "KeContact",
        }
        details = self.device_details
        if details is not None:
            if details.product:
                info["model"] = details.product
            if details.serial:
                info["serial_number"] = details.serial
            if details.firmware:
                info["sw_version"] = details.firmware
        return info

    def read_live_data(self, charger_power_watt: float) -> PowerSample:
        """Build a power sample from the configured meter entities."""
        pv_power = self._read_required(CONF_PV_POWER_ENTITY, "PV power")
        house_power = self._read_required(CONF_HOUSE_POWER_ENTITY, "house power")
        battery_power = self._read_optional(CONF_BATTERY_POWER_ENTITY, "battery power")
        grid_power = self._read_optional(CONF_GRID_POWER_ENTITY, "grid power")
        battery_soc = read_float_state(self.hass, self.config.get(CONF_BATTERY_SOC_ENTITY))

        if self.config.get(CONF_INVERT_BATTERY_POWER, False):
            battery_power = -battery_power

        return PowerSample(
            pv_power=pv_power,
            battery_power=battery_power,
            house_power=house_power,
            grid_power=grid_power,
            battery_soc=battery_soc,
            wallbox_power=charger_power_watt,
            autarky=compute_autarky(house_power, grid_power),
            self_consumption=compute_self_consumption(pv_power, grid_power),
            timestamp=dt_util.utcnow(),
        )

    def _read_required(self, key: str, name: str) -> float:
        entity_id = self.config.get(key)
        if not entity_id:
            raise UpdateFailed(f"No {name} entity configured")
        value = read_float_state(self.hass, entity_id)
        if value is None:
            raise UpdateFailed(f"{name} entity {entity_id} unavailable")
        return value

    def _read_optional(self, key: str, name: str) -> float:
        entity_id = self.config.get(key)
        if not entity_id:
            return 0.0
        value = read_float_state(self.hass, entity_id)
        if value is None:
            raise UpdateFailed(f"{name} entity {entity_id} unavailable")
        return value

    async def _async_update_data(self) -> dict[str, Any]:
        if self._cycle_lock.locked():
            self.skipped_cycles += 1
            _LOGGER.debug("Previous evaluation still running, skipping this cycle")
            return self.data or self._build_data(None)

        async with self._cycle_lock:
            sample = self.read_live_data(self.controller.wallbox_power_watt)
            try:
                await self.controller.async_process_strategy(sample, self.wallbox_address)
            except (ConfigInvalid, DeviceNotConfigured) as err:
                raise UpdateFailed(str(err)) from err
            self.last_cycle_at = dt_util.utcnow()
            return self._build_data(sample)

    def _build_data(self, sample: Optional[PowerSample]) -> dict[str, Any]:
        return {
            "sample": sample.to_dict() if sample is not None else None,
            "status": self.controller.get_status(),
            "wallbox": self._wallbox_data(),
            "plug_tracking": asdict(self.storage.get_plug_tracking()),
        }

    def _wallbox_data(self) -> dict[str, Any]:
        status = self.controller.last_status_report
        metering = self.controller.last_metering_report
        data: dict[str, Any] = {}
        if status is not None:
            data.update(
                {
                    "state": status.state,
                    "state_name": WALLBOX_STATE_NAMES.get(status.state, "unknown"),
                    "plug": status.plug,
                    "enable_sys": status.enable_sys,
                    "input": status.input,
                    "max_current_a": (
                        status.max_current_ma / 1000 if status.max_current_ma is not None else None
                    ),
                }
            )
        if metering is not None:
            data.update(
                {
                    "power_w": round(metering.power_w, 1),
                    "power_kw": round(metering.power_mw / 1_000_000, 2),
                    "currents_a": [round(i / 1000, 2) for i in metering.currents_ma],
                    "voltages_v": list(metering.voltages),
                    "session_energy_kwh": round(metering.session_energy_wh / 1000, 2),
                    "total_energy_kwh": round(metering.total_energy_wh / 1000, 2),
                }
            )
        return data
