"""Charging strategy controller for the KEBA wallbox."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from homeassistant.util import dt as dt_util

from .const import (
    ACTIVE_PHASE_MIN_CURRENT_MA,
    BATTERY_DISCHARGE_DURATION_SECONDS,
    BATTERY_DISCHARGE_THRESHOLD_W,
    BATTERY_PRIO_SAFETY_FACTOR,
    BATTERY_PROTECTION_REDUCTION_AMPERE,
    CHARGING_STATE,
    MIN_CURRENT_AMPERE,
    PHASE_VOLTAGE,
    REAL_CHARGING_MIN_POWER_MW,
)
from .exceptions import ConfigInvalid, DeviceError, DeviceNotConfigured, InterlockError
from .interlock import BatteryInterlockClient
from .models import (
    ChargingContext,
    ChargingStrategy,
    ChargingStrategyConfig,
    PowerSample,
    rated_max_current,
)
from .protocol import MeteringReport, StatusReport, current_command, enable_command
from .storage import ChargingStorage
from .transport import WallboxTransport

_LOGGER = logging.getLogger(__name__)


def calculate_surplus(strategy: ChargingStrategy, sample: PowerSample) -> float:
    """Power available for charging under ``strategy`` (W).

    The meter reports house consumption including the wallbox, so the
    wallbox draw is taken out first.
    """
    house_only = sample.house_power - sample.wallbox_power
    battery = sample.battery_power

    if strategy is ChargingStrategy.SURPLUS_BATTERY_PRIO:
        after_battery = (sample.pv_power - house_only) - max(0.0, battery)
        return max(0.0, after_battery * BATTERY_PRIO_SAFETY_FACTOR)
    if strategy is ChargingStrategy.SURPLUS_VEHICLE_PRIO:
        return max(0.0, sample.pv_power - house_only + min(0.0, battery))
    if strategy is ChargingStrategy.MAX_WITH_BATTERY:
        return max(0.0, sample.pv_power + abs(min(0.0, battery)) - house_only)
    if strategy is ChargingStrategy.MAX_WITHOUT_BATTERY:
        return max(0.0, sample.pv_power - house_only)
    return 0.0


def detect_phases(currents_ma: tuple[float, float, float]) -> int:
    """One phase carrying current means single-phase, anything else three."""
    active = sum(1 for current in currents_ma if current > ACTIVE_PHASE_MIN_CURRENT_MA)
    return 1 if active == 1 else 3


class ChargingStrategyController:
    """Decide when and how hard the wallbox charges.

    Every public operation runs under one lock so the charging context has a
    single writer. Hysteresis timers are timestamps in the context, so they
    survive restarts.
    """

    def __init__(
        self,
        transport: WallboxTransport,
        interlock: BatteryInterlockClient,
        storage: ChargingStorage,
    ) -> None:
        self._transport = transport
        self._interlock = interlock
        self._storage = storage
        self._lock = asyncio.Lock()
        self._last_sample: Optional[PowerSample] = None
        self._battery_discharge_since: Optional[datetime] = None
        self.last_status_report: Optional[StatusReport] = None
        self.last_metering_report: Optional[MeteringReport] = None

    @property
    def last_sample(self) -> Optional[PowerSample]:
        return self._last_sample

    @property
    def wallbox_power_watt(self) -> float:
        """Charger draw from the last report 3."""
        if self.last_metering_report is None:
            return 0.0
        return self.last_metering_report.power_w

    # Evaluation cycle

    async def async_process_strategy(self, sample: PowerSample, address: Optional[str]) -> None:
        """Run one evaluation cycle with a fresh power sample."""
        async with self._lock:
            await self._async_process(sample, address)

    async def _async_process(self, sample: PowerSample, address: Optional[str]) -> None:
        self._last_sample = sample
        if not address:
            raise DeviceNotConfigured("No wallbox address configured")
        config = self._storage.get_strategy_config()

        if not await self._async_reconcile(address):
            return
        context = self._storage.get_context()

        if config.active_strategy is ChargingStrategy.OFF:
            if context.strategy is not ChargingStrategy.OFF:
                self._storage.update_context(strategy=ChargingStrategy.OFF)
            if context.is_active:
                await self._async_stop(address)
            return

        if context.strategy is not config.active_strategy:
            self._storage.update_context(strategy=config.active_strategy)

        surplus = calculate_surplus(config.active_strategy, sample)
        self._storage.update_context(calculated_surplus=round(surplus, 1))
        _LOGGER.debug(
            "Strategy %s, active=%s, surplus=%.0fW",
            config.active_strategy.value,
            context.is_active,
            surplus,
        )

        if self._should_stop(config, surplus):
            await self._async_stop(address)
            return

        target = self._calculate_target_current(config, surplus, sample)
        context = self._storage.get_context()

        if target is None:
            if context.is_active:
                # Brief dips are left to the stop hysteresis.
                _LOGGER.debug("Surplus below minimum current, waiting for stop delay")
            elif context.start_delay_tracker_since is not None:
                self._storage.update_context(start_delay_tracker_since=None)
                _LOGGER.debug("Start delay reset, surplus too low for minimum current")
            return

        if not context.is_active:
            if self._should_start(config, surplus):
                await self._async_start(address, target, config)
        else:
            await self._async_adjust(address, target, config)

    async def _async_reconcile(self, address: str) -> bool:
        """Correct the context against what the wallbox actually does.

        Returns False when the wallbox could not be read; the cycle is then
        abandoned until the next tick.
        """
        try:
            status = StatusReport.from_report(
                await self._transport.async_request_report(address, 2)
            )
            metering = MeteringReport.from_report(
                await self._transport.async_request_report(address, 3)
            )
        except DeviceError as err:
            _LOGGER.warning("Wallbox unreachable, skipping this cycle: %s", err)
            return False

        self.last_status_report = status
        self.last_metering_report = metering

        context = self._storage.get_context()
        really_charging = (
            status.state == CHARGING_STATE and metering.power_mw > REAL_CHARGING_MIN_POWER_MW
        )
        phases = detect_phases(metering.currents_ma)

        if context.is_active and not really_charging:
            _LOGGER.info(
                "Context says charging but wallbox is not (state=%s, power=%smW), marking inactive",
                status.state,
                metering.power_mw,
            )
            self._storage.update_context(
                is_active=False,
                current_ampere=0,
                target_ampere=0,
                current_phases=phases,
                below_threshold_since=None,
            )
        elif not context.is_active and really_charging:
            average = round(sum(metering.currents_ma) / 1000 / phases)
            _LOGGER.info(
                "Context says idle but wallbox is charging (state=%s, power=%smW), marking active at %sA",
                status.state,
                metering.power_mw,
                average,
            )
            self._storage.update_context(
                is_active=True,
                current_ampere=average,
                target_ampere=average,
                current_phases=phases,
                start_delay_tracker_since=None,
            )
        elif really_charging and context.current_phases != phases:
            _LOGGER.info("Phase correction: %sP -> %sP", context.current_phases, phases)
            self._storage.update_context(current_phases=phases)
        return True

    def _should_stop(self, config: ChargingStrategyConfig, surplus: float) -> bool:
        if not config.active_strategy.is_surplus:
            return False
        context = self._storage.get_context()
        if not context.is_active:
            return False

        now = dt_util.utcnow()
        if surplus < config.stop_threshold_watt:
            if context.below_threshold_since is None:
                self._storage.update_context(below_threshold_since=now)
                _LOGGER.info(
                    "Surplus %.0fW below stop threshold %sW, stop timer started",
                    surplus,
                    config.stop_threshold_watt,
                )
                return False
            elapsed = (now - context.below_threshold_since).total_seconds()
            if elapsed >= config.stop_delay_seconds:
                _LOGGER.info(
                    "Surplus %.0fW below %sW for %.0fs, stopping",
                    surplus,
                    config.stop_threshold_watt,
                    elapsed,
                )
                return True
            _LOGGER.debug(
                "Below stop threshold for %.0fs of %ss", elapsed, config.stop_delay_seconds
            )
            return False

        if context.below_threshold_since is not None:
            _LOGGER.info("Surplus recovered to %.0fW, stop timer reset", surplus)
            self._storage.update_context(below_threshold_since=None)
        return False

    def _calculate_target_current(
        self, config: ChargingStrategyConfig, surplus: float, sample: PowerSample
    ) -> Optional[int]:
        """Target current in A, or None if the surplus cannot cover 6 A."""
        context = self._storage.get_context()
        phases = context.current_phases if context.is_active else config.physical_phase_switch
        max_current = rated_max_current(phases)

        if config.active_strategy.is_max_power:
            return max_current

        if surplus < MIN_CURRENT_AMPERE * PHASE_VOLTAGE * phases:
            return None

        ampere = round(surplus / (PHASE_VOLTAGE * phases))
        ampere = max(MIN_CURRENT_AMPERE, min(max_current, ampere))

        if config.active_strategy is ChargingStrategy.SURPLUS_VEHICLE_PRIO:
            ampere = self._apply_battery_protection(ampere, sample)
        return ampere

    def _apply_battery_protection(self, ampere: int, sample: PowerSample) -> int:
        if sample.battery_power >= BATTERY_DISCHARGE_THRESHOLD_W:
            self._battery_discharge_since = None
            return ampere

        now = dt_util.utcnow()
        if self._battery_discharge_since is None:
            self._battery_discharge_since = now
        duration = (now - self._battery_discharge_since).total_seconds()
        if duration > BATTERY_DISCHARGE_DURATION_SECONDS:
            _LOGGER.info(
                "Battery discharging at %.0fW for %.0fs, reducing current by %sA",
                sample.battery_power,
                duration,
                BATTERY_PROTECTION_REDUCTION_AMPERE,
            )
            return max(MIN_CURRENT_AMPERE, ampere - BATTERY_PROTECTION_REDUCTION_AMPERE)
        return ampere

    def _should_start(self, config: ChargingStrategyConfig, surplus: float) -> bool:
        if config.active_strategy.is_max_power:
            return True

        context = self._storage.get_context()
        if surplus < config.min_start_power_watt:
            if context.start_delay_tracker_since is not None:
                self._storage.update_context(start_delay_tracker_since=None)
                _LOGGER.debug("Start delay reset, surplus %.0fW too low", surplus)
            return False

        now = dt_util.utcnow()
        if context.start_delay_tracker_since is None:
            self._storage.update_context(start_delay_tracker_since=now)
            _LOGGER.debug(
                "Start delay started: surplus %.0fW >= %sW, waiting %ss",
                surplus,
                config.min_start_power_watt,
                config.start_delay_seconds,
            )
            return False

        waited = (now - context.start_delay_tracker_since).total_seconds()
        if waited >= config.start_delay_seconds:
            _LOGGER.info(
                "Start condition met: surplus %.0fW >= %sW for %.0fs",
                surplus,
                config.min_start_power_watt,
                waited,
            )
            return True
        _LOGGER.debug("Start delay: %.0fs of %ss", waited, config.start_delay_seconds)
        return False

    # Commands

    async def _async_start(
        self, address: str, ampere: int, config: ChargingStrategyConfig
    ) -> None:
        phases = config.physical_phase_switch
        try:
            await self._transport.async_send(address, enable_command(True))
            await self._transport.async_send(address, current_command(ampere))
        except DeviceError as err:
            _LOGGER.error("Starting charging failed: %s", err)
            return

        context = self._storage.get_context()
        self._storage.update_context(
            is_active=True,
            current_ampere=ampere,
            target_ampere=ampere,
            current_phases=phases,
            strategy=config.active_strategy,
            last_adjustment=dt_util.utcnow(),
            start_delay_tracker_since=None,
            below_threshold_since=None,
            adjustment_count=context.adjustment_count + 1,
        )
        _LOGGER.info(
            "Charging started at %sA @ %sP (strategy %s)",
            ampere,
            phases,
            config.active_strategy.value,
        )

    async def _async_adjust(
        self, address: str, ampere: int, config: ChargingStrategyConfig
    ) -> None:
        context = self._storage.get_context()
        now = dt_util.utcnow()
        delta = abs(ampere - context.current_ampere)
        interval_elapsed = (
            context.last_adjustment is None
            or (now - context.last_adjustment).total_seconds() >= config.min_change_interval_seconds
        )

        if delta < config.min_current_change_ampere or not interval_elapsed:
            if context.target_ampere != ampere:
                self._storage.update_context(target_ampere=ampere)
            return

        try:
            await self._transport.async_send(address, current_command(ampere))
        except DeviceError as err:
            _LOGGER.error("Adjusting charging current failed: %s", err)
            return

        self._storage.update_context(
            current_ampere=ampere,
            target_ampere=ampere,
            last_adjustment=now,
            adjustment_count=context.adjustment_count + 1,
        )
        _LOGGER.info(
            "Charging current adjusted %sA -> %sA @ %sP",
            context.current_ampere,
            ampere,
            context.current_phases,
        )

    async def _async_stop(self, address: str) -> None:
        context = self._storage.get_context()
        if not context.is_active:
            return
        # The wallbox rejects currents below 6 A, so stopping is "ena 0" only.
        try:
            await self._transport.async_send(address, enable_command(False))
        except DeviceError as err:
            _LOGGER.error("Stopping charging failed: %s", err)
            return
        self._mark_stopped()
        _LOGGER.info("Charging stopped")

    def _mark_stopped(self) -> None:
        self._storage.update_context(
            is_active=False,
            current_ampere=0,
            target_ampere=0,
            below_threshold_since=None,
            last_adjustment=None,
        )
        self._battery_discharge_since = None

    async def async_stop_for_strategy_off(self, address: Optional[str]) -> None:
        """Send ``ena 0`` regardless of the stored context.

        Used when the digital input drops. Errors propagate to the caller.
        """
        async with self._lock:
            if not address:
                raise DeviceNotConfigured("No wallbox address configured")
            await self._transport.async_send(address, enable_command(False))
            self._mark_stopped()
            self._storage.update_context(start_delay_tracker_since=None)
            _LOGGER.info("Charging stopped for strategy off")

    # Strategy changes

    async def async_switch_strategy(
        self, strategy: ChargingStrategy | str, address: Optional[str]
    ) -> None:
        """Switch the active strategy.

        Interlock failures propagate and leave the previous strategy stored.
        """
        strategy = ChargingStrategy(strategy)
        async with self._lock:
            context = self._storage.get_context()
            old_strategy = context.strategy
            if old_strategy is strategy:
                _LOGGER.debug("Strategy %s already active", strategy.value)
                self._storage.set_active_strategy(strategy)
                return

            _LOGGER.info("Switching strategy %s -> %s", old_strategy.value, strategy.value)
            if context.is_active and address:
                await self._async_stop(address)

            if self._interlock.enabled:
                if old_strategy is ChargingStrategy.MAX_WITHOUT_BATTERY:
                    await self._async_set_discharge_lock(False)
                if strategy is ChargingStrategy.MAX_WITHOUT_BATTERY:
                    await self._async_set_discharge_lock(True)

            self._storage.update_context(
                strategy=strategy,
                start_delay_tracker_since=None,
                below_threshold_since=None,
            )
            self._storage.set_active_strategy(strategy)
            self._battery_discharge_since = None

            if strategy.is_surplus and self._last_sample is not None and address:
                await self._async_process(self._last_sample, address)
            elif strategy.is_max_power:
                _LOGGER.info("Max power strategy set, charging starts on the next cycle")

    async def async_handle_strategy_change(self, strategy: ChargingStrategy | str) -> None:
        """Bring the discharge lock in line with ``strategy``.

        Locked only for max_without_battery. Errors propagate.
        """
        strategy = ChargingStrategy(strategy)
        if not self._interlock.enabled:
            _LOGGER.info("Battery interlock disabled, skipping discharge lock update")
            return
        async with self._lock:
            await self._async_set_discharge_lock(strategy is ChargingStrategy.MAX_WITHOUT_BATTERY)

    async def _async_set_discharge_lock(self, locked: bool) -> None:
        try:
            if locked:
                ran = await self._interlock.async_lock_discharge()
            else:
                ran = await self._interlock.async_unlock_discharge()
        except InterlockError as err:
            _LOGGER.error(
                "%s battery discharge lock failed: %s", "Enabling" if locked else "Releasing", err
            )
            raise
        if ran:
            control_state = self._storage.get_control_state()
            control_state.battery_lock = locked
            self._storage.save_control_state(control_state)
            _LOGGER.info("Battery discharge lock %s", "enabled" if locked else "released")

    async def async_set_grid_charging(self, enabled: bool) -> bool:
        """Switch grid charging of the home battery; returns False if not configured."""
        async with self._lock:
            if enabled:
                ran = await self._interlock.async_enable_grid_charge()
            else:
                ran = await self._interlock.async_disable_grid_charge()
            if not ran:
                _LOGGER.warning("Grid charge command not configured")
                return False
            control_state = self._storage.get_control_state()
            control_state.grid_charging = enabled
            self._storage.save_control_state(control_state)
            _LOGGER.info("Grid charging %s", "enabled" if enabled else "disabled")
            return True

    # Status

    @property
    def battery_protection_active(self) -> bool:
        """True once the discharge has lasted long enough to derate."""
        if self._battery_discharge_since is None:
            return False
        duration = (dt_util.utcnow() - self._battery_discharge_since).total_seconds()
        return duration > BATTERY_DISCHARGE_DURATION_SECONDS

    def get_status(self) -> dict[str, Any]:
        context: ChargingContext = self._storage.get_context()
        try:
            config: Optional[dict[str, Any]] = self._storage.get_strategy_config().as_dict()
        except ConfigInvalid:
            config = None

        discharge_duration = 0.0
        if self._battery_discharge_since is not None:
            discharge_duration = (dt_util.utcnow() - self._battery_discharge_since).total_seconds()

        control_state = self._storage.get_control_state()
        return {
            **context.to_dict(),
            "config": config,
            "battery_discharging": self._battery_discharge_since is not None,
            "battery_discharge_duration_seconds": round(discharge_duration, 1),
            "battery_lock": control_state.battery_lock,
            "grid_charging": control_state.grid_charging,
        }
