"""React to unsolicited wallbox broadcasts (input X1, plug, state)."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from homeassistant.core import CALLBACK_TYPE, HomeAssistant, callback
from homeassistant.util import dt as dt_util

from .const import WALLBOX_STATE_NAMES
from .controller import ChargingStrategyController
from .exceptions import KebaSurplusError
from .helpers import build_strategy_config
from .models import ChargingStrategy, PlugTracking
from .storage import ChargingStorage
from .transport import WallboxTransport

_LOGGER = logging.getLogger(__name__)


class BroadcastListener:
    """Handle input X1 edges and track plug/state changes.

    An input edge is handled in two phases: the control action is attempted
    and its errors are logged, then the target strategy is always committed
    so the stored strategy follows the physical input.
    """

    def __init__(
        self,
        hass: HomeAssistant,
        transport: WallboxTransport,
        controller: ChargingStrategyController,
        storage: ChargingStorage,
        address_getter: Callable[[], Optional[str]],
        refresh_callback: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.hass = hass
        self._transport = transport
        self._controller = controller
        self._storage = storage
        self._address_getter = address_getter
        self._refresh_callback = refresh_callback
        self._lock = asyncio.Lock()
        self._unsub: Optional[CALLBACK_TYPE] = None
        self.last_input: Optional[int] = None
        self.last_plug: Optional[int] = None
        self.last_state: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._unsub is not None

    @callback
    def async_start(self) -> None:
        if self._unsub is not None:
            return
        self._unsub = self._transport.async_add_broadcast_listener(self.handle_broadcast)
        _LOGGER.info("Listening for wallbox broadcasts")

    @callback
    def async_stop(self) -> None:
        if self._unsub is None:
            return
        self._unsub()
        self._unsub = None
        self.last_input = None
        self.last_plug = None
        self.last_state = None

    @callback
    def handle_broadcast(self, fields: dict[str, Any], address: str) -> None:
        """Transport callback; processing runs as a task."""
        self.hass.async_create_task(self.async_handle_broadcast(fields, address))

    async def async_handle_broadcast(self, fields: dict[str, Any], address: str) -> None:
        async with self._lock:
            self._track_plug(fields, address)
            self._track_state(fields, address)
            # "E pres" broadcasts arrive every few seconds during a session and are not tracked.
            target = await self._async_handle_input(fields, address)

        if target is not None and self._refresh_callback is not None:
            await self._refresh_callback()

    def _track_plug(self, fields: dict[str, Any], address: str) -> None:
        plug = _as_int(fields.get("Plug"))
        if plug is None:
            return
        if self.last_plug is None:
            self._storage.save_plug_tracking(PlugTracking(last_plug_status=plug))
        elif plug != self.last_plug:
            _LOGGER.info("Plug status changed %s -> %s (from %s)", self.last_plug, plug, address)
            self._storage.save_plug_tracking(
                PlugTracking(last_plug_status=plug, last_plug_change=dt_util.utcnow().isoformat())
            )
        self.last_plug = plug

    def _track_state(self, fields: dict[str, Any], address: str) -> None:
        state = _as_int(fields.get("State"))
        if state is None:
            return
        if self.last_state is not None and state != self.last_state:
            _LOGGER.info(
                "Wallbox state changed %s -> %s (%s) (from %s)",
                self.last_state,
                state,
                WALLBOX_STATE_NAMES.get(state, "unknown"),
                address,
            )
        self.last_state = state

    async def _async_handle_input(
        self, fields: dict[str, Any], address: str
    ) -> Optional[ChargingStrategy]:
        input_status = _as_int(fields.get("Input"))
        if input_status is None or input_status == self.last_input:
            return None
        self.last_input = input_status
        _LOGGER.info("Input X1 changed to %s (from %s)", input_status, address)

        if input_status == 1:
            target = self._input_strategy()
        elif input_status == 0:
            target = ChargingStrategy.OFF
        else:
            _LOGGER.warning("Ignoring unexpected input value %s", input_status)
            return None

        try:
            await self._async_attempt(target)
        except KebaSurplusError as err:
            _LOGGER.error("Applying input strategy %s failed: %s", target.value, err)
        finally:
            self._commit(target)
        return target

    def _input_strategy(self) -> ChargingStrategy:
        settings = self._storage.get_settings()
        try:
            return build_strategy_config(settings, settings["active_strategy"]).input_x1_strategy
        except KebaSurplusError as err:
            _LOGGER.warning("Invalid input strategy configuration, using default: %s", err)
            return ChargingStrategy.MAX_WITHOUT_BATTERY

    async def _async_attempt(self, target: ChargingStrategy) -> None:
        address = self._address_getter()
        if target is ChargingStrategy.OFF:
            _LOGGER.info("Input released, stopping charging")
            try:
                await self._controller.async_stop_for_strategy_off(address)
            finally:
                await self._controller.async_handle_strategy_change(target)
            return

        _LOGGER.info("Input active, switching to %s", target.value)
        await self._controller.async_switch_strategy(target, address)

    def _commit(self, target: ChargingStrategy) -> None:
        context = self._storage.get_context()
        if context.strategy is not target:
            self._storage.update_context(strategy=target)
            _LOGGER.info("Context strategy set to %s", target.value)
        if self._storage.active_strategy is not target:
            self._storage.set_active_strategy(target)
            _LOGGER.info("Active strategy set to %s", target.value)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
