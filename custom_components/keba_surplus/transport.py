"""UDP transport to the KEBA wallbox."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from homeassistant.core import CALLBACK_TYPE, callback

from .const import (
    WALLBOX_COMMAND_COOLDOWN_SECONDS,
    WALLBOX_COMMAND_TIMEOUT_SECONDS,
    WALLBOX_UDP_PORT,
)
from .exceptions import (
    CommandRejected,
    DeviceNotConfigured,
    ProtocolMismatch,
    TransportError,
    TransportTimeout,
)
from .protocol import (
    Acknowledged,
    DecodedResponse,
    Report,
    decode_datagram,
    report_command,
    response_matches,
)

_LOGGER = logging.getLogger(__name__)

BroadcastCallback = Callable[[dict[str, Any], str], None]


@dataclass
class _PendingRequest:
    address: str
    command: str
    future: asyncio.Future


class WallboxTransport(asyncio.DatagramProtocol):
    """Owns the UDP socket and serializes commands to the wallbox.

    The protocol has no request id, so only one command is in flight at a
    time. Commands queue on a FIFO lock; a datagram that does not match the
    pending command is handed to broadcast listeners and the wait continues.
    """

    def __init__(
        self,
        port: int = WALLBOX_UDP_PORT,
        command_timeout: float = WALLBOX_COMMAND_TIMEOUT_SECONDS,
        cooldown: float = WALLBOX_COMMAND_COOLDOWN_SECONDS,
    ) -> None:
        self._port = port
        self._command_timeout = command_timeout
        self._cooldown = cooldown
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._lock = asyncio.Lock()
        self._pending: Optional[_PendingRequest] = None
        self._ready_at = 0.0
        self._listeners: list[BroadcastCallback] = []

    @property
    def is_running(self) -> bool:
        return self._transport is not None

    @property
    def has_pending_request(self) -> bool:
        return self._pending is not None

    async def async_start(self) -> None:
        """Bind the socket; the wallbox replies to port 7090."""
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.create_datagram_endpoint(
                lambda: self,
                local_addr=("0.0.0.0", self._port),
                allow_broadcast=True,
            )
        except OSError as err:
            raise TransportError(f"Cannot bind UDP port {self._port}: {err}") from err
        _LOGGER.info("Wallbox UDP transport listening on port %s", self._port)

    async def async_stop(self) -> None:
        if self._transport is None:
            return
        transport = self._transport
        self._transport = None
        transport.close()
        if self._pending is not None and not self._pending.future.done():
            self._pending.future.set_exception(TransportError("Transport stopped"))
        _LOGGER.info("Wallbox UDP transport stopped")

    # asyncio.DatagramProtocol

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            _LOGGER.warning("Wallbox UDP socket closed: %s", exc)
        self._transport = None

    def error_received(self, exc: Exception) -> None:
        _LOGGER.error("Wallbox UDP socket error: %s", exc)
        pending = self._pending
        if pending is not None and not pending.future.done():
            pending.future.set_exception(TransportError(str(exc)))

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        text = data.decode("utf-8", errors="replace")
        decoded = decode_datagram(text)
        pending = self._pending

        if pending is not None and not pending.future.done():
            if response_matches(pending.command, decoded):
                _LOGGER.debug("Response for '%s': %s", pending.command, text[:200])
                pending.future.set_result(decoded)
                return
            _LOGGER.debug(
                "Datagram does not answer '%s', treating as broadcast: %s",
                pending.command,
                text[:100],
            )

        if isinstance(decoded, Report):
            self._dispatch_broadcast(decoded.fields, addr[0])
        else:
            _LOGGER.debug("Ignoring unsolicited datagram from %s: %s", addr[0], text[:100])

    # Broadcast subscribers

    @callback
    def async_add_broadcast_listener(self, listener: BroadcastCallback) -> CALLBACK_TYPE:
        """Subscribe to unsolicited datagrams; returns an unsubscribe callable."""
        self._listeners.append(listener)

        @callback
        def remove_listener() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove_listener

    def _dispatch_broadcast(self, fields: dict[str, Any], address: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(fields, address)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Broadcast listener failed for %s", fields)

    # Commands

    async def async_send(self, address: Optional[str], command: str) -> DecodedResponse:
        """Send ``command`` and wait for the matching answer."""
        if not address:
            raise DeviceNotConfigured("No wallbox address configured")

        async with self._lock:
            await self._async_wait_for_cooldown()
            if self._transport is None:
                raise TransportError("Wallbox UDP transport is not running")

            loop = asyncio.get_running_loop()
            future: asyncio.Future = loop.create_future()
            self._pending = _PendingRequest(address=address, command=command, future=future)
            started = loop.time()
            try:
                _LOGGER.debug("Sending '%s' to %s", command, address)
                try:
                    self._transport.sendto(f"{command}\n".encode(), (address, self._port))
                except OSError as err:
                    _LOGGER.error("Sending '%s' to %s failed: %s", command, address, err)
                    raise TransportError(f"Sending '{command}' failed: {err}") from err

                try:
                    decoded = await asyncio.wait_for(future, self._command_timeout)
                except asyncio.TimeoutError as err:
                    _LOGGER.error(
                        "Timeout after %.0f ms waiting for '%s' from %s",
                        (loop.time() - started) * 1000,
                        command,
                        address,
                    )
                    raise TransportTimeout(f"No answer to '{command}' from {address}") from err
            finally:
                self._pending = None
                self._ready_at = loop.time() + self._cooldown

        if isinstance(decoded, Acknowledged) and not decoded.ok:
            raise CommandRejected(f"Wallbox rejected '{command}'")
        return decoded

    async def async_request_report(self, address: Optional[str], report_id: int) -> Report:
        decoded = await self.async_send(address, report_command(report_id))
        if not isinstance(decoded, Report):
            raise ProtocolMismatch(f"Expected report {report_id}, got {decoded!r}")
        return decoded

    async def _async_wait_for_cooldown(self) -> None:
        delay = self._ready_at - asyncio.get_running_loop().time()
        if delay > 0:
            await asyncio.sleep(delay)
