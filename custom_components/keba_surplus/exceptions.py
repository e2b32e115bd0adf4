"""Exceptions raised by the KEBA Surplus Charging integration."""
from __future__ import annotations

from homeassistant.exceptions import HomeAssistantError


class KebaSurplusError(HomeAssistantError):
    """Base class for integration errors."""


class DeviceError(KebaSurplusError):
    """Communication with the wallbox failed."""


class TransportError(DeviceError):
    """A datagram could not be sent or the socket is not running."""


class TransportTimeout(TransportError):
    """The wallbox did not answer before the command deadline."""


class ProtocolMismatch(DeviceError):
    """A response does not have the shape the request expects."""


class CommandRejected(DeviceError):
    """The wallbox answered a setter command with TCH-ERR."""


class DeviceNotConfigured(DeviceError):
    """No wallbox address is configured."""


class InterlockError(KebaSurplusError):
    """Base class for battery interlock failures."""


class InterlockNotConfigured(InterlockError):
    """The battery interlock was used while disabled."""


class InterlockCommandFailed(InterlockError):
    """An interlock command line exited non-zero or timed out."""


class ConfigInvalid(KebaSurplusError):
    """Stored charging strategy configuration failed validation."""
