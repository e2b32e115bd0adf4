"""Codec for the KEBA UDP protocol (port 7090).

The wallbox answers commands with one of three shapes:

* an acknowledgment sentinel (``TCH-OK :done`` or ``TCH-ERR``)
* a JSON object (reports and unsolicited broadcasts)
* legacy text, ``Header: key=value;key=value`` or bare ``key=value`` lines

Responses carry no correlation id, so every decoded answer is checked against
the command that is in flight before it is accepted.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

_LOGGER = logging.getLogger(__name__)

ACK_OK = "TCH-OK"
ACK_ERR = "TCH-ERR"

# Fields that only appear in the given report.
REPORT_SIGNATURE_FIELDS = {
    1: ("Product", "Serial", "Firmware"),
    2: ("State", "Plug", "Max curr"),
    3: ("U1", "I1", "P"),
}

SETTER_COMMANDS = ("ena", "curr")


@dataclass(frozen=True)
class Acknowledged:
    """TCH-OK / TCH-ERR answer to a setter command."""
    ok: bool
    raw: str = ""


@dataclass(frozen=True)
class Report:
    """A decoded JSON or key=value payload."""
    report_id: Optional[int]
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass(frozen=True)
class Unrecognized:
    raw: str


DecodedResponse = Union[Acknowledged, Report, Unrecognized]


def _convert_value(value: str) -> Any:
    text = value.strip()
    try:
        number = float(text)
    except ValueError:
        return text
    if number.is_integer() and "." not in text and "e" not in text.lower():
        return int(number)
    return number


def _coerce_report_id(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_legacy_text(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if ":" in line.split("=", 1)[0]:
            _header, content = line.split(":", 1)
            pairs = content.split(";")
        else:
            pairs = [line]
        for pair in pairs:
            pair = pair.strip()
            if "=" not in pair:
                continue
            key, value = pair.split("=", 1)
            key = key.strip()
            if key:
                result[key] = _convert_value(value)
    return result


def decode_datagram(text: str) -> DecodedResponse:
    """Decode one inbound datagram into a tagged response."""
    trimmed = text.strip()
    if not trimmed:
        return Unrecognized(raw=text)

    if ACK_ERR in trimmed:
        return Acknowledged(ok=False, raw=trimmed)
    if ACK_OK in trimmed:
        return Acknowledged(ok=True, raw=trimmed)

    if trimmed.startswith("{") and trimmed.endswith("}"):
        try:
            payload = json.loads(trimmed)
        except ValueError:
            _LOGGER.debug("Datagram looks like JSON but does not parse: %s", trimmed[:100])
        else:
            if isinstance(payload, dict):
                return Report(report_id=_coerce_report_id(payload.get("ID")), fields=payload)

    fields = _parse_legacy_text(trimmed)
    if fields:
        return Report(report_id=_coerce_report_id(fields.get("ID")), fields=fields)
    return Unrecognized(raw=trimmed)


def requested_report_id(command: str) -> Optional[int]:
    """Return N for a ``report N`` command, else None."""
    parts = command.strip().split()
    if len(parts) == 2 and parts[0] == "report":
        try:
            return int(parts[1])
        except ValueError:
            return None
    return None


def is_setter_command(command: str) -> bool:
    parts = command.strip().split()
    return bool(parts) and parts[0] in SETTER_COMMANDS


def response_matches(command: str, decoded: DecodedResponse) -> bool:
    """Check whether ``decoded`` is the answer to ``command``.

    A stray broadcast (for example ``{"Input": 1}``) arriving while a report is
    pending must not be taken as the report.
    """
    report_id = requested_report_id(command)
    if report_id is not None:
        if not isinstance(decoded, Report) or decoded.report_id != report_id:
            return False
        signature = REPORT_SIGNATURE_FIELDS.get(report_id)
        if signature is None:
            return True
        return any(key in decoded.fields for key in signature)

    if is_setter_command(command):
        return isinstance(decoded, Acknowledged)

    return not isinstance(decoded, Unrecognized)


def report_command(report_id: int) -> str:
    return f"report {report_id}"


def enable_command(enabled: bool) -> str:
    return f"ena {1 if enabled else 0}"


def current_command(ampere: float) -> str:
    """Build ``curr <milliampere>``; the wallbox expects integer mA."""
    return f"curr {int(round(ampere * 1000))}"


def _number(fields: Mapping[str, Any], key: str, default: float = 0) -> float:
    value = fields.get(key, default)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional_int(fields: Mapping[str, Any], key: str) -> Optional[int]:
    value = fields.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class StaticInfoReport:
    """Report 1."""
    product: Optional[str] = None
    serial: Optional[str] = None
    firmware: Optional[str] = None

    @classmethod
    def from_report(cls, report: Report) -> "StaticInfoReport":
        return cls(
            product=report.get("Product"),
            serial=None if report.get("Serial") is None else str(report.get("Serial")),
            firmware=report.get("Firmware"),
        )


@dataclass
class StatusReport:
    """Report 2: charging state, plug and current limits."""
    state: Optional[int] = None
    plug: Optional[int] = None
    enable_sys: Optional[int] = None
    max_current_ma: Optional[int] = None
    user_current_ma: Optional[int] = None
    input: Optional[int] = None

    @classmethod
    def from_report(cls, report: Report) -> "StatusReport":
        fields = report.fields
        return cls(
            state=_optional_int(fields, "State"),
            plug=_optional_int(fields, "Plug"),
            enable_sys=_optional_int(fields, "Enable sys"),
            max_current_ma=_optional_int(fields, "Max curr"),
            user_current_ma=_optional_int(fields, "Curr user"),
            input=_optional_int(fields, "Input"),
        )


@dataclass
class MeteringReport:
    """Report 3: per phase voltage (V), current (mA), power (mW), energy (Wh)."""
    voltages: tuple[float, float, float] = (0, 0, 0)
    currents_ma: tuple[float, float, float] = (0, 0, 0)
    power_mw: float = 0
    power_factor: Optional[float] = None
    session_energy_wh: float = 0
    total_energy_wh: float = 0

    @property
    def power_w(self) -> float:
        return self.power_mw / 1000

    @classmethod
    def from_report(cls, report: Report) -> "MeteringReport":
        fields = report.fields
        # Energy counters are reported in 0.1 Wh.
        return cls(
            voltages=(_number(fields, "U1"), _number(fields, "U2"), _number(fields, "U3")),
            currents_ma=(_number(fields, "I1"), _number(fields, "I2"), _number(fields, "I3")),
            power_mw=_number(fields, "P"),
            power_factor=fields.get("PF"),
            session_energy_wh=_number(fields, "E pres") / 10,
            total_energy_wh=_number(fields, "E total") / 10,
        )
