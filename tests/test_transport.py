"""Tests for the wallbox UDP transport."""
from __future__ import annotations

import asyncio

import pytest

from custom_components.keba_surplus.exceptions import (
    CommandRejected,
    DeviceNotConfigured,
    TransportError,
    TransportTimeout,
)
from custom_components.keba_surplus.protocol import Acknowledged, Report
from custom_components.keba_surplus.transport import WallboxTransport

WALLBOX = "192.168.1.20"


class FakeDatagramTransport:
    """Records sends and plays back scripted answers through the protocol."""

    def __init__(self, protocol: WallboxTransport, replies: dict | None = None):
        self.protocol = protocol
        self.replies = replies or {}
        self.events: list[str] = []
        self.closed = False

    def sendto(self, data, addr):
        command = data.decode().strip()
        self.events.append(f"send {command}")
        loop = asyncio.get_running_loop()
        for delay, payload in self.replies.get(command, []):
            loop.call_later(delay, self._deliver, command, payload, addr)

    def _deliver(self, command, payload, addr):
        self.events.append(f"reply {command}")
        self.protocol.datagram_received(payload.encode(), addr)

    def close(self):
        self.closed = True


def _connected_transport(replies=None, command_timeout=1.0):
    protocol = WallboxTransport(command_timeout=command_timeout, cooldown=0)
    fake = FakeDatagramTransport(protocol, replies)
    protocol.connection_made(fake)
    return protocol, fake


@pytest.mark.asyncio
async def test_commands_are_serialized_in_fifo_order():
    protocol, fake = _connected_transport(
        {
            "report 2": [(0.02, '{"ID": "2", "State": 3}')],
            "report 3": [(0.0, '{"ID": "3", "P": 4140000}')],
        }
    )

    first, second = await asyncio.gather(
        protocol.async_request_report(WALLBOX, 2),
        protocol.async_request_report(WALLBOX, 3),
    )

    assert first.report_id == 2
    assert second.report_id == 3
    # The second command is only sent once the first one is answered.
    assert fake.events == ["send report 2", "reply report 2", "send report 3", "reply report 3"]
    assert not protocol.has_pending_request


@pytest.mark.asyncio
async def test_broadcast_during_wait_goes_to_listeners():
    protocol, _ = _connected_transport(
        {
            "report 2": [
                (0.0, '{"Input": 1}'),
                (0.01, '{"ID": "2", "State": 2, "Plug": 7}'),
            ]
        }
    )
    received = []
    protocol.async_add_broadcast_listener(lambda fields, address: received.append((fields, address)))

    report = await protocol.async_request_report(WALLBOX, 2)

    assert report.report_id == 2
    assert report.get("Plug") == 7
    assert received == [({"Input": 1}, WALLBOX)]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others():
    protocol, _ = _connected_transport()
    received = []

    def broken(fields, address):
        raise RuntimeError("boom")

    protocol.async_add_broadcast_listener(broken)
    remove = protocol.async_add_broadcast_listener(lambda fields, address: received.append(fields))

    protocol.datagram_received(b'{"Plug": 7}', (WALLBOX, 7090))
    remove()
    protocol.datagram_received(b'{"Plug": 5}', (WALLBOX, 7090))

    assert received == [{"Plug": 7}]


@pytest.mark.asyncio
async def test_timeout_clears_pending_request():
    protocol, fake = _connected_transport(command_timeout=0.05)

    with pytest.raises(TransportTimeout):
        await protocol.async_send(WALLBOX, "report 2")

    assert fake.events == ["send report 2"]
    assert not protocol.has_pending_request


@pytest.mark.asyncio
async def test_late_answer_after_timeout_is_not_matched_to_next_command():
    protocol, _ = _connected_transport(
        {
            "report 2": [(0.2, '{"ID": "2", "State": 3}')],
            "ena 1": [(0.0, "TCH-OK :done")],
        },
        command_timeout=0.05,
    )

    with pytest.raises(TransportTimeout):
        await protocol.async_send(WALLBOX, "report 2")

    answer = await protocol.async_send(WALLBOX, "ena 1")
    assert answer == Acknowledged(ok=True, raw="TCH-OK :done")
    await asyncio.sleep(0.2)


@pytest.mark.asyncio
async def test_nack_raises_command_rejected():
    protocol, _ = _connected_transport({"curr 40000": [(0.0, "TCH-ERR :out of range")]})

    with pytest.raises(CommandRejected):
        await protocol.async_send(WALLBOX, "curr 40000")

    assert not protocol.has_pending_request


@pytest.mark.asyncio
async def test_socket_error_fails_pending_command():
    protocol, _ = _connected_transport()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, protocol.error_received, OSError("host unreachable"))

    with pytest.raises(TransportError):
        await protocol.async_send(WALLBOX, "report 3")


@pytest.mark.asyncio
async def test_send_requires_address_and_running_socket():
    protocol = WallboxTransport(cooldown=0)

    with pytest.raises(DeviceNotConfigured):
        await protocol.async_send(None, "report 2")
    with pytest.raises(TransportError):
        await protocol.async_send(WALLBOX, "report 2")


@pytest.mark.asyncio
async def test_stop_closes_socket():
    protocol, fake = _connected_transport()

    await protocol.async_stop()

    assert fake.closed
    assert not protocol.is_running


@pytest.mark.asyncio
async def test_request_report_returns_report():
    protocol, _ = _connected_transport({"report 1": [(0.0, '{"ID": "1", "Serial": "16314582"}')]})

    report = await protocol.async_request_report(WALLBOX, 1)

    assert isinstance(report, Report)
    assert report.get("Serial") == "16314582"
