"""Tests for the battery interlock command runner."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from custom_components.keba_surplus import interlock as interlock_module
from custom_components.keba_surplus.const import (
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_GRID_CHARGE_DISABLE_COMMAND,
    CONF_GRID_CHARGE_ENABLE_COMMAND,
    CONF_INTERLOCK_ENABLED,
    CONF_INTERLOCK_MIN_INTERVAL,
    CONF_INTERLOCK_PREFIX,
)
from custom_components.keba_surplus.exceptions import (
    InterlockCommandFailed,
    InterlockNotConfigured,
)
from custom_components.keba_surplus.interlock import BatteryInterlockClient, redact_secrets

CONFIG = {
    CONF_INTERLOCK_ENABLED: True,
    CONF_INTERLOCK_PREFIX: "/usr/local/bin/e3dcset -p secret123",
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND: "-d 1",
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND: "-a",
    CONF_INTERLOCK_MIN_INTERVAL: 3,
}


def _process(returncode=0, stdout=b"ok", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("e3dcset -p secret123 -d 1", "e3dcset -p *** -d 1"),
        ("tool --password=hunter2 -a", "tool --password=*** -a"),
        ("tool --password hunter2", "tool --password ***"),
        ("curl token=abc123 key=xyz", "curl token=*** key=***"),
        ("plain -d 1", "plain -d 1"),
        (None, ""),
    ],
)
def test_redact_secrets(text, expected):
    assert redact_secrets(text) == expected


@pytest.mark.asyncio
async def test_disabled_interlock_raises():
    client = BatteryInterlockClient({**CONFIG, CONF_INTERLOCK_ENABLED: False})

    with pytest.raises(InterlockNotConfigured):
        await client.async_lock_discharge()


@pytest.mark.asyncio
async def test_unconfigured_command_is_skipped(mocker):
    create = mocker.patch.object(interlock_module.asyncio, "create_subprocess_shell", AsyncMock())
    client = BatteryInterlockClient(CONFIG)

    assert await client.async_enable_grid_charge() is False
    create.assert_not_awaited()


@pytest.mark.asyncio
async def test_command_runs_with_prefix_and_logs_redacted(mocker):
    create = mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(return_value=_process()),
    )
    client = BatteryInterlockClient(CONFIG)

    assert await client.async_lock_discharge() is True

    assert create.await_args.args[0] == "/usr/local/bin/e3dcset -p secret123 -d 1"
    assert client.last_command == "/usr/local/bin/e3dcset -p *** -d 1"


@pytest.mark.asyncio
async def test_non_zero_exit_raises(mocker):
    mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(return_value=_process(returncode=2, stderr=b"connection refused")),
    )
    client = BatteryInterlockClient(CONFIG)

    with pytest.raises(InterlockCommandFailed, match="connection refused"):
        await client.async_unlock_discharge()


@pytest.mark.asyncio
async def test_start_failure_raises(mocker):
    mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(side_effect=FileNotFoundError("e3dcset")),
    )
    client = BatteryInterlockClient(CONFIG)

    with pytest.raises(InterlockCommandFailed):
        await client.async_lock_discharge()


@pytest.mark.asyncio
async def test_timeout_kills_process(mocker):
    process = _process()

    async def never_finishes():
        await asyncio.sleep(1)
        return b"", b""

    process.communicate = never_finishes
    mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(return_value=process),
    )
    client = BatteryInterlockClient(CONFIG, command_timeout=0.01)

    with pytest.raises(InterlockCommandFailed, match="timed out"):
        await client.async_lock_discharge()

    process.kill.assert_called_once()
    process.wait.assert_awaited_once()


@pytest.mark.asyncio
async def test_commands_keep_minimum_spacing(mocker):
    mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(return_value=_process()),
    )
    client = BatteryInterlockClient(CONFIG)
    sleep = mocker.patch.object(interlock_module.asyncio, "sleep", AsyncMock())

    await client.async_lock_discharge()
    sleep.assert_not_awaited()

    await client.async_unlock_discharge()
    sleep.assert_awaited_once()
    assert 0 < sleep.await_args.args[0] <= 3


@pytest.mark.asyncio
async def test_grid_charge_commands_use_their_own_lines(mocker):
    create = mocker.patch.object(
        interlock_module.asyncio,
        "create_subprocess_shell",
        AsyncMock(side_effect=lambda *args, **kwargs: _process()),
    )
    mocker.patch.object(interlock_module.asyncio, "sleep", AsyncMock())
    client = BatteryInterlockClient(
        {**CONFIG, CONF_GRID_CHARGE_ENABLE_COMMAND: "-g 1", CONF_GRID_CHARGE_DISABLE_COMMAND: "-g 0"}
    )

    assert await client.async_enable_grid_charge() is True
    assert await client.async_disable_grid_charge() is True

    assert [call.args[0] for call in create.await_args_list] == [
        "/usr/local/bin/e3dcset -p secret123 -g 1",
        "/usr/local/bin/e3dcset -p secret123 -g 0",
    ]
    assert client.last_command == "/usr/local/bin/e3dcset -p *** -g 0"
