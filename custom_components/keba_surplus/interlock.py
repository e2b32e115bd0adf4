"""Battery interlock driven through an external command line tool (e.g. e3dcset)."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Mapping, Optional

from .const import (
    CONF_DISCHARGE_LOCK_DISABLE_COMMAND,
    CONF_DISCHARGE_LOCK_ENABLE_COMMAND,
    CONF_GRID_CHARGE_DISABLE_COMMAND,
    CONF_GRID_CHARGE_ENABLE_COMMAND,
    CONF_INTERLOCK_ENABLED,
    CONF_INTERLOCK_MIN_INTERVAL,
    CONF_INTERLOCK_PREFIX,
    DEFAULT_INTERLOCK_MIN_INTERVAL,
    INTERLOCK_COMMAND_TIMEOUT_SECONDS,
)
from .exceptions import InterlockCommandFailed, InterlockNotConfigured

_LOGGER = logging.getLogger(__name__)

_SECRET_PATTERNS = (
    re.compile(r"(-p\s+)(\S+)"),
    re.compile(r"(--password[\s=]+)(\S+)", re.IGNORECASE),
    re.compile(r"\b((?:password|pass|token|key)=)(\S+)", re.IGNORECASE),
)
REDACTED = "***"


def redact_secrets(text: Optional[str]) -> str:
    """Mask credential-like arguments before text reaches the log."""
    if not text:
        return ""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: f"{match.group(1)}{REDACTED}", text)
    return text


class BatteryInterlockClient:
    """Run lock/unlock and grid-charge commands with a minimum spacing."""

    def __init__(
        self,
        config: Mapping[str, Any],
        command_timeout: float = INTERLOCK_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._enabled = bool(config.get(CONF_INTERLOCK_ENABLED, False))
        self._prefix = (config.get(CONF_INTERLOCK_PREFIX) or "").strip()
        self._commands = {
            "discharge_lock_enable": config.get(CONF_DISCHARGE_LOCK_ENABLE_COMMAND) or "",
            "discharge_lock_disable": config.get(CONF_DISCHARGE_LOCK_DISABLE_COMMAND) or "",
            "grid_charge_enable": config.get(CONF_GRID_CHARGE_ENABLE_COMMAND) or "",
            "grid_charge_disable": config.get(CONF_GRID_CHARGE_DISABLE_COMMAND) or "",
        }
        self._min_interval = float(
            config.get(CONF_INTERLOCK_MIN_INTERVAL, DEFAULT_INTERLOCK_MIN_INTERVAL)
        )
        self._command_timeout = command_timeout
        self._lock = asyncio.Lock()
        self._last_command_at: Optional[float] = None
        self.last_command: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def async_lock_discharge(self) -> bool:
        return await self._async_run("discharge_lock_enable")

    async def async_unlock_discharge(self) -> bool:
        return await self._async_run("discharge_lock_disable")

    async def async_enable_grid_charge(self) -> bool:
        return await self._async_run("grid_charge_enable")

    async def async_disable_grid_charge(self) -> bool:
        return await self._async_run("grid_charge_disable")

    def _build_command_line(self, command: str) -> str:
        return f"{self._prefix} {command}".strip() if self._prefix else command

    async def _async_run(self, name: str) -> bool:
        """Execute one configured command.

        Returns False when the command is not configured. Raises
        InterlockCommandFailed on a non-zero exit or timeout.
        """
        if not self._enabled:
            raise InterlockNotConfigured("Battery interlock is disabled")

        command = self._commands[name].strip()
        if not command:
            _LOGGER.debug("Interlock command '%s' not configured, skipping", name)
            return False

        command_line = self._build_command_line(command)
        async with self._lock:
            await self._async_wait_for_spacing()
            try:
                await self._async_execute(name, command_line)
            finally:
                self._last_command_at = asyncio.get_running_loop().time()
                self.last_command = redact_secrets(command_line)
        return True

    async def _async_wait_for_spacing(self) -> None:
        if self._last_command_at is None:
            return
        elapsed = asyncio.get_running_loop().time() - self._last_command_at
        if elapsed < self._min_interval:
            wait = self._min_interval - elapsed
            _LOGGER.debug("Waiting %.1fs before next interlock command", wait)
            await asyncio.sleep(wait)

    async def _async_execute(self, name: str, command_line: str) -> None:
        safe_command = redact_secrets(command_line)
        _LOGGER.info("Running interlock command %s: %s", name, safe_command)
        try:
            process = await asyncio.create_subprocess_shell(
                command_line,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            _LOGGER.error("Interlock command %s could not be started: %s", name, err)
            raise InterlockCommandFailed(f"{name} could not be started: {err}") from err

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), self._command_timeout
            )
        except asyncio.TimeoutError as err:
            process.kill()
            await process.wait()
            _LOGGER.error(
                "Interlock command %s timed out after %.0fs", name, self._command_timeout
            )
            raise InterlockCommandFailed(f"{name} timed out") from err

        output = redact_secrets(stdout.decode(errors="replace").strip())
        errors = redact_secrets(stderr.decode(errors="replace").strip())
        if process.returncode != 0:
            _LOGGER.error(
                "Interlock command %s exited with %s: %s", name, process.returncode, errors or output
            )
            raise InterlockCommandFailed(
                f"{name} exited with code {process.returncode}: {errors or output}"
            )
        if output:
            _LOGGER.debug("Interlock command %s output: %s", name, output)
