"""ADB command-line transport implementation."""

import asyncio
import contextlib
import logging
import re
import shlex
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fleet_test_runner.errors import TransportError, TransportTimeout
from fleet_test_runner.events import EventSink, LogSink
from fleet_test_runner.transports.adb.config import AdbTransportConfig
from fleet_test_runner.transports.adb.instrumentation import (
    InstrumentationResultParser,
)
from fleet_test_runner.transports.adb.logcat import pump_logcat
from fleet_test_runner.transports.base import DeviceTransport, InstrumentationOptions

log = logging.getLogger(__name__)

INSTRUMENTATION_LINE_LIMIT = 16 * 1024 * 1024

_INSTALL_FAILURE_PATTERN = re.compile(r"Failure \[(?P<reason>[^\]]+)\]")


@dataclass(frozen=True, kw_only=True)
class CommandResult:
    """Captured output of a finished adb command."""

    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, kw_only=True)
class AdbTransport(DeviceTransport):
    """Talks to a single device through the ``adb`` executable."""

    config: AdbTransportConfig
    serial: str

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: AdbTransportConfig, serial: str
    ) -> AsyncGenerator["AdbTransport", None]:
        """Open a transport for ``serial``, failing if the device is not online."""
        transport = cls(config=config, serial=serial)
        result = await transport.run_adb("get-state")
        state = result.stdout.strip()
        if result.returncode != 0 or state != "device":
            detail = result.stderr.strip() or state
            raise TransportError(f"Device {serial} is not available: {detail}")
        yield transport

    async def run_adb(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run ``adb -s <serial> <args>`` and capture its output."""
        command = [self.config.adb_path, "-s", self.serial, *args]
        log.debug("[%s] Executing: %s", self.serial, shlex.join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Cannot execute {self.config.adb_path}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.config.command_timeout if timeout is None else timeout,
            )
        except TimeoutError as e:
            await _kill(process)
            raise TransportTimeout(
                f"adb {' '.join(args)} timed out on {self.serial}"
            ) from e

        return CommandResult(
            returncode=process.returncode or 0,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def get_property(self, name: str) -> str | None:
        value = (await self.execute_shell_command(f"getprop {name}")).strip()
        return value or None

    async def install_package(self, path: Path) -> str | None:
        result = await self.run_adb("install", "-r", str(path))
        output = result.stdout + result.stderr
        if result.returncode == 0 and "Success" in output:
            return None
        if match := _INSTALL_FAILURE_PATTERN.search(output):
            return match["reason"]
        return output.strip() or f"adb install exited with {result.returncode}"

    async def execute_shell_command(self, command: str) -> str:
        result = await self.run_adb("shell", command)
        if result.returncode != 0:
            raise TransportError(
                f"Shell command {command!r} failed on {self.serial}: "
                f"{(result.stderr or result.stdout).strip()}"
            )
        return result.stdout

    async def pull(self, remote_dir: str, local_dir: Path) -> None:
        local_dir.mkdir(parents=True, exist_ok=True)
        result = await self.run_adb("pull", remote_dir, str(local_dir))
        if result.returncode != 0:
            raise TransportError(
                f"Failed to pull {remote_dir} from {self.serial}: "
                f"{result.stderr.strip()}"
            )

    async def start_instrumentation(
        self,
        options: InstrumentationOptions,
        event_sink: EventSink,
        log_sink: LogSink,
    ) -> None:
        if self.config.clear_logcat:
            await self.run_adb("logcat", "-c")

        logcat = await asyncio.create_subprocess_exec(
            self.config.adb_path,
            "-s",
            self.serial,
            "logcat",
            "-v",
            "threadtime",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        if logcat.stdout is None:
            await _kill(logcat)
            raise TransportError(f"Cannot read logcat from {self.serial}")
        log_reader = asyncio.create_task(pump_logcat(logcat.stdout, log_sink))

        try:
            await self._run_instrumentation(options, event_sink)
        finally:
            await _kill(logcat)
            log_reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await log_reader

    async def _run_instrumentation(
        self, options: InstrumentationOptions, event_sink: EventSink
    ) -> None:
        command = [
            self.config.adb_path,
            "-s",
            self.serial,
            "shell",
            *instrument_command(options),
        ]
        log.debug("[%s] Executing: %s", self.serial, shlex.join(command))
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=INSTRUMENTATION_LINE_LIMIT,
        )
        if process.stdout is None:
            await _kill(process)
            raise TransportError(
                f"Cannot read instrumentation output from {self.serial}"
            )

        parser = InstrumentationResultParser(options.test_package, event_sink)
        try:
            while True:
                try:
                    line = await asyncio.wait_for(
                        process.stdout.readline(), timeout=options.timeout
                    )
                except TimeoutError as e:
                    raise TransportTimeout(
                        f"Instrumentation on {self.serial} produced no output "
                        f"for {options.timeout} seconds"
                    ) from e
                if not line:
                    break
                parser.feed(line.decode(errors="replace"))
            await process.wait()
        finally:
            await _kill(process)
            parser.finish()


def instrument_command(options: InstrumentationOptions) -> Sequence[str]:
    """Build the ``am instrument`` invocation for ``options``."""
    command = ["am", "instrument", "-r", "-w"]
    for key, value in options.runner_arguments():
        command.extend(["-e", key, value])
    command.append(f"{options.test_package}/{options.runner_class}")
    return command


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
