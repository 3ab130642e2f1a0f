"""Running a device in its own worker process.

The supervisor writes the execution request to ``execution.json`` in the
device's work directory, starts ``python -m fleet_test_runner.worker`` with
that file as its only argument, and reads ``result.json`` from the same
directory once the worker has exited. Whatever happens to the worker, the
supervisor returns a result for the device.
"""

import asyncio
import codecs
import contextlib
import logging
import sys
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from fleet_test_runner.coordinator import DeviceExecutionCoordinator, TransportFactory
from fleet_test_runner.errors import WorkerProcessFailure
from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import PerDeviceResult, PerDeviceResultBuilder
from fleet_test_runner.transports.loading import load_transport_manifest

log = logging.getLogger(__name__)

FILE_EXECUTION = "execution.json"
FILE_RESULT = "result.json"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
RELAY_TAIL_LINES = 20
RELAY_CHUNK_SIZE = 64 * 1024


def transport_factory_for(request: ExecutionRequest) -> TransportFactory:
    """Build the transport factory named by the request."""
    manifest = load_transport_manifest(request.options.transport)
    config = manifest.config_cls(**request.options.transport_config)
    return partial(manifest.transport_factory, config)


def worker_failure(serial: str, message: str) -> PerDeviceResult:
    """Result for a device whose worker did not produce one."""
    return PerDeviceResultBuilder(serial).mark_worker_failed(
        WorkerProcessFailure(message)
    ).build()


@dataclass(frozen=True, kw_only=True)
class InProcessRunner:
    """Runs the coordinator in the current process."""

    async def run(self, request: ExecutionRequest) -> PerDeviceResult:
        try:
            factory = transport_factory_for(request)
        except Exception as e:
            log.error("[%s] Cannot load transport: %s", request.serial, e)
            return worker_failure(request.serial, f"Cannot load transport: {e}")
        return await DeviceExecutionCoordinator(transport_factory=factory).run(request)


@dataclass(frozen=True, kw_only=True)
class DeviceWorkerSupervisor:
    """Runs the coordinator for one device in a separate worker process."""

    command: Sequence[str] = field(
        default_factory=lambda: (sys.executable, "-m", "fleet_test_runner.worker")
    )

    async def run(self, request: ExecutionRequest) -> PerDeviceResult:
        serial = request.serial
        work_dir = request.work_dir
        request_file = work_dir / FILE_EXECUTION
        result_file = work_dir / FILE_RESULT

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            result_file.unlink(missing_ok=True)
            request_file.write_text(request.model_dump_json(indent=2))
        except OSError as e:
            log.error("[%s] Cannot write execution request: %s", serial, e)
            return worker_failure(serial, f"Cannot write execution request: {e}")

        command = [*self.command, str(request_file)]
        log.debug("[%s] Starting worker: %s", serial, command)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("[%s] Cannot start worker: %s", serial, e)
            return worker_failure(serial, f"Cannot start worker: {e}")

        if process.stdout is None or process.stderr is None:
            await _kill(process)
            log.error("[%s] Worker output is not available", serial)
            return worker_failure(serial, "Worker output is not available")

        _, stderr_tail = await asyncio.gather(
            _relay(process.stdout, serial, "STDOUT"),
            _relay(process.stderr, serial, "STDERR"),
        )
        exit_code = await process.wait()
        log.debug("[%s] Worker finished with exit code %d", serial, exit_code)

        if exit_code != 0:
            log.error("[%s] Worker exited with code %d", serial, exit_code)
            message = f"Worker exited with code {exit_code}"
            if stderr_tail:
                message += ":\n" + "\n".join(stderr_tail)
            return worker_failure(serial, message)
        return read_result(result_file, serial)


def read_result(result_file: Path, serial: str) -> PerDeviceResult:
    """Read a worker's result file, synthesizing a failure if it is unusable."""
    try:
        result = PerDeviceResult.model_validate_json(
            result_file.read_text(encoding="utf-8")
        )
    except FileNotFoundError:
        log.error("[%s] Worker left no result file", serial)
        return worker_failure(serial, "Worker left no result file")
    except (OSError, ValueError) as e:
        log.error("[%s] Worker result is unreadable: %s", serial, e)
        return worker_failure(serial, f"Worker result is unreadable: {e}")

    if result.serial != serial:
        log.error("[%s] Worker result belongs to %s", serial, result.serial)
        return worker_failure(serial, f"Worker result belongs to {result.serial}")
    return result


async def _relay(stream: asyncio.StreamReader, serial: str, tag: str) -> Sequence[str]:
    """Log every line of a worker stream and return the last few.

    The stream is read in chunks, so lines of any length are relayed.
    """
    tail: deque[str] = deque(maxlen=RELAY_TAIL_LINES)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while chunk := await stream.read(RELAY_CHUNK_SIZE):
        lines = (pending + decoder.decode(chunk)).split("\n")
        pending = lines.pop()
        for line in lines:
            _relay_line(serial, tag, line, tail)
    if pending := pending + decoder.decode(b"", final=True):
        _relay_line(serial, tag, pending, tail)
    return list(tail)


def _relay_line(serial: str, tag: str, line: str, tail: deque[str]) -> None:
    line = line.rstrip()
    log.debug("[%s] %s %s", serial, tag, line)
    tail.append(line)


async def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


def main(argv: Sequence[str] | None = None) -> int:
    """Worker entry point: run the request file given as the only argument."""
    args = list(sys.argv[1:] if argv is None else argv)

    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    if len(args) != 1:
        log.error("Must be started with an execution request file")
        return 1

    request_file = Path(args[0])
    try:
        request = ExecutionRequest.model_validate_json(request_file.read_text())
    except (OSError, ValueError) as e:
        log.error("Unable to read execution request %s: %s", request_file, e)
        return 1

    if request.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    result = asyncio.run(InProcessRunner().run(request))

    try:
        (request_file.parent / FILE_RESULT).write_text(result.model_dump_json(indent=2))
    except OSError as e:
        log.error("Unable to write result for %s: %s", request.serial, e)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
