"""CLI entry point for running instrumentation tests on a device fleet."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from fleet_test_runner.config_loader import load_run_config
from fleet_test_runner.models.result import PerDeviceResult
from fleet_test_runner.orchestrator import DeviceRunner, FleetOrchestrator
from fleet_test_runner.worker import LOG_FORMAT, DeviceWorkerSupervisor, InProcessRunner

STATUS_SYMBOLS = {
    "pass": "✓",
    "fail": "✗",
    "error": "!",
}

OUTCOME_SYMBOLS = {
    "install-failed": "✗",
    "device-unavailable": "?",
    "worker-failed": "!",
}


def log_results_summary(
    log: logging.Logger, device_results: Sequence[PerDeviceResult]
) -> None:
    """Log a formatted summary of per-device and per-test results."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for device in device_results:
        if device.outcome != "tests-ran":
            symbol = OUTCOME_SYMBOLS.get(device.outcome, "?")
            log.info("%s %s: %s", symbol, device.serial, device.outcome)
            if device.install_message:
                log.info("  Message: %s", device.install_message)
            continue

        counts = device.counts()
        log.info(
            "%s: %d passed, %d failed, %d errors (%ds)",
            device.serial,
            counts["pass"],
            counts["fail"],
            counts["error"],
            device.duration or 0,
        )
        for test, result in device.test_results.items():
            symbol = STATUS_SYMBOLS.get(result.status, "?")
            log.info("  %s %s: %s (%ds)", symbol, test, result.status, result.duration)
            if result.exception is not None:
                log.info("    Message: %s", result.exception.message)
        for exception in device.exceptions:
            log.info("  ! %s", exception.message)


def format_output(device_results: Sequence[PerDeviceResult]) -> dict[str, Any]:
    """Format device results for JSON output."""
    devices: list[dict[str, Any]] = []
    for device in device_results:
        devices.append(
            {
                "serial": device.serial,
                "outcome": device.outcome,
                "message": device.install_message,
                "duration": device.duration,
                "exceptions": [e.message for e in device.exceptions],
                "tests": [
                    {
                        "test": str(test),
                        "status": result.status,
                        "duration": result.duration,
                        "screenshots": [str(path) for path in result.screenshots],
                    }
                    for test, result in device.test_results.items()
                ],
            }
        )

    statuses = [
        result.status
        for device in device_results
        for result in device.test_results.values()
    ]
    return {
        "devices": len(devices),
        "total": len(statuses),
        "passed": statuses.count("pass"),
        "failed": statuses.count("fail"),
        "errors": statuses.count("error"),
        "results": devices,
    }


async def run(config_path: Path, *, debug: bool = False, in_process: bool = False) -> int:
    """Run the configured tests on every device and return the exit code."""
    log = logging.getLogger("fleet_test_runner")

    log.info("Loading run config: %s", config_path)
    config = await load_run_config(config_path)
    requests = config.to_requests(debug=debug)

    runner: DeviceRunner
    if in_process or not config.isolate:
        log.info("Running devices in-process")
        runner = InProcessRunner()
    else:
        runner = DeviceWorkerSupervisor()

    device_results = await FleetOrchestrator(runner=runner).run(requests)

    log_results_summary(log, device_results)
    print(json.dumps(format_output(device_results), indent=2))

    return 1 if any(result.has_failures for result in device_results) else 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run instrumentation tests on a fleet of devices"
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the YAML run configuration",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at debug level, including worker output",
    )
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run every device in this process instead of a worker process",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    try:
        exit_code = asyncio.run(
            run(args.config, debug=args.debug, in_process=args.in_process)
        )
    except (FileNotFoundError, ValueError) as e:
        logging.getLogger("fleet_test_runner").error("%s", e)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
