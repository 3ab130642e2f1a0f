"""Orchestrator for running the same tests on a fleet of devices."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import PerDeviceResult
from fleet_test_runner.worker import worker_failure

log = logging.getLogger(__name__)


class DeviceRunner(Protocol):
    """Runs one execution request and returns the device's result."""

    async def run(self, request: ExecutionRequest) -> PerDeviceResult: ...


@dataclass(frozen=True, kw_only=True)
class FleetOrchestrator:
    """Runs execution requests on every device concurrently.

    One device's failure never affects another: every request produces
    exactly one result, in request order.
    """

    runner: DeviceRunner

    async def run(self, requests: Sequence[ExecutionRequest]) -> Sequence[PerDeviceResult]:
        """Run all requests concurrently.

        Args:
            requests: One execution request per device

        Returns:
            One result per request, in the same order

        """
        if not requests:
            log.info("No devices to run on")
            return []

        log.info("Running tests on %d device(s)...", len(requests))
        results = await asyncio.gather(
            *(self.runner.run(request) for request in requests),
            return_exceptions=True,
        )
        log.info("Test execution completed")

        return [
            self._process_result(request, result)
            for request, result in zip(requests, results, strict=True)
        ]

    def _process_result(
        self,
        request: ExecutionRequest,
        result: PerDeviceResult | BaseException,
    ) -> PerDeviceResult:
        if isinstance(result, PerDeviceResult):
            for test, test_result in result.test_results.items():
                log.info(
                    "Test completed: device=%s test=%s status=%s duration=%ds",
                    result.serial,
                    test,
                    test_result.status,
                    test_result.duration,
                )
            return result

        if not isinstance(result, Exception):
            raise result

        log.error(
            "Device run failed: device=%s error=%s",
            request.serial,
            result,
            exc_info=result,
        )
        return worker_failure(request.serial, f"Device run failed: {result}")
