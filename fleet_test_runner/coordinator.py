"""Execution of a full instrumentation run on a single device."""

import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from fleet_test_runner.artifacts import ArtifactCollector
from fleet_test_runner.errors import (
    ArtifactPullFailure,
    DeviceRunError,
    InstallFailure,
    InstrumentationFailure,
    InvalidTransition,
    LogCorrelationFailure,
    PermissionGrantFailure,
    TransportError,
)
from fleet_test_runner.events import DiscardingLogSink, LogSink
from fleet_test_runner.listener import TestLifecycleListener
from fleet_test_runner.log_capture import PerTestLogCapture
from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import (
    Clock,
    DeviceDetails,
    PerDeviceResult,
    PerDeviceResultBuilder,
)
from fleet_test_runner.transports.base import DeviceTransport

log = logging.getLogger(__name__)

type TransportFactory = Callable[[str], AbstractAsyncContextManager[DeviceTransport]]


@dataclass(frozen=True, kw_only=True)
class DeviceExecutionCoordinator:
    """Runs the install, instrument and collect protocol on one device.

    ``run`` always returns a result. Install and permission failures end the
    run early; instrumentation, log and artifact failures are recorded on the
    result and the remaining phases still run. The coordinator does not know
    whether it runs inside a worker process or in the caller's process.
    """

    transport_factory: TransportFactory
    clock: Clock = time.monotonic

    async def run(self, request: ExecutionRequest) -> PerDeviceResult:
        serial = request.serial
        result = PerDeviceResultBuilder(serial, self.clock)
        resolved = False

        try:
            async with self.transport_factory(serial) as transport:
                resolved = True
                log.debug("[%s] Got transport", serial)
                await self._run_on_device(transport, request, result)
        except Exception as e:
            if resolved:
                log.error("[%s] Unexpected error: %s", serial, e, exc_info=e)
                result.add_exception(e)
            else:
                log.error("[%s] Device is unavailable: %s", serial, e)
                result.mark_device_unavailable(e)

        return result.build()

    async def _run_on_device(
        self,
        transport: DeviceTransport,
        request: ExecutionRequest,
        result: PerDeviceResultBuilder,
    ) -> None:
        details = await self._device_details(transport, request.serial)
        result.set_device_details(details)

        if not await self._install(transport, request, result):
            return
        if not await self._grant_permissions(transport, request, details, result):
            return

        request.work_dir.mkdir(parents=True, exist_ok=True)

        log_capture = (
            PerTestLogCapture(request.options.max_log_entries_per_test)
            if request.options.capture_logs
            else None
        )
        await self._instrument(transport, request, result, log_capture)

        if log_capture is not None:
            self._attach_logs(log_capture, result)
        else:
            log.debug("[%s] Log capture is disabled", request.serial)

        await self._collect_artifacts(transport, request, result)

    async def _device_details(
        self, transport: DeviceTransport, serial: str
    ) -> DeviceDetails:
        try:
            details = await transport.get_device_details()
        except Exception as e:
            log.warning("[%s] Unable to read device details: %s", serial, e)
            return DeviceDetails.unknown()
        log.debug("[%s] Device details: %s", serial, details)
        return details

    async def _install(
        self,
        transport: DeviceTransport,
        request: ExecutionRequest,
        result: PerDeviceResultBuilder,
    ) -> bool:
        apks = (
            (request.options.app_apk, "application APK"),
            (request.options.test_apk, "instrumentation APK"),
        )
        for path, label in apks:
            try:
                error = await transport.install_package(path)
            except TransportError as e:
                error = str(e)
            if error is not None:
                message = f"Unable to install {label}: {error}"
                log.info("[%s] %s", request.serial, message)
                result.mark_install_failed(message, InstallFailure(message))
                return False
            log.debug("[%s] Installed %s", request.serial, path)
        return True

    async def _grant_permissions(
        self,
        transport: DeviceTransport,
        request: ExecutionRequest,
        details: DeviceDetails,
        result: PerDeviceResultBuilder,
    ) -> bool:
        options = request.options
        if details.api_level is not None and details.api_level < options.permission_api_level:
            log.debug(
                "[%s] API level %d needs no runtime permission grants",
                request.serial,
                details.api_level,
            )
            return True

        for permission in options.permissions:
            try:
                output = await transport.execute_shell_command(
                    f"pm grant {options.app_package} {permission}"
                )
                if "Exception" in output or "Error" in output:
                    raise TransportError(output.strip())
            except TransportError as e:
                message = f"Unable to grant {permission} to application APK: {e}"
                log.info("[%s] %s", request.serial, message)
                failure = PermissionGrantFailure(message)
                failure.__cause__ = e
                result.mark_install_failed(message, failure)
                return False
        return True

    async def _instrument(
        self,
        transport: DeviceTransport,
        request: ExecutionRequest,
        result: PerDeviceResultBuilder,
        log_capture: PerTestLogCapture | None,
    ) -> None:
        listener = TestLifecycleListener(result, log_capture, self.clock)
        log_sink: LogSink = log_capture if log_capture is not None else DiscardingLogSink()

        log.debug("[%s] About to run tests", request.serial)
        try:
            await transport.start_instrumentation(
                request.options.instrumentation(), listener, log_sink
            )
        except Exception as e:
            log.error("[%s] Instrumentation failed: %s", request.serial, e)
            _record(result, InstrumentationFailure(f"Instrumentation run failed: {e}"), e)
        finally:
            listener.close()

    def _attach_logs(
        self, log_capture: PerTestLogCapture, result: PerDeviceResultBuilder
    ) -> None:
        logs = log_capture.retained_logs()
        attached = 0
        for test, entries in logs.items():
            builder = result.get_test_result_builder(test)
            if builder is None:
                log.warning(
                    "[%s] Dropping %d log entries for unknown test %s",
                    result.serial,
                    len(entries),
                    test,
                )
                continue
            try:
                builder.set_log(entries)
            except InvalidTransition as e:
                log.warning("[%s] Unable to attach logs to %s: %s", result.serial, test, e)
                _record(
                    result,
                    LogCorrelationFailure(f"Unable to attach logs to {test}: {e}"),
                    e,
                )
                continue
            attached += 1
        log.debug("[%s] Attached logs for %d test(s)", result.serial, attached)

    async def _collect_artifacts(
        self,
        transport: DeviceTransport,
        request: ExecutionRequest,
        result: PerDeviceResultBuilder,
    ) -> None:
        collector = ArtifactCollector(transport=transport, request=request, result=result)
        storage_dir = await collector.external_storage_dir()

        phases = [collector.collect_screenshots]
        if request.options.pull_app_data:
            phases.append(collector.collect_app_data)

        for phase in phases:
            try:
                await phase(storage_dir)
            except ArtifactPullFailure as e:
                log.error("[%s] %s", request.serial, e)
                result.add_exception(e)
            except Exception as e:
                log.error("[%s] Artifact collection failed: %s", request.serial, e)
                _record(result, ArtifactPullFailure(f"Unable to collect artifacts: {e}"), e)


def _record(
    result: PerDeviceResultBuilder, failure: DeviceRunError, cause: BaseException
) -> None:
    failure.__cause__ = cause
    result.add_exception(failure)

