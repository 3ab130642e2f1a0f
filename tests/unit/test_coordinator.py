"""Tests for the device execution coordinator."""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from unittest.mock import Mock

import pytest

from fleet_test_runner.coordinator import DeviceExecutionCoordinator
from fleet_test_runner.log_capture import PerTestLogCapture
from fleet_test_runner.models.request import ExecutionRequest
from fleet_test_runner.models.result import (
    PerDeviceResult,
    PerDeviceResultBuilder,
    PerTestResultBuilder,
)
from fleet_test_runner.testing.clock import FakeClock
from fleet_test_runner.testing.factories import LogEntryFactory
from fleet_test_runner.testing.transport import (
    ScriptedStep,
    ScriptedTransport,
    ScriptedTransportConfig,
    parse_test,
)

LOGIN_A = "com.example.LoginTest#testA"
LOGIN_B = "com.example.LoginTest#testB"
SCREENSHOTS = "/sdcard/test_data/screenshots"
APP_DATA = "/sdcard/test_data/data"
READ_GRANT = "pm grant com.example.app android.permission.READ_EXTERNAL_STORAGE"

type RequestFn = Callable[..., ExecutionRequest]


class ScriptedDevice:
    """Transport factory that remembers the transport it opened."""

    def __init__(self, config: ScriptedTransportConfig):
        self.config = config
        self.transport: ScriptedTransport | None = None

    @asynccontextmanager
    async def __call__(self, serial: str) -> AsyncGenerator[ScriptedTransport, None]:
        async with ScriptedTransport.from_config(self.config, serial) as transport:
            self.transport = transport
            yield transport

    @property
    def calls(self) -> list[str]:
        return self.transport.calls if self.transport is not None else []


def two_test_run() -> list[ScriptedStep]:
    return [
        ScriptedStep(kind="run-started", count=2),
        ScriptedStep(kind="test-started", test=LOGIN_A),
        ScriptedStep(kind="log", entries=[LogEntryFactory.build(message="a passes")]),
        ScriptedStep(kind="test-ended", test=LOGIN_A),
        ScriptedStep(kind="test-started", test=LOGIN_B),
        ScriptedStep(kind="log", entries=[LogEntryFactory.build(message="b fails")]),
        ScriptedStep(
            kind="test-failed",
            test=LOGIN_B,
            trace="java.lang.AssertionError: expected 1 got 2",
        ),
        ScriptedStep(kind="test-ended", test=LOGIN_B),
        ScriptedStep(kind="run-ended", count=1500),
    ]


async def run(device: ScriptedDevice, request: ExecutionRequest) -> PerDeviceResult:
    coordinator = DeviceExecutionCoordinator(
        transport_factory=device, clock=FakeClock()
    )
    return await coordinator.run(request)


async def test_full_run(make_request: RequestFn) -> None:
    """Installs, grants, runs and attaches logs to the failing test only."""
    device = ScriptedDevice(ScriptedTransportConfig(steps=two_test_run()))

    result = await run(device, make_request())

    assert result.outcome == "tests-ran"
    assert result.exceptions == ()
    assert result.details.api_level == 30
    passing = result.test_results[parse_test(LOGIN_A)]
    failing = result.test_results[parse_test(LOGIN_B)]
    assert passing.status == "pass"
    assert passing.log == ()
    assert failing.status == "fail"
    assert [entry.message for entry in failing.log] == ["b fails"]
    assert device.calls[:4] == [
        "install app.apk",
        "install app-test.apk",
        f"shell {READ_GRANT}",
        "shell pm grant com.example.app android.permission.WRITE_EXTERNAL_STORAGE",
    ]
    assert "instrument com.example.app.test/androidx.test.runner.AndroidJUnitRunner" in device.calls


async def test_application_install_failure(make_request: RequestFn) -> None:
    """Stops before instrumentation when the application cannot be installed."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            install_errors={"app.apk": "INSTALL_FAILED_INSUFFICIENT_STORAGE"},
            steps=two_test_run(),
        )
    )

    result = await run(device, make_request())

    assert result.outcome == "install-failed"
    assert result.install_message == (
        "Unable to install application APK: INSTALL_FAILED_INSUFFICIENT_STORAGE"
    )
    assert dict(result.test_results) == {}
    assert [e.kind for e in result.exceptions] == ["InstallFailure"]
    assert not any(call.startswith("instrument") for call in device.calls)


async def test_instrumentation_install_failure(make_request: RequestFn) -> None:
    """Reports which of the two packages failed to install."""
    device = ScriptedDevice(
        ScriptedTransportConfig(install_errors={"app-test.apk": "INSTALL_FAILED_OLDER_SDK"})
    )

    result = await run(device, make_request())

    assert result.outcome == "install-failed"
    assert result.install_message == (
        "Unable to install instrumentation APK: INSTALL_FAILED_OLDER_SDK"
    )


async def test_permission_grant_failure(make_request: RequestFn) -> None:
    """Reports a grant failure distinctly from an install failure."""
    device = ScriptedDevice(
        ScriptedTransportConfig(failing_commands=[READ_GRANT], steps=two_test_run())
    )

    result = await run(device, make_request())

    assert result.outcome == "install-failed"
    assert result.install_message is not None
    assert result.install_message.startswith(
        "Unable to grant android.permission.READ_EXTERNAL_STORAGE to application APK"
    )
    assert [e.kind for e in result.exceptions] == ["PermissionGrantFailure"]
    assert result.exceptions[0].cause is not None
    assert not any(call.startswith("instrument") for call in device.calls)


async def test_permission_grant_error_output(make_request: RequestFn) -> None:
    """Treats an exception printed by the package manager as a grant failure."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            shell_outputs={
                READ_GRANT: "Exception occurred while executing 'grant':\n"
                "java.lang.SecurityException: Package com.example.app not found"
            }
        )
    )

    result = await run(device, make_request())

    assert result.outcome == "install-failed"
    assert "SecurityException" in (result.install_message or "")


@pytest.mark.parametrize(
    ("properties", "granted"),
    [
        pytest.param({"ro.build.version.sdk": "22"}, False, id="old-platform"),
        pytest.param({"ro.build.version.sdk": "23"}, True, id="threshold"),
        pytest.param({}, True, id="unknown-platform"),
    ],
)
async def test_permissions_depend_on_api_level(
    make_request: RequestFn, properties: dict[str, str], granted: bool
) -> None:
    """Grants runtime permissions only where the platform requires them."""
    device = ScriptedDevice(ScriptedTransportConfig(properties=properties))

    await run(device, make_request())

    assert (f"shell {READ_GRANT}" in device.calls) is granted


async def test_crash_keeps_partial_results(make_request: RequestFn) -> None:
    """Records an instrumentation crash and keeps the tests that finished."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            steps=[
                ScriptedStep(kind="run-started", count=2),
                ScriptedStep(kind="test-started", test=LOGIN_A),
                ScriptedStep(kind="test-ended", test=LOGIN_A),
                ScriptedStep(kind="test-started", test=LOGIN_B),
                ScriptedStep(kind="crash", message="device disconnected"),
            ],
        )
    )

    result = await run(device, make_request())

    assert result.outcome == "tests-ran"
    assert result.test_results[parse_test(LOGIN_A)].status == "pass"
    assert result.test_results[parse_test(LOGIN_B)].status == "error"
    assert [e.message for e in result.exceptions] == [
        "InstrumentationFailure: Instrumentation run failed: device disconnected"
    ]
    assert result.exceptions[0].cause is not None
    assert "shell echo $EXTERNAL_STORAGE" in device.calls


async def test_unavailable_device(make_request: RequestFn) -> None:
    """Returns a result marking the device unavailable."""
    device = ScriptedDevice(ScriptedTransportConfig(unavailable=True))

    result = await run(device, make_request("emulator-5556"))

    assert result.serial == "emulator-5556"
    assert result.outcome == "device-unavailable"
    assert [e.kind for e in result.exceptions] == ["TransportError"]


async def test_screenshots_are_attached(make_request: RequestFn) -> None:
    """Copies screenshots into the local layout and attaches them to their test."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            steps=two_test_run(),
            remote_files={
                SCREENSHOTS: {
                    "com.example.LoginTest/testA/2-after.png": "after",
                    "com.example.LoginTest/testA/1-before.png": "before",
                }
            },
        )
    )
    request = make_request()

    result = await run(device, request)

    method_dir = request.image_dir / "com.example.LoginTest" / "testA"
    assert result.test_results[parse_test(LOGIN_A)].screenshots == (
        method_dir / "1-before.png",
        method_dir / "2-after.png",
    )
    assert (method_dir / "1-before.png").read_text() == "before"
    assert f"shell rm -rf {SCREENSHOTS}" in device.calls
    assert not (request.work_dir / "screenshots").exists()


async def test_artifact_failure_keeps_results(make_request: RequestFn) -> None:
    """Records a failed pull without losing test outcomes."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            steps=two_test_run(),
            remote_files={SCREENSHOTS: {"com.example.LoginTest/testA/1.png": "x"}},
            failing_pulls=[SCREENSHOTS],
        )
    )

    result = await run(device, make_request())

    assert [e.kind for e in result.exceptions] == ["ArtifactPullFailure"]
    assert result.counts() == {"pass": 1, "fail": 1, "error": 0}


async def test_app_data_is_attached(make_request: RequestFn) -> None:
    """Parses app data files into the matching test result."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            steps=two_test_run(),
            remote_files={
                APP_DATA: {
                    "com.example.LoginTest/testB/app_data.json": '{"user": {"id": "7"}}'
                }
            },
        )
    )

    result = await run(device, make_request(pull_app_data=True))

    app_data = result.test_results[parse_test(LOGIN_B)].app_data
    assert app_data is not None
    assert [(pair.name, pair.value) for pair in app_data.user] == [("id", "7")]


async def test_only_first_app_data_file_is_used(
    make_request: RequestFn, caplog: pytest.LogCaptureFixture
) -> None:
    """Attaches the first data file of a test and warns about the rest."""
    device = ScriptedDevice(
        ScriptedTransportConfig(
            steps=two_test_run(),
            remote_files={
                APP_DATA: {
                    "com.example.LoginTest/testB/a.json": '{"user": {"id": "7"}}',
                    "com.example.LoginTest/testB/b.json": "{not json",
                }
            },
        )
    )

    result = await run(device, make_request(pull_app_data=True))

    app_data = result.test_results[parse_test(LOGIN_B)].app_data
    assert app_data is not None
    assert [(pair.name, pair.value) for pair in app_data.user] == [("id", "7")]
    assert result.exceptions == ()
    assert "Found 2 app data files for com.example.LoginTest#testB" in caplog.text


async def test_app_data_is_skipped_unless_enabled(make_request: RequestFn) -> None:
    """Does not look for app data when it is disabled."""
    device = ScriptedDevice(ScriptedTransportConfig(steps=two_test_run()))

    await run(device, make_request(pull_app_data=False))

    assert not any(APP_DATA in call for call in device.calls)


async def test_logs_are_not_captured_when_disabled(make_request: RequestFn) -> None:
    """Leaves test logs empty when log capture is disabled."""
    device = ScriptedDevice(ScriptedTransportConfig(steps=two_test_run()))

    result = await run(device, make_request(capture_logs=False))

    assert result.test_results[parse_test(LOGIN_B)].log == ()


class TestAttachLogs:
    """Tests for attaching retained logs to test results."""

    @staticmethod
    def capture_failures(*tests: str) -> PerTestLogCapture:
        capture = PerTestLogCapture()
        for test in tests:
            test_id = parse_test(test)
            capture.on_test_started(test_id)
            capture.on_log_entries([LogEntryFactory.build(message=f"{test} failed")])
            capture.on_test_failed(test_id)
            capture.on_test_ended(test_id)
        return capture

    @staticmethod
    def ended(clock: FakeClock) -> PerTestResultBuilder:
        return PerTestResultBuilder(clock).start_test().end_test()

    def test_logs_for_unknown_test_are_dropped(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Drops logs that have no result entry and keeps the rest."""
        result = PerDeviceResultBuilder("emulator-5554", clock)
        result.add_test_result_builder(parse_test(LOGIN_B), self.ended(clock))
        coordinator = DeviceExecutionCoordinator(transport_factory=Mock(), clock=clock)

        coordinator._attach_logs(self.capture_failures(LOGIN_A, LOGIN_B), result)

        built = result.build()
        assert [e.message for e in built.test_results[parse_test(LOGIN_B)].log] == [
            f"{LOGIN_B} failed"
        ]
        assert built.exceptions == ()
        assert f"Dropping 1 log entries for unknown test {LOGIN_A}" in caplog.text

    def test_attach_failure_is_recorded_per_test(self, clock: FakeClock) -> None:
        """Records a LogCorrelationFailure and still attaches the other tests' logs."""
        result = PerDeviceResultBuilder("emulator-5554", clock)
        already_logged = self.ended(clock).set_log([])
        result.add_test_result_builder(parse_test(LOGIN_A), already_logged)
        result.add_test_result_builder(parse_test(LOGIN_B), self.ended(clock))
        coordinator = DeviceExecutionCoordinator(transport_factory=Mock(), clock=clock)

        coordinator._attach_logs(self.capture_failures(LOGIN_A, LOGIN_B), result)

        built = result.build()
        assert [e.kind for e in built.exceptions] == ["LogCorrelationFailure"]
        assert LOGIN_A in built.exceptions[0].message
        assert built.test_results[parse_test(LOGIN_A)].log == ()
        assert len(built.test_results[parse_test(LOGIN_B)].log) == 1
