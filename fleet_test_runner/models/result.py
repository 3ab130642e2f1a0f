"""Models for per-test and per-device results, and the builders that make them.

Results are immutable. They are assembled through builders that only expose
forward transitions: a test starts once, ends once, and fails at most once.
Any attempt to repeat or reorder a transition raises ``InvalidTransition``
instead of overwriting state.
"""

import logging
import time
import traceback
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

from pydantic import Field, SerializationInfo, field_serializer, field_validator

from fleet_test_runner.errors import InvalidTransition, MalformedAppData
from fleet_test_runner.models.app_data import AppData
from fleet_test_runner.models.base import Model

log = logging.getLogger(__name__)

type TestStatus = Literal["pass", "fail", "error"]
type DeviceOutcome = Literal[
    "tests-ran", "install-failed", "device-unavailable", "worker-failed"
]
type Clock = Callable[[], float]

_CAUSED_BY = "Caused by: "


class TestIdentifier(Model):
    """Identifies a single test method within a device run."""

    __test__ = False

    class_name: str
    method_name: str

    def __str__(self) -> str:
        return f"{self.class_name}#{self.method_name}"


class StackTrace(Model):
    """An exception captured during a run, either on the device or locally."""

    kind: str
    message: str
    frames: tuple[str, ...] = ()
    cause: "StackTrace | None" = None

    @classmethod
    def from_trace(cls, trace: str) -> "StackTrace":
        """Parse a stack trace reported by the device.

        The first line, plus any continuation lines before the first frame,
        is kept verbatim as the message. The kind is the part of the first
        line before ``": "``.
        """
        lines = [line.rstrip() for line in trace.strip().splitlines()]
        return cls._from_lines(lines) if lines else cls(kind="", message="")

    @classmethod
    def _from_lines(cls, lines: list[str]) -> "StackTrace":
        message_lines: list[str] = []
        frames: list[str] = []
        cause = None

        for index, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith(_CAUSED_BY):
                cause = cls._from_lines(
                    [stripped.removeprefix(_CAUSED_BY), *lines[index + 1 :]]
                )
                break
            if stripped.startswith("at "):
                frames.append(stripped.removeprefix("at "))
            elif stripped.startswith("...") and stripped.endswith("more"):
                continue
            elif not frames:
                message_lines.append(line)

        first = message_lines[0] if message_lines else ""
        kind = first.partition(": ")[0] if ": " in first else first
        return cls(
            kind=kind,
            message="\n".join(message_lines),
            frames=tuple(frames),
            cause=cause,
        )

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StackTrace":
        """Capture a local exception."""
        kind = type(exc).__name__
        text = str(exc)
        frames = tuple(
            f"{frame.name}({Path(frame.filename).name}:{frame.lineno})"
            for frame in traceback.extract_tb(exc.__traceback__)
        )
        cause = exc.__cause__
        return cls(
            kind=kind,
            message=f"{kind}: {text}" if text else kind,
            frames=frames,
            cause=cls.from_exception(cause) if cause is not None else None,
        )


class LogEntry(Model):
    """A single line of the device log."""

    timestamp: str
    level: str
    pid: int | None = None
    tid: int | None = None
    tag: str
    message: str


class PerTestResult(Model):
    """Outcome of a single test method on a single device."""

    __test__ = False

    status: TestStatus = "pass"
    exception: StackTrace | None = None
    duration: int = Field(..., ge=0, description="Duration in whole seconds")
    screenshots: tuple[Path, ...] = ()
    animated_gif: Path | None = None
    log: tuple[LogEntry, ...] = ()
    app_data: AppData | None = None
    synthesized: bool = Field(
        default=False,
        description="Created without a matching test-started event",
    )


class DeviceDetails(Model):
    """Static information about a device. Every field may be unknown."""

    model: str | None = None
    manufacturer: str | None = None
    version: str | None = None
    api_level: int | None = None
    language: str | None = None
    region: str | None = None
    is_emulator: bool | None = None
    avd_name: str | None = None

    @classmethod
    def unknown(cls) -> "DeviceDetails":
        """Details for a device that could not be queried."""
        return cls()


class TestResultEntry(Model):
    """Serialized form of one row of a device's test table."""

    __test__ = False

    test: TestIdentifier
    result: PerTestResult


class PerDeviceResult(Model):
    """Outcome of a full run on a single device."""

    serial: str
    details: DeviceDetails = Field(default_factory=DeviceDetails.unknown)
    outcome: DeviceOutcome = "tests-ran"
    install_message: str | None = None
    started: datetime | None = None
    duration: int | None = Field(default=None, ge=0)
    test_results: Mapping[TestIdentifier, PerTestResult] = Field(
        default_factory=lambda: MappingProxyType({})
    )
    exceptions: tuple[StackTrace, ...] = ()

    @field_validator("test_results", mode="before")
    @classmethod
    def _entries_to_mapping(cls, value: Any) -> Any:
        if isinstance(value, list):
            entries = [TestResultEntry.model_validate(entry) for entry in value]
            return {entry.test: entry.result for entry in entries}
        return value

    @field_validator("test_results")
    @classmethod
    def _freeze_mapping(
        cls, value: Mapping[TestIdentifier, PerTestResult]
    ) -> Mapping[TestIdentifier, PerTestResult]:
        return MappingProxyType(dict(value))

    @field_serializer("test_results")
    def _mapping_to_entries(
        self,
        value: Mapping[TestIdentifier, PerTestResult],
        info: SerializationInfo,
    ) -> list[dict[str, Any]]:
        return [
            TestResultEntry(test=test, result=result).model_dump(mode=info.mode)
            for test, result in value.items()
        ]

    @property
    def has_failures(self) -> bool:
        """Whether the device run had any failing test or harness trouble."""
        return (
            self.outcome != "tests-ran"
            or bool(self.exceptions)
            or any(r.status != "pass" for r in self.test_results.values())
        )

    def counts(self) -> Mapping[TestStatus, int]:
        """Count tests by status."""
        counts: dict[TestStatus, int] = {"pass": 0, "fail": 0, "error": 0}
        for result in self.test_results.values():
            counts[result.status] += 1
        return counts


class PerTestResultBuilder:
    """Staged construction of a ``PerTestResult``."""

    __test__ = False

    def __init__(self, clock: Clock = time.monotonic, *, synthesized: bool = False):
        self._clock = clock
        self._synthesized = synthesized
        self._status: TestStatus = "pass"
        self._exception: StackTrace | None = None
        self._start: float | None = None
        self._duration: int | None = None
        self._screenshots: list[Path] = []
        self._animated_gif: Path | None = None
        self._log: tuple[LogEntry, ...] | None = None
        self._app_data: AppData | None = None
        self._app_data_added = False

    @property
    def status(self) -> TestStatus:
        return self._status

    @property
    def exception(self) -> StackTrace | None:
        return self._exception

    @property
    def synthesized(self) -> bool:
        return self._synthesized

    @property
    def has_started(self) -> bool:
        return self._start is not None

    @property
    def has_ended(self) -> bool:
        return self._duration is not None

    @property
    def is_terminal(self) -> bool:
        return self._status != "pass"

    def start_test(self, at: float | None = None) -> "PerTestResultBuilder":
        """Record the start of the test, now or at an earlier clock reading."""
        if self._start is not None:
            raise InvalidTransition("Start already recorded")
        self._start = self._clock() if at is None else at
        return self

    def end_test(self) -> "PerTestResultBuilder":
        """Stop the timer and compute the duration."""
        if self._start is None:
            raise InvalidTransition("Start was not recorded")
        if self._duration is not None:
            raise InvalidTransition("End already recorded")
        self._duration = max(0, int(self._clock() - self._start))
        return self

    def mark_failed(self, trace: str) -> "PerTestResultBuilder":
        """Mark the test as failed with an assertion failure."""
        return self._mark("fail", trace)

    def mark_error(self, trace: str) -> "PerTestResultBuilder":
        """Mark the test as errored with an uncaught exception."""
        return self._mark("error", trace)

    def _mark(self, status: TestStatus, trace: str) -> "PerTestResultBuilder":
        if self._status != "pass":
            raise InvalidTransition(f"Status was already marked as {self._status}")
        self._status = status
        self._exception = StackTrace.from_trace(trace)
        return self

    def set_log(self, entries: Iterable[LogEntry]) -> "PerTestResultBuilder":
        if self._log is not None:
            raise InvalidTransition("Log already set")
        self._log = tuple(entries)
        return self

    def add_screenshot(self, path: Path) -> "PerTestResultBuilder":
        self._screenshots.append(path)
        return self

    def set_animated_gif(self, path: Path) -> "PerTestResultBuilder":
        if self._animated_gif is not None:
            raise InvalidTransition("Animated GIF already set")
        self._animated_gif = path
        return self

    def add_app_data(self, raw: str) -> MalformedAppData | None:
        """Attach app-reported data, returning the parse problem if there was one.

        Malformed data never propagates: it is logged and the field stays unset.
        A test takes app data once; a second attempt raises ``InvalidTransition``
        whether or not the first one parsed.
        """
        if self._app_data_added:
            raise InvalidTransition("App data already added")
        self._app_data_added = True
        try:
            self._app_data = AppData.parse(raw)
        except MalformedAppData as e:
            log.warning("Error parsing app data: %s", e)
            return e
        return None

    def build(self) -> PerTestResult:
        if self._duration is None:
            raise InvalidTransition("Test has not ended")
        return PerTestResult(
            status=self._status,
            exception=self._exception,
            duration=self._duration,
            screenshots=tuple(self._screenshots),
            animated_gif=self._animated_gif,
            log=self._log or (),
            app_data=self._app_data,
            synthesized=self._synthesized,
        )


class PerDeviceResultBuilder:
    """Staged construction of a ``PerDeviceResult``."""

    def __init__(self, serial: str, clock: Clock = time.monotonic):
        self.serial = serial
        self._clock = clock
        self._details = DeviceDetails.unknown()
        self._outcome: DeviceOutcome = "tests-ran"
        self._install_message: str | None = None
        self._started: datetime | None = None
        self._start: float | None = None
        self._duration: int | None = None
        self._tests: dict[TestIdentifier, PerTestResultBuilder] = {}
        self._exceptions: list[StackTrace] = []

    @property
    def run_start(self) -> float | None:
        """Clock reading at which the tests started, if they did."""
        return self._start

    def set_device_details(self, details: DeviceDetails) -> "PerDeviceResultBuilder":
        self._details = details
        return self

    def start_tests(self) -> "PerDeviceResultBuilder":
        if self._start is not None:
            raise InvalidTransition("Tests already started")
        self._start = self._clock()
        self._started = datetime.now(timezone.utc)
        return self

    def end_tests(self) -> "PerDeviceResultBuilder":
        if self._start is None:
            raise InvalidTransition("Tests were not started")
        if self._duration is not None:
            raise InvalidTransition("Tests already ended")
        self._duration = max(0, int(self._clock() - self._start))
        return self

    def mark_install_failed(
        self, message: str, error: BaseException | None = None
    ) -> "PerDeviceResultBuilder":
        self._set_outcome("install-failed")
        self._install_message = message
        if error is not None:
            self.add_exception(error)
        return self

    def mark_device_unavailable(self, error: BaseException) -> "PerDeviceResultBuilder":
        self._set_outcome("device-unavailable")
        return self.add_exception(error)

    def mark_worker_failed(self, error: BaseException) -> "PerDeviceResultBuilder":
        self._set_outcome("worker-failed")
        return self.add_exception(error)

    def _set_outcome(self, outcome: DeviceOutcome) -> None:
        if self._outcome != "tests-ran":
            raise InvalidTransition(f"Outcome was already marked as {self._outcome}")
        self._outcome = outcome

    def add_test_result_builder(
        self, test: TestIdentifier, builder: PerTestResultBuilder
    ) -> "PerDeviceResultBuilder":
        if not builder.has_ended:
            raise InvalidTransition(f"Test {test} has not ended")
        self._tests[test] = builder
        return self

    def get_test_result_builder(self, test: TestIdentifier) -> PerTestResultBuilder | None:
        return self._tests.get(test)

    def test_ids(self) -> tuple[TestIdentifier, ...]:
        return tuple(self._tests)

    def add_exception(self, error: BaseException | StackTrace) -> "PerDeviceResultBuilder":
        trace = (
            error if isinstance(error, StackTrace) else StackTrace.from_exception(error)
        )
        self._exceptions.append(trace)
        return self

    def build(self) -> PerDeviceResult:
        return PerDeviceResult(
            serial=self.serial,
            details=self._details,
            outcome=self._outcome,
            install_message=self._install_message,
            started=self._started,
            duration=self._duration,
            test_results={test: b.build() for test, b in self._tests.items()},
            exceptions=tuple(self._exceptions),
        )
