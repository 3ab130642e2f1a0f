"""Test-lifecycle events delivered by a device transport."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from fleet_test_runner.models.result import LogEntry, TestIdentifier


@dataclass(frozen=True, kw_only=True)
class RunStarted:
    run_name: str
    test_count: int


@dataclass(frozen=True, kw_only=True)
class TestStarted:
    __test__ = False

    test: TestIdentifier


@dataclass(frozen=True, kw_only=True)
class TestFailed:
    """A test failed.

    ``error`` distinguishes uncaught or instrumentation-level exceptions from
    assertion failures.
    """

    __test__ = False

    test: TestIdentifier
    trace: str
    error: bool = False


@dataclass(frozen=True, kw_only=True)
class TestAssumptionFailure:
    __test__ = False

    test: TestIdentifier
    trace: str


@dataclass(frozen=True, kw_only=True)
class TestIgnored:
    __test__ = False

    test: TestIdentifier


@dataclass(frozen=True, kw_only=True)
class TestEnded:
    __test__ = False

    test: TestIdentifier
    metrics: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class RunFailed:
    message: str


@dataclass(frozen=True, kw_only=True)
class RunStopped:
    elapsed: int


@dataclass(frozen=True, kw_only=True)
class RunEnded:
    elapsed: int
    metrics: Mapping[str, str] = field(default_factory=dict)


type TestRunEvent = (
    RunStarted
    | TestStarted
    | TestFailed
    | TestAssumptionFailure
    | TestIgnored
    | TestEnded
    | RunFailed
    | RunStopped
    | RunEnded
)


class EventSink(Protocol):
    """Consumer of test-lifecycle events, delivered in order."""

    def on_event(self, event: TestRunEvent) -> None:
        """Handle a single event."""


class LogSink(Protocol):
    """Consumer of device log batches, possibly from another thread."""

    def on_log_entries(self, batch: Sequence[LogEntry]) -> None:
        """Handle a batch of log entries."""


class DiscardingLogSink:
    """Log sink used when log capture is disabled."""

    def on_log_entries(self, batch: Sequence[LogEntry]) -> None:
        pass
