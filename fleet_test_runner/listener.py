"""Translation of test-lifecycle events into result builders."""

import enum
import logging
import time

from fleet_test_runner.errors import InstrumentationFailure, InvalidTransition
from fleet_test_runner.events import (
    RunEnded,
    RunFailed,
    RunStarted,
    RunStopped,
    TestAssumptionFailure,
    TestEnded,
    TestFailed,
    TestIgnored,
    TestRunEvent,
    TestStarted,
)
from fleet_test_runner.log_capture import PerTestLogCapture
from fleet_test_runner.models.result import (
    Clock,
    PerDeviceResultBuilder,
    PerTestResultBuilder,
    TestIdentifier,
)

log = logging.getLogger(__name__)


class ListenerState(enum.Enum):
    IDLE = "idle"
    RUN_STARTED = "run-started"
    TEST_RUNNING = "test-running"
    RUN_ENDED = "run-ended"


class TestLifecycleListener:
    """Folds the event stream of one device run into a ``PerDeviceResultBuilder``.

    Events are handled synchronously in delivery order. The transport may
    deliver ``failed``/``ended`` for a test it never reported as started (for
    example when the instrumentation process dies mid-test); such events get a
    synthesized builder so the run still produces a usable result. The two
    ways this can happen are logged differently so that transport flakiness
    can be told apart from re-delivered events.
    """

    __test__ = False

    def __init__(
        self,
        result: PerDeviceResultBuilder,
        log_capture: PerTestLogCapture | None = None,
        clock: Clock = time.monotonic,
    ):
        self._result = result
        self._log_capture = log_capture
        self._clock = clock
        self._running: dict[TestIdentifier, PerTestResultBuilder] = {}
        self.state = ListenerState.IDLE

    def on_event(self, event: TestRunEvent) -> None:
        match event:
            case RunStarted(run_name=run_name, test_count=test_count):
                self._run_started(run_name, test_count)
            case TestStarted(test=test):
                self._test_started(test)
            case TestFailed(test=test, trace=trace, error=error):
                self._test_failed(test, trace, error=error)
            case TestAssumptionFailure(test=test, trace=trace):
                log.debug("Assumption failure in %s: %s", test, trace)
            case TestIgnored(test=test):
                log.debug("Ignored test %s", test)
            case TestEnded(test=test):
                self._test_ended(test)
            case RunFailed(message=message):
                self._run_failed(message)
            case RunStopped(elapsed=elapsed):
                log.debug("[%s] Run stopped after %dms", self._result.serial, elapsed)
            case RunEnded(elapsed=elapsed):
                self._run_ended(elapsed)

    def _run_started(self, run_name: str, test_count: int) -> None:
        log.debug(
            "[%s] Run %r started with %d test(s)",
            self._result.serial,
            run_name,
            test_count,
        )
        if self.state is not ListenerState.IDLE:
            log.warning(
                "[%s] Ignoring run-started in state %s",
                self._result.serial,
                self.state.value,
            )
            return
        self._result.start_tests()
        self._running.clear()
        self.state = ListenerState.RUN_STARTED

    def _test_started(self, test: TestIdentifier) -> None:
        log.debug("[%s] Test started: %s", self._result.serial, test)
        if self.state is ListenerState.IDLE:
            log.warning(
                "[%s] Test %s started before the run; starting run implicitly",
                self._result.serial,
                test,
            )
            self._result.start_tests()
        elif self.state is ListenerState.RUN_ENDED:
            log.warning(
                "[%s] Test %s started after the run ended", self._result.serial, test
            )

        if test in self._running:
            log.warning(
                "[%s] Test %s started again before it ended; restarting",
                self._result.serial,
                test,
            )
        self._running[test] = PerTestResultBuilder(self._clock).start_test()
        if self._log_capture is not None:
            self._log_capture.on_test_started(test)
        self.state = ListenerState.TEST_RUNNING

    def _test_failed(self, test: TestIdentifier, trace: str, *, error: bool) -> None:
        log.debug("[%s] Test failed: %s", self._result.serial, test)
        builder = self._running.get(test) or self._result.get_test_result_builder(test)
        if builder is None:
            self._report_unknown(test, "test-failed")
            builder = PerTestResultBuilder(self._clock, synthesized=True)
            builder.start_test(at=self._result.run_start)
            self._running[test] = builder

        try:
            if error:
                builder.mark_error(trace)
            else:
                builder.mark_failed(trace)
        except InvalidTransition as e:
            log.warning(
                "[%s] Duplicate failure for %s ignored: %s",
                self._result.serial,
                test,
                e,
            )
            return

        if self._log_capture is not None:
            self._log_capture.on_test_failed(test)

    def _test_ended(self, test: TestIdentifier) -> None:
        log.debug("[%s] Test ended: %s", self._result.serial, test)
        if self._log_capture is not None:
            self._log_capture.on_test_ended(test)

        builder = self._running.pop(test, None)
        if builder is None:
            if self._result.get_test_result_builder(test) is not None:
                log.warning(
                    "[%s] test-ended re-delivered for already completed test %s",
                    self._result.serial,
                    test,
                )
                return
            self._report_unknown(test, "test-ended")
            builder = PerTestResultBuilder(self._clock, synthesized=True)
            builder.start_test(at=self._result.run_start)

        builder.end_test()
        self._result.add_test_result_builder(test, builder)
        if not self._running and self.state is ListenerState.TEST_RUNNING:
            self.state = ListenerState.RUN_STARTED

    def _report_unknown(self, test: TestIdentifier, event: str) -> None:
        log.error(
            "[%s] %s for unknown test %s: no test-started was delivered",
            self._result.serial,
            event,
            test,
        )

    def _run_failed(self, message: str) -> None:
        log.debug("[%s] Run failed: %s", self._result.serial, message)
        self._result.add_exception(InstrumentationFailure(message))

    def _run_ended(self, elapsed: int) -> None:
        log.debug("[%s] Run ended after %dms", self._result.serial, elapsed)
        if self.state not in (ListenerState.RUN_STARTED, ListenerState.TEST_RUNNING):
            log.warning(
                "[%s] Ignoring run-ended in state %s",
                self._result.serial,
                self.state.value,
            )
            return
        self._result.end_tests()
        self.state = ListenerState.RUN_ENDED

    def close(self) -> None:
        """Record tests that started but never ended as errors.

        Called once the transport stops delivering events. Without this, a test
        interrupted by an instrumentation crash would vanish from the result.
        """
        for test, builder in list(self._running.items()):
            log.warning(
                "[%s] Test %s never ended; recording it as an error",
                self._result.serial,
                test,
            )
            if not builder.is_terminal:
                builder.mark_error(
                    f"{InstrumentationFailure.__name__}: Test did not finish"
                )
            self._test_ended(test)
