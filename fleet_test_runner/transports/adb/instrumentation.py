"""Parser for the raw output of ``am instrument -r``."""

import logging
import re
from collections.abc import Mapping

from fleet_test_runner.events import (
    EventSink,
    RunEnded,
    RunFailed,
    RunStarted,
    TestAssumptionFailure,
    TestEnded,
    TestFailed,
    TestIgnored,
    TestStarted,
)
from fleet_test_runner.models.result import TestIdentifier

log = logging.getLogger(__name__)

STATUS_PREFIX = "INSTRUMENTATION_STATUS: "
STATUS_CODE_PREFIX = "INSTRUMENTATION_STATUS_CODE: "
RESULT_PREFIX = "INSTRUMENTATION_RESULT: "
CODE_PREFIX = "INSTRUMENTATION_CODE: "
FAILED_PREFIX = "INSTRUMENTATION_FAILED: "

STATUS_IN_PROGRESS = 2

_TIME_PATTERN = re.compile(r"^Time: ([\d,.]+)", re.MULTILINE)


class InstrumentationResultParser:
    """Turns ``am instrument -r`` output lines into lifecycle events.

    Feed every output line to ``feed`` and call ``finish`` once the process
    exits. A run that stops before reporting ``INSTRUMENTATION_CODE`` is
    reported as failed.
    """

    def __init__(self, run_name: str, sink: EventSink):
        self._run_name = run_name
        self._sink = sink
        self._bundle: dict[str, str] = {}
        self._result: dict[str, str] = {}
        self._key: str | None = None
        self._target: dict[str, str] = self._bundle
        self._run_started = False
        self._finished = False
        self._expected = 0
        self._completed = 0
        self._failure: str | None = None
        self._code_received = False

    def feed(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if line.startswith(STATUS_CODE_PREFIX):
            self._status_code(line.removeprefix(STATUS_CODE_PREFIX).strip())
        elif line.startswith(STATUS_PREFIX):
            self._key_value(self._bundle, line.removeprefix(STATUS_PREFIX))
        elif line.startswith(RESULT_PREFIX):
            self._key_value(self._result, line.removeprefix(RESULT_PREFIX))
        elif line.startswith(FAILED_PREFIX):
            self._failure = line.removeprefix(FAILED_PREFIX).strip()
            self._key = None
        elif line.startswith(CODE_PREFIX):
            self._key = None
            self._code_received = True
            self.finish()
        elif self._key is not None:
            self._target[self._key] += "\n" + line

    def _key_value(self, target: dict[str, str], text: str) -> None:
        key, _, value = text.partition("=")
        self._key = key
        self._target = target
        target[key] = value

    def _status_code(self, raw_code: str) -> None:
        self._key = None
        bundle, self._bundle = self._bundle, {}
        try:
            code = int(raw_code)
        except ValueError:
            log.warning("Unparseable instrumentation status code %r", raw_code)
            return
        if code == STATUS_IN_PROGRESS:
            return

        self._ensure_run_started(bundle)
        class_name = bundle.get("class")
        method_name = bundle.get("test")
        if not class_name or not method_name:
            log.warning("Instrumentation status without a test: %s", bundle)
            return
        test = TestIdentifier(class_name=class_name, method_name=method_name)
        trace = bundle.get("stack", "")

        # 1 start, 0 ok, -1 error, -2 failure, -3 ignored, -4 assumption failure
        match code:
            case 1:
                self._sink.on_event(TestStarted(test=test))
                return
            case -1:
                self._sink.on_event(TestFailed(test=test, trace=trace, error=True))
            case -2:
                self._sink.on_event(TestFailed(test=test, trace=trace))
            case -3:
                self._sink.on_event(TestIgnored(test=test))
            case -4:
                self._sink.on_event(TestAssumptionFailure(test=test, trace=trace))
            case 0:
                pass
            case _:
                log.warning("Unknown instrumentation status code %d for %s", code, test)
        self._completed += 1
        self._sink.on_event(TestEnded(test=test, metrics=_metrics(bundle)))

    def _ensure_run_started(self, bundle: Mapping[str, str]) -> None:
        if self._run_started:
            return
        self._run_started = True
        numtests = bundle.get("numtests", "0")
        self._expected = int(numtests) if numtests.isdigit() else 0
        self._sink.on_event(RunStarted(run_name=self._run_name, test_count=self._expected))

    def finish(self) -> None:
        """Report the end of the run. Safe to call more than once."""
        if self._finished:
            return
        self._finished = True

        if message := self._failure_message():
            if not self._run_started:
                self._run_started = True
                self._sink.on_event(RunStarted(run_name=self._run_name, test_count=0))
            self._sink.on_event(RunFailed(message=message))
        if self._run_started:
            self._sink.on_event(RunEnded(elapsed=self._elapsed_ms()))

    def _failure_message(self) -> str | None:
        if self._failure:
            return f"Instrumentation run failed: {self._failure}"
        if short_message := self._result.get("shortMsg"):
            return f"Instrumentation run failed due to '{short_message.strip()}'"
        if not self._code_received:
            if not self._run_started:
                return "Test run incomplete: no instrumentation output received"
            return (
                "Test run incomplete: instrumentation output ended after "
                f"{self._completed} of {self._expected} tests"
            )
        if self._completed < self._expected:
            return (
                "Test run failed to complete. "
                f"Expected {self._expected} tests, received {self._completed}"
            )
        return None

    def _elapsed_ms(self) -> int:
        stream = self._result.get("stream", "")
        if match := _TIME_PATTERN.search(stream):
            return round(float(match.group(1).replace(",", "")) * 1000)
        return 0


def _metrics(bundle: Mapping[str, str]) -> Mapping[str, str]:
    ignored = {"class", "test", "stack", "stream", "current", "numtests", "id"}
    return {key: value for key, value in bundle.items() if key not in ignored}
