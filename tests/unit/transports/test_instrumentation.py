"""Tests for the instrumentation output parser."""

from fleet_test_runner.events import (
    RunEnded,
    RunFailed,
    RunStarted,
    TestAssumptionFailure,
    TestEnded,
    TestFailed,
    TestIgnored,
    TestRunEvent,
    TestStarted,
)
from fleet_test_runner.models.result import TestIdentifier
from fleet_test_runner.transports.adb.instrumentation import (
    InstrumentationResultParser,
)

LOGIN_A = TestIdentifier(class_name="com.example.LoginTest", method_name="testA")
LOGIN_B = TestIdentifier(class_name="com.example.LoginTest", method_name="testB")


class RecordingSink:
    """Event sink that records every event."""

    def __init__(self) -> None:
        self.events: list[TestRunEvent] = []

    def on_event(self, event: TestRunEvent) -> None:
        self.events.append(event)


def status(test: TestIdentifier, code: int, numtests: int = 2, **extra: str) -> str:
    lines = [
        "INSTRUMENTATION_STATUS: id=AndroidJUnitRunner",
        f"INSTRUMENTATION_STATUS: numtests={numtests}",
        f"INSTRUMENTATION_STATUS: class={test.class_name}",
        f"INSTRUMENTATION_STATUS: test={test.method_name}",
        *(f"INSTRUMENTATION_STATUS: {key}={value}" for key, value in extra.items()),
        f"INSTRUMENTATION_STATUS_CODE: {code}",
    ]
    return "\n".join(lines)


def parse(output: str) -> list[TestRunEvent]:
    sink = RecordingSink()
    parser = InstrumentationResultParser("com.example.app.test", sink)
    for line in output.splitlines(keepends=True):
        parser.feed(line)
    parser.finish()
    return sink.events


COMPLETE_RUN_FOOTER = """INSTRUMENTATION_RESULT: stream=
Time: 1.234

OK (2 tests)
INSTRUMENTATION_CODE: -1
"""


def test_passing_and_failing_tests() -> None:
    """Emits lifecycle events for a complete run."""
    output = "\n".join(
        [
            status(LOGIN_A, 1),
            status(LOGIN_A, 0),
            status(LOGIN_B, 1),
            status(
                LOGIN_B,
                -2,
                stack="java.lang.AssertionError: expected 1\n\tat com.example.LoginTest.testB(LoginTest.java:9)",
            ),
            COMPLETE_RUN_FOOTER,
        ]
    )

    events = parse(output)

    assert events == [
        RunStarted(run_name="com.example.app.test", test_count=2),
        TestStarted(test=LOGIN_A),
        TestEnded(test=LOGIN_A),
        TestStarted(test=LOGIN_B),
        TestFailed(
            test=LOGIN_B,
            trace="java.lang.AssertionError: expected 1\n"
            "\tat com.example.LoginTest.testB(LoginTest.java:9)",
        ),
        TestEnded(test=LOGIN_B),
        RunEnded(elapsed=1234),
    ]


def test_error_ignored_and_assumption_codes() -> None:
    """Maps every terminal status code to its event."""
    tests = [
        TestIdentifier(class_name="C", method_name=name)
        for name in ("errors", "ignored", "assumes")
    ]
    output = "\n".join(
        [
            status(tests[0], 1, numtests=3),
            status(tests[0], -1, numtests=3, stack="java.lang.NullPointerException"),
            status(tests[1], 1, numtests=3),
            status(tests[1], -3, numtests=3),
            status(tests[2], 1, numtests=3),
            status(tests[2], -4, numtests=3, stack="AssumptionViolatedException"),
            COMPLETE_RUN_FOOTER,
        ]
    )

    events = parse(output)

    assert TestFailed(test=tests[0], trace="java.lang.NullPointerException", error=True) in events
    assert TestIgnored(test=tests[1]) in events
    assert TestAssumptionFailure(test=tests[2], trace="AssumptionViolatedException") in events
    assert not any(isinstance(e, RunFailed) for e in events)


def test_in_progress_status_is_ignored() -> None:
    """Does not emit events for in-progress status reports."""
    output = "\n".join(
        [
            status(LOGIN_A, 1, numtests=1),
            status(LOGIN_A, 2, numtests=1),
            status(LOGIN_A, 0, numtests=1),
            COMPLETE_RUN_FOOTER,
        ]
    )

    assert [type(e) for e in parse(output)] == [
        RunStarted,
        TestStarted,
        TestEnded,
        RunEnded,
    ]


def test_metrics_are_passed_on_test_ended() -> None:
    """Reports extra status keys as test metrics."""
    output = "\n".join(
        [
            status(LOGIN_A, 1, numtests=1),
            status(LOGIN_A, 0, numtests=1, frame_time="16"),
            COMPLETE_RUN_FOOTER,
        ]
    )

    ended = [e for e in parse(output) if isinstance(e, TestEnded)]

    assert ended == [TestEnded(test=LOGIN_A, metrics={"frame_time": "16"})]


def test_process_crash_reports_run_failure() -> None:
    """Reports a run failure when the app crashes mid-run."""
    output = "\n".join(
        [
            status(LOGIN_A, 1),
            "INSTRUMENTATION_RESULT: shortMsg=Process crashed.",
            "INSTRUMENTATION_CODE: 0",
        ]
    )

    events = parse(output)

    assert RunFailed(message="Instrumentation run failed due to 'Process crashed.'") in events
    assert isinstance(events[-1], RunEnded)
    assert not any(isinstance(e, TestEnded) for e in events)


def test_truncated_output_reports_incomplete_run() -> None:
    """Reports a run failure when the output stops without a result code."""
    events = parse(status(LOGIN_A, 1) + "\n" + status(LOGIN_A, 0))

    failures = [e for e in events if isinstance(e, RunFailed)]
    assert len(failures) == 1
    assert "ended after 1 of 2 tests" in failures[0].message


def test_missing_tests_report_failure() -> None:
    """Reports a run failure when fewer tests completed than announced."""
    events = parse(
        "\n".join([status(LOGIN_A, 1), status(LOGIN_A, 0), COMPLETE_RUN_FOOTER])
    )

    assert RunFailed(
        message="Test run failed to complete. Expected 2 tests, received 1"
    ) in events


def test_instrumentation_failed_without_output() -> None:
    """Starts and fails an empty run when instrumentation cannot start."""
    events = parse(
        "INSTRUMENTATION_FAILED: com.example.app.test/androidx.test.runner.AndroidJUnitRunner\n"
    )

    assert events == [
        RunStarted(run_name="com.example.app.test", test_count=0),
        RunFailed(
            message="Instrumentation run failed: "
            "com.example.app.test/androidx.test.runner.AndroidJUnitRunner"
        ),
        RunEnded(elapsed=0),
    ]


def test_finish_is_idempotent() -> None:
    """Reports the end of the run only once."""
    sink = RecordingSink()
    parser = InstrumentationResultParser("suite", sink)
    output = "\n".join(
        [status(LOGIN_A, 1, numtests=1), status(LOGIN_A, 0, numtests=1), COMPLETE_RUN_FOOTER]
    )
    for line in output.splitlines():
        parser.feed(line)
    parser.finish()
    parser.finish()

    assert sum(isinstance(e, RunEnded) for e in sink.events) == 1
