"""Attribution of device log output to the test that was running."""

import logging
import threading
from collections import deque
from collections.abc import Mapping, Sequence

from fleet_test_runner.models.result import LogEntry, TestIdentifier

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES_PER_TEST = 5000


class PerTestLogCapture:
    """Buffers the device log for the currently running test.

    Only failing tests keep their logs: when a test fails its buffer is copied
    into the retained collection, otherwise it is discarded when the next test
    starts. Entries that arrive while no test is running are dropped.

    The log reader delivers batches on its own thread or task, so every access
    to the open buffer happens under ``_lock``.
    """

    def __init__(self, max_entries_per_test: int = DEFAULT_MAX_ENTRIES_PER_TEST):
        self._max_entries = max_entries_per_test
        self._lock = threading.Lock()
        self._current: TestIdentifier | None = None
        self._buffer: deque[LogEntry] | None = None
        self._retained: dict[TestIdentifier, tuple[LogEntry, ...]] = {}

    def on_test_started(self, test: TestIdentifier) -> None:
        log.debug("Opening log buffer for %s", test)
        with self._lock:
            self._current = test
            self._buffer = deque(maxlen=self._max_entries)

    def on_log_entries(self, batch: Sequence[LogEntry]) -> None:
        with self._lock:
            if self._buffer is None:
                return
            self._buffer.extend(batch)

    def on_test_failed(self, test: TestIdentifier) -> None:
        with self._lock:
            if self._buffer is None:
                log.debug("No open log buffer for failed test %s", test)
                return
            if self._current != test:
                log.debug(
                    "Failed test %s does not own the open log buffer (%s)",
                    test,
                    self._current,
                )
                return
            self._retained[test] = tuple(self._buffer)

    def on_test_ended(self, test: TestIdentifier) -> None:
        with self._lock:
            if self._current == test:
                self._current = None
                self._buffer = None

    def retained_logs(self) -> Mapping[TestIdentifier, Sequence[LogEntry]]:
        """Return and clear the logs retained for failing tests."""
        with self._lock:
            retained, self._retained = self._retained, {}
        return retained
