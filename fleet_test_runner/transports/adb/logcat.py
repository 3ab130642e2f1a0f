"""Reading and parsing of the device log in ``threadtime`` format."""

import asyncio
import codecs
import logging
import re
from collections.abc import Sequence

from fleet_test_runner.events import LogSink
from fleet_test_runner.models.result import LogEntry

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

_THREADTIME_PATTERN = re.compile(
    r"^(?P<timestamp>\d\d-\d\d \d\d:\d\d:\d\d\.\d+)\s+"
    r"(?P<pid>\d+)\s+(?P<tid>\d+)\s+"
    r"(?P<level>[VDIWEFA])\s+"
    r"(?P<tag>.*?)\s*: ?(?P<message>.*)$"
)


def parse_logcat_line(line: str) -> LogEntry | None:
    """Parse a single ``logcat -v threadtime`` line.

    Returns None for lines that are not log entries, such as the
    ``--------- beginning of main`` separators.
    """
    match = _THREADTIME_PATTERN.match(line.rstrip("\r\n"))
    if match is None:
        return None
    return LogEntry(
        timestamp=match["timestamp"],
        level=match["level"],
        pid=int(match["pid"]),
        tid=int(match["tid"]),
        tag=match["tag"],
        message=match["message"],
    )


def parse_logcat_lines(lines: Sequence[str]) -> Sequence[LogEntry]:
    return [entry for line in lines if (entry := parse_logcat_line(line)) is not None]


async def pump_logcat(stream: asyncio.StreamReader, sink: LogSink) -> None:
    """Deliver the log stream to ``sink`` in batches until it closes.

    Every chunk read from the stream becomes one batch; a partial trailing
    line is held back until the rest of it arrives.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while chunk := await stream.read(READ_CHUNK_SIZE):
        lines = (pending + decoder.decode(chunk)).split("\n")
        pending = lines.pop()
        if batch := parse_logcat_lines(lines):
            sink.on_log_entries(batch)
    if pending and (entry := parse_logcat_line(pending)) is not None:
        sink.on_log_entries([entry])
    log.debug("Log stream closed")
