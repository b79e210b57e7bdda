"""
CNC Flow Module - Send pacing against the controller's line buffer.

The controller can only hold a limited number of lines. The CreditManager
keeps the outbound queue and a credit counter of how many more lines the
controller will accept, and only writes while credit remains.
"""

import logging
import re
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Set

from cnc_core import GCodeAnnotator
from cnc_events import EventEmitter, EventKind, Response

# Regular expressions for timed sends
TIMECODEPAT = re.compile(r"^(N[0-9]+\s*)?\[\[([GC])([0-9]+)\]\](.*)")
HEXESCAPEPAT = re.compile(r"\\x([0-9a-fA-F]+)")

# Lowest credit an availability report may leave us with: -1 means
# "wait for two acknowledgements before sending again"
MIN_CREDIT = -1


def ensure_newline(line: str) -> str:
    if line.endswith(("\n", "\r")):
        return line
    return line + "\n"


class CreditManager:
    """
    Outbound line queue plus send credit.

    Lines are written strictly in the order they were enqueued. drain()
    writes while credit is positive, then either signals DONE_SENDING (end
    of input reached and queue empty, once per session) or NEED_LINES with
    the number of lines the queue is short of the available credit.
    """

    def __init__(
        self,
        emitter: EventEmitter,
        writer: Callable[[str], bool],
        annotator: Optional[GCodeAnnotator] = None,
        packet_mode: bool = False,
        timed_sends_only: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the credit manager.

        Args:
            emitter: Event emitter used for SENT_LINE, NEED_LINES and DONE_SENDING
            writer: Callable that hands one line to the transport, False on failure
            annotator: Annotator applied to every written line
            packet_mode: Single-channel mode where credit comes from ``rx`` reports
            timed_sends_only: Credit is only granted by the timed-send scheduler
            logger: Logger instance to use
        """
        self.emitter = emitter
        self.writer = writer
        self.annotator = annotator or GCodeAnnotator(emitter)
        self.packet_mode = packet_mode
        self.timed_sends_only = timed_sends_only
        self.logger = logger or logging.getLogger(__name__)

        self.queue: Deque[str] = deque()
        self.credit = 0
        self.ignored_responses = 0
        self.done_reading = False
        self._done_sent = False
        self._draining = False
        self._drain_requested = False

    def reset(self, credit: int = 0) -> None:
        """Drop queued lines and session flags and start over with the given credit."""
        self.queue.clear()
        self.credit = credit
        self.ignored_responses = 0
        self.done_reading = False
        self._done_sent = False
        self._drain_requested = False
        self.annotator.reset()

    def enqueue(self, line: str) -> None:
        self.queue.append(ensure_newline(line))
        self.drain()

    def note_out_of_band(self) -> None:
        """Account for a write whose acknowledgement must not count as credit."""
        self.ignored_responses += 1

    def grant(self, lines: int) -> None:
        self.credit += lines
        self.drain()

    def set_done_reading(self, done: bool) -> None:
        """
        Flag that the producer has no more lines for this session.

        Setting the flag drains, so DONE_SENDING fires as soon as the queue is
        empty. Clearing it re-arms DONE_SENDING for the next session.
        """
        self.done_reading = done
        if done:
            self.drain()
        else:
            self._done_sent = False

    def on_response(self, response: Response) -> None:
        """Replenish credit from one acknowledged response."""
        body = response.body
        if self.packet_mode and isinstance(body, dict) and "rx" in body:
            if self.ignored_responses > 0:
                self.ignored_responses -= 1
            if not self.timed_sends_only:
                try:
                    self.credit = max(int(body["rx"]) - 1, MIN_CREDIT)
                except (TypeError, ValueError):
                    self.logger.warning(f"Ignoring unusable rx report: {body['rx']!r}")
                    return
        elif self.ignored_responses > 0:
            self.ignored_responses -= 1
            return
        elif not self.timed_sends_only:
            self.credit += 1

        self.logger.debug(f"Send credit now {self.credit}, {len(self.queue)} queued")

        if not self.timed_sends_only and self.credit > 0:
            self.drain()

    def on_resume(self) -> None:
        self.drain()

    def drain(self) -> None:
        """
        Write queued lines while credit remains, then report.

        A drain requested while one is already running (from inside one of
        its own event handlers) is folded into the running one.
        """
        if self._draining:
            self._drain_requested = True
            return

        self._draining = True
        try:
            while True:
                self._drain_requested = False
                self._write_lines()
                if not self._drain_requested:
                    break
        finally:
            self._draining = False

    def _write_lines(self) -> None:
        while self.queue and self.credit > 0:
            line = self.queue.popleft()
            if self.writer(line) is False:
                self.queue.appendleft(line)
                self.logger.warning(f"Write failed, {len(self.queue)} lines kept queued")
                return
            self.credit -= 1
            annotated = self.annotator.annotate(line)
            self.emitter.emit(EventKind.SENT_LINE, annotated.line)

        if self.done_reading:
            if not self.queue and not self._done_sent:
                self._done_sent = True
                self.logger.info("All queued lines sent")
                self.emitter.emit(EventKind.DONE_SENDING)
        elif len(self.queue) < self.credit:
            self.emitter.emit(EventKind.NEED_LINES, self.credit - len(self.queue))


class _Timecode:
    def __init__(self, lines: int = 0, fired: bool = False):
        self.lines = lines
        self.fired = fired
        self.timer = None


class TimedSendScheduler:
    """
    Release credit at the times embedded in timed lines.

    A timed line looks like ``N12 [[G1500]]G1 X1``: it may be sent 1500 ms
    after the first timed line of the session. Untimed lines are released
    together with the preceding timed line, or with the next one if that
    timer already fired. All timing state belongs to this scheduler, so two
    connections never share a reference point.
    """

    def __init__(
        self,
        release: Callable[[int], None],
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable = threading.Timer,
        logger: Optional[logging.Logger] = None,
    ):
        self.release = release
        self.clock = clock
        self.timer_factory = timer_factory
        self._timers_lock = threading.Lock()
        self.logger = logger or logging.getLogger(__name__)
        self.reset()

    def reset(self) -> None:
        self._previous = _Timecode()
        self._start_timecode: Optional[int] = None
        self._start_time = 0.0
        self._timers: Set = set()

    @property
    def pending(self) -> int:
        """Number of timers that have not fired yet."""
        return len(self._timers)

    def cancel(self) -> None:
        with self._timers_lock:
            timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        self.reset()

    def prepare(self, value: str) -> str:
        """
        Schedule a line and return the text to queue.

        Args:
            value: Line as written by the caller

        Returns:
            The line without its timecode and with ``\\xNN`` escapes expanded
        """
        match = TIMECODEPAT.match(value)
        if match:
            line_num = match.group(1) or ""
            timecode = int(match.group(3))
            value = line_num + match.group(4)

            entry = _Timecode(
                lines=1 + (self._previous.lines if self._previous.fired else 0)
            )

            if self._start_timecode is None:
                self._start_timecode = timecode
                self._start_time = self.clock()

            elapsed_ms = (self.clock() - self._start_time) * 1000.0
            delay_ms = (timecode - self._start_timecode) - elapsed_ms
            self._previous = entry

            timer = self.timer_factory(max(delay_ms, 0.0) / 1000.0, self._fire, args=(entry,))
            timer.daemon = True
            entry.timer = timer
            with self._timers_lock:
                self._timers.add(timer)
            timer.start()
        else:
            self._previous.lines += 1

        return HEXESCAPEPAT.sub(lambda m: chr(int(m.group(1), 16)), value)

    def _fire(self, entry: _Timecode) -> None:
        with self._timers_lock:
            self._timers.discard(entry.timer)
        lines = entry.lines
        entry.lines = 0
        entry.fired = True
        self.logger.debug(f"Timed release of {lines} line(s)")
        self.release(lines)
