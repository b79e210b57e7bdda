"""
CNC Streaming Module - Sending G-code programs under backpressure.

A FileStreamer reads a program incrementally and only hands the credit
manager as many lines as it asks for. A transfer is finished once both the
credit manager reports every line sent and the machine reports stop or end;
an alarm ends it at once with an error.
"""

import codecs
import logging
import os
import re
from collections import deque
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Deque, Optional

from cnc_core import MachineState, as_state
from cnc_events import EventEmitter, EventKind
from cnc_flow import CreditManager
from cnc_protocol import LINEPAT, AlarmError, CNCError

READ_CHUNK_SIZE = 4 * 1024  # characters per read

NUMBERPAT = re.compile(r"^\s*[nN]([0-9]+)\s*")


class StreamState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


class FileStreamer:
    """
    One program transfer.

    The source is either a path, opened (and closed) by the streamer, or a
    file-like object whose read(size) returns text or bytes. A read that
    returns None means nothing is buffered yet; call on_readable() when the
    source has more data. An empty read means end of stream.
    """

    def __init__(
        self,
        emitter: EventEmitter,
        credit: CreditManager,
        write: Callable[[str], None],
        source: Any,
        callback: Optional[Callable[[Optional[BaseException]], None]] = None,
        timed_sends_only: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the streamer.

        Args:
            emitter: Event emitter carrying NEED_LINES, DONE_SENDING and STATUS_CHANGED
            credit: Credit manager the lines end up in
            write: Callable used to submit each program line
            source: Path or file-like object holding the program
            callback: Called once with None on success or the failure
            timed_sends_only: Lines are paced by timecodes; no auto numbering,
                alarms do not end the transfer
            logger: Logger instance to use
        """
        self.emitter = emitter
        self.credit = credit
        self.write = write
        self.source = source
        self.callback = callback
        self.timed_sends_only = timed_sends_only
        self.logger = logger or logging.getLogger(__name__)

        self.state = StreamState.IDLE
        self.future: Future = Future()
        self.next_line_number = 1
        self.lines_read = 0

        self._owns_source = False
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._lines: Deque[str] = deque()
        self._need = 0
        self._in_read = False

        # completion conditions
        self._input_ended = False
        self._drained = False
        self._stop_or_end = False

        self._handlers = [
            (EventKind.NEED_LINES, self._on_need_lines),
            (EventKind.DONE_SENDING, self._on_done_sending),
            (EventKind.STATUS_CHANGED, self._on_status),
        ]

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.COMPLETED, StreamState.FAILED)

    def start(self) -> Future:
        """
        Begin the transfer.

        Returns:
            Future resolving to None on success or raising the failure
        """
        if self.state != StreamState.IDLE:
            raise CNCError("Stream already started")

        if isinstance(self.source, (str, os.PathLike)):
            self.logger.info(f"Opening {self.source} for streaming")
            self.source = open(self.source, "r", encoding="utf-8", newline="")
            self._owns_source = True

        for kind, handler in self._handlers:
            self.emitter.on(kind, handler)

        self.state = StreamState.STREAMING
        self._need = 1
        self._read_lines()
        if not self.finished:
            self.credit.drain()
        return self.future

    def on_readable(self) -> None:
        """Resume reading after the source reported more data."""
        self._read_lines()

    def cancel(self, error: BaseException) -> None:
        """End the transfer with an error (e.g. the connection closed)."""
        self._finish(error)

    def _on_need_lines(self, n: int) -> None:
        self._need = n
        self._read_lines()

    def _read_lines(self) -> None:
        if self._in_read or self.state != StreamState.STREAMING:
            return

        self._in_read = True
        try:
            while self.state == StreamState.STREAMING:
                # read ahead until a line is buffered, so end of input is
                # noticed as soon as the last line has been handed over
                if not self._lines:
                    if self._input_ended or not self._fill():
                        break
                    continue
                if self._need <= 0:
                    break
                line = self._lines.popleft()
                # count before writing: the write may ask for more lines
                self._need -= 1
                self.write(line)

            if self._input_ended and not self._lines and self.state == StreamState.STREAMING:
                self._mark_input_done()
        finally:
            self._in_read = False

    def _fill(self) -> bool:
        data = self.source.read(READ_CHUNK_SIZE)
        if data is None:
            return False

        if not data:
            if isinstance(data, (bytes, bytearray)):
                self._buffer += self._utf8.decode(b"", final=True)
            self._end_input()
            return True

        if isinstance(data, (bytes, bytearray)):
            # may be empty while a multi-byte character is incomplete
            data = self._utf8.decode(bytes(data))

        self._buffer += data
        parts = LINEPAT.split(self._buffer)
        self._buffer = parts.pop()
        for part in parts:
            self._add_line(part)
        return True

    def _add_line(self, line: str) -> None:
        if not line.strip():
            return

        if not self.timed_sends_only:
            match = NUMBERPAT.match(line)
            if match:
                self.next_line_number = max(self.next_line_number, int(match.group(1)) + 1)
            else:
                line = f"N{self.next_line_number} {line.lstrip()}"
                self.next_line_number += 1

        self.lines_read += 1
        self._lines.append(line)

    def _end_input(self) -> None:
        if self._buffer:
            self._add_line(self._buffer)
            self._buffer = ""
        self._input_ended = True
        self._close_source()
        self.logger.debug(f"End of program input after {self.lines_read} lines")

    def _mark_input_done(self) -> None:
        self.state = StreamState.DRAINING
        self.credit.set_done_reading(True)

    def _force_end_of_input(self) -> None:
        self.logger.info("Program end reported before all lines were sent")
        self._lines.clear()
        self._buffer = ""
        self._input_ended = True
        self._close_source()
        if self.state == StreamState.STREAMING:
            self._mark_input_done()

    def _on_done_sending(self, _payload=None) -> None:
        self._drained = True
        self._check_finished()

    def _on_status(self, sr: dict) -> None:
        stat = as_state(sr.get("stat"))
        if stat is None:
            return

        if stat in (MachineState.STOP, MachineState.END):
            if stat == MachineState.END and not self._drained:
                self._force_end_of_input()
            self._stop_or_end = True
            self._check_finished()
        elif stat == MachineState.ALARM:
            if not self.timed_sends_only:
                self._finish(AlarmError(f"Machine alarm at line {sr.get('line', '?')}", sr))
        elif stat in (MachineState.HOLD, MachineState.RUN):
            self._stop_or_end = False

    def _check_finished(self) -> None:
        if self._drained and self._stop_or_end:
            self._finish(None)

    def _close_source(self) -> None:
        if self._owns_source and self.source is not None:
            self.source.close()

    def _finish(self, error: Optional[BaseException]) -> None:
        if self.finished:
            return

        for kind, handler in self._handlers:
            self.emitter.off(kind, handler)

        self.credit.set_done_reading(False)
        self.credit.annotator.reset()
        self.next_line_number = 1
        self._lines.clear()
        self._close_source()

        if error is None:
            self.state = StreamState.COMPLETED
            self.logger.info(f"Program transfer complete ({self.lines_read} lines)")
            if not self.future.done():
                self.future.set_result(None)
        else:
            self.state = StreamState.FAILED
            self.logger.error(f"Program transfer failed: {error}")
            if not self.future.done():
                self.future.set_exception(error)

        if self.callback:
            self.callback(error)
