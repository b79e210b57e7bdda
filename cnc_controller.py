"""
CNC Controller Module - Main controller for CNC machine communication.

This module provides the Controller class that owns the connection to one
motion controller: it opens the serial channel(s), decodes what the machine
sends back, paces outbound lines, correlates configuration requests and
streams programs.
"""

import logging
import re
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

from cnc_core import GCodeAnnotator, MachineState, MachineStatus
from cnc_events import (
    CHANNEL_CONTROL,
    CHANNEL_DATA,
    EventEmitter,
    EventKind,
    Response,
    SentRaw,
)
from cnc_flow import CreditManager, TimedSendScheduler, ensure_newline
from cnc_protocol import (
    AlarmError,
    CNCError,
    FrameDecoder,
    TransportError,
    encode_record,
)
from cnc_requests import RequestCorrelator
from cnc_streaming import FileStreamer
from cnc_utils import DeviceInfo, list_controllers
from communication.serial_stream import DEFAULT_BAUD_RATE, SerialStream, SerialStreamError

# Constants
STREAM_POLL = 0.01  # seconds between reads when idle
DATA_CHANNEL_CREDIT = 1000  # lines; the data channel relies on RTS/CTS

# Configuration issued after opening
SETUP_COMMANDS = [{"jv": 4}, {"ex": 2}, {"qv": 2}]
PACKET_MODE_COMMAND = {"rxm": 1}

# Regular expressions for write routing
SPECIALPAT = re.compile(r"^[{}!~%\x03\x04]$")
NORESPONSEPAT = re.compile(r"^[!~%\x03\x04]$")
CONTROLPAT = re.compile(r"^(N[0-9]+\s*)?[{}!~\x01-\x19]")
CLEARPAT = re.compile(r"^(N[0-9]+\s*)?{\s*(clr|clear)\s*:\s*n(ull)?\s*}")


class ControllerError(CNCError):
    """Base exception for controller errors."""

    pass


@dataclass
class ConnectionOptions:
    """Options accepted by Controller.open()."""

    data_port_path: Optional[str] = None
    baud_rate: int = DEFAULT_BAUD_RATE
    rtscts: bool = True
    timed_sends_only: bool = False
    setup: bool = True
    threaded: bool = True


class Controller(EventEmitter):
    """
    Main CNC controller class.

    Subscribe to EventKind notifications with on()/once()/off(). All protocol
    state is guarded by one re-entrant lock, so events are delivered on the
    reader thread (or the thread calling poll()/feed()) one at a time, and
    handlers may call write()/set() directly.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        stream_factory: Callable[[], Any] = SerialStream,
        timer_factory: Callable = threading.Timer,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the controller.

        Args:
            logger: Logger instance to use, creates new one if None
            stream_factory: Creates one serial channel (SerialStream by default)
            timer_factory: threading.Timer compatible factory for timed sends
            clock: Monotonic clock in seconds for timed sends
        """
        super().__init__()
        self.logger = logger or logging.getLogger(__name__)
        self.stream_factory = stream_factory

        self.control_stream = None
        self.data_stream = None
        self.options = ConnectionOptions()

        self.status = MachineStatus(self.logger)
        self.decoder = FrameDecoder(self, self.logger)
        self.data_decoder = FrameDecoder(self, self.logger)
        self.annotator = GCodeAnnotator(self)
        self.credit = CreditManager(self, self._write, self.annotator, logger=self.logger)
        self.requests = RequestCorrelator(self, self.write, self.logger)
        self.scheduler = TimedSendScheduler(
            self._release_timed, clock=clock, timer_factory=timer_factory, logger=self.logger
        )
        self.file_stream: Optional[FileStreamer] = None

        self._lock = threading.RLock()
        self._ready: Optional[Future] = None
        self._handlers = [
            (EventKind.RESPONSE, self._on_response),
            (EventKind.STATUS_CHANGED, self._on_status_changed),
        ]

        # Threading
        self.thread = None
        self.stop_event = threading.Event()

    @property
    def packet_mode(self) -> bool:
        return self.control_stream is not None and self.data_stream is None

    def is_connected(self) -> bool:
        """
        Check if connected to the controller.

        Returns:
            True if connected, False otherwise
        """
        return self.control_stream is not None

    def open(self, path: str, **options) -> Future:
        """
        Connect to a controller.

        Args:
            path: Command channel device path (e.g. '/dev/ttyACM0')
            **options: ConnectionOptions fields (data_port_path, baud_rate,
                rtscts, timed_sends_only, setup, threaded)

        Returns:
            Future resolving to the setup outcomes (list of SetOutcome) once
            the OPEN event has been emitted

        Raises:
            ControllerError: If already open or the channel cannot be opened
        """
        with self._lock:
            if self.control_stream is not None:
                raise ControllerError(
                    f"Unable to open controller at '{path}' -- controller already open."
                )

            self.options = ConnectionOptions(**options)
            self.logger.info(f"Attempting connection to {path}")

            control = self._open_stream(path)
            data = None
            if self.options.data_port_path:
                try:
                    data = self._open_stream(self.options.data_port_path)
                except ControllerError:
                    control.close()
                    raise

            self.control_stream = control
            self.data_stream = data
            self.logger.debug(
                f"Connection details: data channel={self.options.data_port_path}, "
                f"packet mode={self.packet_mode}, timed sends={self.options.timed_sends_only}"
            )

            ready = self._complete_open()

        if self.options.threaded:
            self._start_stream_thread()
        return ready

    def open_first(self, fail_if_more: bool = False, **options) -> Future:
        """
        Open the first controller found on the system.

        Args:
            fail_if_more: Raise instead of picking the first of several controllers
            **options: Passed on to open()

        Raises:
            ControllerError: If no controller (or, with fail_if_more, more than one) is found
        """
        results = self.list()

        if len(results) == 1 or (not fail_if_more and results):
            first = results[0]
            if first.data_port_path:
                options.setdefault("data_port_path", first.data_port_path)
            return self.open(first.path, **options)

        if results:
            text = "Autodetect found multiple controllers:\n"
            for item in results:
                if item.data_port_path:
                    text += f"\tFound command port: '{item.path}' with data port '{item.data_port_path}'\n"
                else:
                    text += f"\tFound port: '{item.path}'\n"
            raise ControllerError(text, results)

        raise ControllerError("Autodetect found no connected controllers.")

    def list(self) -> List[DeviceInfo]:
        return list_controllers()

    def close(self, error: Optional[BaseException] = None) -> bool:
        """
        Disconnect from the controller.

        Queued lines are dropped, a running program transfer and any
        outstanding requests fail with TransportError, and CLOSE is emitted.

        Args:
            error: Reason passed along with the CLOSE event

        Returns:
            True if disconnection successful
        """
        self._stop_stream_thread()

        with self._lock:
            if self.control_stream is None:
                return True

            for kind, handler in self._handlers:
                self.off(kind, handler)
            self.requests.detach()
            self.scheduler.cancel()

            ok = True
            for stream in (self.data_stream, self.control_stream):
                if stream is not None:
                    ok = stream.close() and ok
            self.control_stream = None
            self.data_stream = None

            closed = TransportError("Connection closed")
            if self.file_stream is not None and not self.file_stream.finished:
                self.file_stream.cancel(closed)
            self.file_stream = None
            self.requests.fail_all(closed)

            self.credit.reset()
            self.decoder.reset()
            self.data_decoder.reset()
            self.logger.info("Disconnected from controller")
            self.emit(EventKind.CLOSE, error)
        return ok

    def write(self, value: Any) -> None:
        """
        Send a line or a structured record.

        Strings are queued and paced by send credit. Records (non-strings) and
        single control characters bypass the queue.

        Args:
            value: G-code line, control character, or JSON-serializable record

        Raises:
            ControllerError: If not connected
        """
        with self._lock:
            if self.control_stream is None:
                raise ControllerError("Not connected to controller")

            if self.options.timed_sends_only and isinstance(value, str):
                value = self.scheduler.prepare(value)
            elif not isinstance(value, str) or SPECIALPAT.match(value):
                # single-character commands get no response
                if self._write(value) and (not isinstance(value, str) or not NORESPONSEPAT.match(value)):
                    self.credit.note_out_of_band()
                return

            self.credit.enqueue(value)

    def set(self, key, value: Any = None) -> Future:
        """
        Write configuration values; see RequestCorrelator.set().

        Returns:
            Future resolving to the echoed value (single key) or a list of
            SetOutcome (mapping or list of mappings)
        """
        with self._lock:
            return self.requests.set(key, value)

    def get(self, key: str) -> Future:
        """Read one configuration value."""
        with self._lock:
            return self.requests.get(key)

    def write_with_result(self, data: Any, predicate: Optional[Callable[[Any], bool]] = None) -> Future:
        """Write and wait for a response or status report; see RequestCorrelator."""
        with self._lock:
            return self.requests.write_with_result(data, predicate)

    def send_file(self, source: Any, callback: Optional[Callable] = None) -> Future:
        """
        Stream a G-code program.

        Args:
            source: Path or file-like object
            callback: Called with None on success or the error

        Returns:
            Future resolving to None when the machine has finished the program

        Raises:
            ControllerError: If not connected or a transfer is already running
        """
        with self._lock:
            if self.control_stream is None:
                raise ControllerError("Not connected to controller")
            if self.file_stream is not None and not self.file_stream.finished:
                raise ControllerError("A program transfer is already running")

            self.file_stream = FileStreamer(
                self,
                self.credit,
                self.write,
                source,
                callback=callback,
                timed_sends_only=self.options.timed_sends_only,
                logger=self.logger,
            )
            return self.file_stream.start()

    def source_readable(self) -> None:
        """Tell a running transfer that its (non-blocking) source has more data."""
        with self._lock:
            if self.file_stream is not None:
                self.file_stream.on_readable()

    def feed(self, data: Union[bytes, str], channel: str = CHANNEL_CONTROL) -> None:
        """
        Process bytes received from the controller.

        Args:
            data: Raw chunk as read from the channel
            channel: CHANNEL_CONTROL or CHANNEL_DATA
        """
        with self._lock:
            if channel == CHANNEL_DATA:
                self.logger.warning(f"Unexpected data on data channel: {data!r}")
                self.data_decoder.feed(data)
            else:
                self.decoder.feed(data)

    def poll(self) -> bool:
        """
        Read once from each open channel and process what arrived.

        Returns:
            True if any data was received
        """
        received = False
        with self._lock:
            channels = [(self.control_stream, CHANNEL_CONTROL), (self.data_stream, CHANNEL_DATA)]
            for stream, channel in channels:
                if stream is None:
                    continue
                try:
                    if not stream.waiting_for_recv():
                        continue
                    data = stream.recv()
                except SerialStreamError as e:
                    self._transport_failed(e)
                    return received
                if data:
                    self.logger.debug(f"Raw data received: {data!r} ({len(data)} bytes)")
                    self.feed(data, channel)
                    received = True
        return received

    def _open_stream(self, address: str):
        stream = self.stream_factory()
        try:
            success = stream.open(address, self.options.baud_rate, self.options.rtscts)
        except SerialStreamError as e:
            self.logger.error(f"Connection failed with exception: {e}")
            raise ControllerError(f"Connection failed: {e}") from e
        if not success:
            raise ControllerError(f"Failed to connect to {address}")
        return stream

    def _complete_open(self) -> Future:
        timed = self.options.timed_sends_only
        self.status.reset()
        self.decoder.reset()
        self.data_decoder.reset()
        self.scheduler.reset()

        self.credit.packet_mode = self.packet_mode
        self.credit.timed_sends_only = timed
        self.credit.reset(DATA_CHANNEL_CREDIT if not self.packet_mode and not timed else 0)

        for kind, handler in self._handlers:
            self.on(kind, handler)
        self.requests.attach()

        ready: Future = Future()
        self._ready = ready

        if self.packet_mode:
            # ask for the free buffer count to seed the send credit
            self.write({"rx": None})

        if not self.options.setup:
            self.logger.info("Successfully connected to controller")
            self.emit(EventKind.OPEN)
            ready.set_result([])
            return ready

        commands = list(SETUP_COMMANDS)
        if self.packet_mode:
            commands.append(PACKET_MODE_COMMAND)
        self.set(commands).add_done_callback(self._setup_done)
        return ready

    def _setup_done(self, future: Future) -> None:
        ready = self._ready
        if ready is None or ready.done():
            return

        outcomes = future.result()
        if self.control_stream is None:
            ready.set_exception(ControllerError("Connection closed during setup"))
            return

        failed = [o.key for o in outcomes if not o.ok]
        if failed:
            self.logger.warning(f"Setup commands failed: {', '.join(failed)}")
        self.logger.info("Successfully connected to controller")
        self.emit(EventKind.OPEN)
        ready.set_result(outcomes)

    def _write(self, value: Any) -> bool:
        if self.control_stream is None:
            self.logger.warning(f"Dropping write while disconnected: {value!r}")
            return False

        if not isinstance(value, str):
            value = encode_record(value)
        value = ensure_newline(value)

        if self.data_stream is None or (CONTROLPAT.match(value) and not CLEARPAT.match(value)):
            stream, channel = self.control_stream, CHANNEL_CONTROL
        else:
            stream, channel = self.data_stream, CHANNEL_DATA

        try:
            stream.send(value)
        except SerialStreamError as e:
            self.logger.error(f"Write error on channel {channel}: {e}")
            self.emit(EventKind.ERROR, TransportError(f"Write error: {e}", e))
            return False

        self.logger.debug(f"Sent on {channel}: {value!r}")
        self.emit(EventKind.SENT_RAW, SentRaw(value, channel))
        return True

    def _release_timed(self, lines: int) -> None:
        with self._lock:
            if self.control_stream is not None:
                self.credit.grant(lines)

    def _on_response(self, response: Response) -> None:
        self.credit.on_response(response)

    def _on_status_changed(self, sr: dict) -> None:
        previous = self.status.state
        was_holding = self.status.in_hold
        stat = self.status.update(sr)

        if stat == MachineState.ALARM and previous != MachineState.ALARM:
            self.emit(
                EventKind.ERROR,
                AlarmError(f"Machine alarm at line {self.status.last_line}", sr),
            )
        elif was_holding and not self.status.in_hold:
            self.credit.on_resume()

    def _transport_failed(self, error: Exception) -> None:
        self.logger.error(f"Serial channel failed: {error}")
        failure = TransportError(f"SerialPort Error: {error}", error)
        self.emit(EventKind.ERROR, failure)
        self.close(failure)

    def _start_stream_thread(self) -> None:
        """Start the background stream I/O thread."""
        if self.thread is None or not self.thread.is_alive():
            self.stop_event.clear()
            self.thread = threading.Thread(target=self._stream_io_loop, daemon=True)
            self.thread.start()
            self.logger.debug("Started stream I/O thread")

    def _stop_stream_thread(self) -> None:
        """Stop the background stream I/O thread."""
        self.stop_event.set()
        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=2.0)
            self.logger.debug("Stopped stream I/O thread")
        self.thread = None

    def _stream_io_loop(self) -> None:
        """
        Background thread loop reading from the serial channels.

        Handler errors are logged and the loop keeps running; transport
        errors close the connection (see poll()).
        """
        self.logger.debug("Stream I/O loop started")

        while not self.stop_event.is_set():
            try:
                if not self.poll():
                    time.sleep(STREAM_POLL)
            except Exception as e:
                self.logger.error(f"Stream I/O error: {e}")
                time.sleep(0.1)

        self.logger.debug("Stream I/O loop ended")
