"""
CNC Protocol Module - Wire framing and error taxonomy.

This module turns the raw byte stream coming back from the controller into
text lines and structured records, and defines the errors the driver reports.
"""

import codecs
import json
import logging
import re
from typing import Any, List, Optional, Union

import json5

from cnc_events import EventEmitter, EventKind, Response

# Regular expressions for framing
LINEPAT = re.compile(r"[\r\n]+")
XONXOFFPAT = re.compile(r"[\x11\x13]")

# Footer status codes
FOOTER_OK = 0
FOOTER_INTERNAL_ERROR = 20
FOOTER_SYNTAX_ERROR = 108
FOOTER_MOVE_TOO_SHORT = 202


class CNCError(Exception):
    """Base exception class for CNC-related errors."""

    def __init__(self, message: str = "", data: Any = None):
        super().__init__(message)
        self.data = data


class DecodeError(CNCError):
    """A line that looked like a structured record could not be parsed."""

    def __init__(self, text: str, cause: Exception):
        super().__init__(f"Error {cause} parsing {text!r}", {"part": text, "e": cause})
        self.text = text
        self.cause = cause


class DeviceError(CNCError):
    """The controller reported a non-zero status code in a response footer."""

    def __init__(self, message: str, record: Any = None, footer: Optional[List[int]] = None):
        super().__init__(message, record)
        self.record = record
        self.footer = footer

    @property
    def code(self) -> Optional[int]:
        if self.footer and len(self.footer) > 1:
            return self.footer[1]
        return None


class DeviceSyntaxError(DeviceError):
    """Footer code 108."""


class DeviceInternalError(DeviceError):
    """Footer code 20."""


class DeviceMoveTooShortError(DeviceError):
    """Footer code 202."""


class DeviceGenericError(DeviceError):
    """Any other non-zero footer code."""


class TransportError(CNCError):
    """The serial channel failed; the connection is probably unusable."""


class AlarmError(CNCError):
    """The machine entered the alarm state."""


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _byte_count(footer: List[int]) -> Any:
    return footer[2] if len(footer) > 2 else "?"


def classify_footer(body: Any, footer: Optional[List[int]]) -> Optional[DeviceError]:
    """
    Map a response footer to the matching error.

    Args:
        body: Inner response object (used in the message and attached to the error)
        footer: ``[category, code, byteCount]`` triplet

    Returns:
        A DeviceError subclass instance, or None when the code is 0
    """
    if not isinstance(footer, (list, tuple)) or len(footer) < 2:
        return None

    code = footer[1]
    if code == FOOTER_OK:
        return None

    if code == FOOTER_SYNTAX_ERROR:
        return DeviceSyntaxError(
            f"Controller reported a syntax error reading '{_dumps(body)}': {code} "
            f"(based on {_byte_count(footer)} bytes read)",
            body,
            footer,
        )
    if code == FOOTER_INTERNAL_ERROR:
        return DeviceInternalError(
            f"Controller reported an internal error reading '{_dumps(body)}': {code} "
            f"(based on {_byte_count(footer)} bytes read)",
            body,
            footer,
        )
    if code == FOOTER_MOVE_TOO_SHORT:
        line = body.get("n") if isinstance(body, dict) else None
        return DeviceMoveTooShortError(
            f"Controller reported a move too short on line {line}", body, footer
        )
    return DeviceGenericError(
        f"Controller reported an error reading '{_dumps(body)}': {code} "
        f"(based on {_byte_count(footer)} bytes read)",
        body,
        footer,
    )


def _shape_problem(footer: Any, record: dict) -> Optional[str]:
    if footer is not None and not isinstance(footer, (list, tuple)):
        return "footer is not a list"
    for key in ("er", "sr"):
        if key in record and not isinstance(record[key], dict):
            return f"{key} is not an object"
    return None


def encode_record(value: Any) -> str:
    """
    Serialize a value to one newline-terminated structured record.

    Args:
        value: JSON-serializable value (None becomes null)

    Returns:
        Record text ending in a newline
    """
    return _dumps(value) + "\n"


class FrameDecoder:
    """
    Incremental decoder for the controller's output stream.

    Chunks of any size are fed in; complete lines are emitted as DATA events
    and lines starting with ``{`` are further decoded into RESPONSE,
    STATUS_CHANGED, ERROR_REPORT, GCODE_RECEIVED and RX_RECEIVED events.
    Decoding problems are reported as ERROR events, never raised.
    """

    def __init__(self, emitter: EventEmitter, logger: Optional[logging.Logger] = None):
        self.emitter = emitter
        self.logger = logger or logging.getLogger(__name__)
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Partial line held back until its terminator arrives."""
        return self._buffer

    def reset(self) -> None:
        self._buffer = ""
        self._utf8.reset()

    def feed(self, chunk: Union[bytes, str]) -> None:
        """
        Append a chunk and process every complete line in the buffer.

        Args:
            chunk: Raw bytes from the transport, or already-decoded text
        """
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))

        self._buffer += chunk
        parts = LINEPAT.split(self._buffer)
        self._buffer = parts.pop()

        for part in parts:
            self._handle_line(part)

    def _handle_line(self, line: str) -> None:
        line = XONXOFFPAT.sub("", line)
        if not line.strip():
            return

        self.logger.debug(f"Line received: {line!r}")
        self.emitter.emit(EventKind.DATA, line)

        if line[0] == "{":
            self._handle_record(line)

    def _handle_record(self, text: str) -> None:
        try:
            record = json5.loads(text)
        except ValueError as e:
            self.logger.warning(f"Dropping malformed record {text!r}: {e}")
            self.emitter.emit(EventKind.ERROR, DecodeError(text, e))
            return

        if not isinstance(record, dict):
            self.emitter.emit(
                EventKind.ERROR,
                DecodeError(text, ValueError("record is not an object")),
            )
            return

        if "r" in record:
            body = record["r"]
            # Some firmware builds nest the footer inside the response body
            footer = record.get("f")
            if footer is None and isinstance(body, dict):
                footer = body.get("f")
            problem = _shape_problem(footer, body if isinstance(body, dict) else {})
        else:
            footer = None
            problem = _shape_problem(None, record)

        if problem is not None:
            self.logger.warning(f"Dropping malformed record {text!r}: {problem}")
            self.emitter.emit(EventKind.ERROR, DecodeError(text, ValueError(problem)))
            return

        if "r" in record:
            body = record["r"]
            error = classify_footer(body, footer)
            if error is not None:
                self.logger.error(str(error))
                self.emitter.emit(EventKind.ERROR, error)

            self.emitter.emit(EventKind.RESPONSE, Response(body, footer))
            record = body if isinstance(body, dict) else {}

        if "er" in record:
            self.emitter.emit(EventKind.ERROR_REPORT, record["er"])
        elif "sr" in record:
            self.emitter.emit(EventKind.STATUS_CHANGED, record["sr"])
        elif "gc" in record:
            self.emitter.emit(EventKind.GCODE_RECEIVED, record["gc"])

        if "rx" in record:
            self.emitter.emit(EventKind.RX_RECEIVED, record["rx"])
