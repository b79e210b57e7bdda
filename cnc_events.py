"""
CNC Events Module - Publish/subscribe plumbing for the controller driver.

Every notification the driver produces is one of a closed set of event
kinds. Handlers receive exactly one payload argument whose type is fixed
per kind (see EventKind).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class EventKind(Enum):
    """
    Closed set of events emitted by the driver.

    Payload per kind:
        DATA: str, one decoded text line
        ERROR: CNCError instance
        RESPONSE: Response
        ERROR_REPORT: dict, the ``er`` object
        STATUS_CHANGED: dict, the ``sr`` object
        GCODE_RECEIVED: str, the ``gc`` echo
        RX_RECEIVED: int, free buffer slots reported by the device
        SENT_LINE: Optional[int], line number of the line just written
        SENT_RAW: SentRaw
        SENT_GCODE: AnnotatedLine
        NEED_LINES: int, how many more lines the sender can take
        DONE_SENDING: None
        OPEN: None
        CLOSE: Optional[Exception]
    """

    DATA = "data"
    ERROR = "error"
    RESPONSE = "response"
    ERROR_REPORT = "errorReport"
    STATUS_CHANGED = "statusChanged"
    GCODE_RECEIVED = "gcodeReceived"
    RX_RECEIVED = "rxReceived"
    SENT_LINE = "sentLine"
    SENT_RAW = "sentRaw"
    SENT_GCODE = "sentGcode"
    NEED_LINES = "needLines"
    DONE_SENDING = "doneSending"
    OPEN = "open"
    CLOSE = "close"


# Channel tags for SentRaw
CHANNEL_CONTROL = "C"
CHANNEL_DATA = "D"


@dataclass(frozen=True)
class Response:
    """Inner object of a response envelope and its footer (may be None)."""

    body: Any
    footer: Optional[List[int]] = None


@dataclass(frozen=True)
class SentRaw:
    """Text handed to the transport and the channel it went out on."""

    text: str
    channel: str = CHANNEL_CONTROL


Handler = Callable[[Any], None]


class EventEmitter:
    """
    Minimal synchronous event emitter.

    Handlers run in registration order on the thread that calls emit().
    Exceptions raised by a handler propagate to the emitter's caller.
    """

    def __init__(self):
        self._listeners: Dict[EventKind, List[Handler]] = {
            kind: [] for kind in EventKind
        }

    def on(self, kind: EventKind, handler: Handler) -> Handler:
        """
        Register a handler for an event kind.

        Args:
            kind: Event kind to listen for
            handler: Callable taking the event payload

        Returns:
            The handler, so it can be passed to off() later
        """
        self._listeners[kind].append(handler)
        return handler

    def once(self, kind: EventKind, handler: Handler) -> Handler:
        """
        Register a handler that is removed after its first call.

        Returns:
            The wrapper actually registered (use it with off())
        """

        def _wrapper(payload):
            self.off(kind, _wrapper)
            handler(payload)

        return self.on(kind, _wrapper)

    def off(self, kind: EventKind, handler: Handler) -> None:
        """Remove a handler; unknown handlers are ignored."""
        try:
            self._listeners[kind].remove(handler)
        except ValueError:
            pass

    def remove_all_listeners(self, kind: Optional[EventKind] = None) -> None:
        if kind is None:
            for handlers in self._listeners.values():
                handlers.clear()
        else:
            self._listeners[kind].clear()

    def listener_count(self, kind: EventKind) -> int:
        return len(self._listeners[kind])

    def emit(self, kind: EventKind, payload: Any = None) -> bool:
        """
        Deliver a payload to every handler registered for kind.

        Args:
            kind: Event kind
            payload: Event payload

        Returns:
            True if at least one handler was called
        """
        handlers = list(self._listeners[kind])
        for handler in handlers:
            handler(payload)
        return bool(handlers)
