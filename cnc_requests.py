"""
CNC Requests Module - Correlating configuration commands with responses.

The controller's responses carry no sequence number. A configuration
command ``{key: value}`` is considered answered by the first response whose
body contains ``key``. Two outstanding requests for the same key therefore
race: the earliest one is resolved by the first matching response.
"""

import logging
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from cnc_events import EventEmitter, EventKind, Response
from cnc_protocol import CNCError, DecodeError

# Default completion test for write_with_result: program stop
STOP_STAT = 3


@dataclass
class SetOutcome:
    """Result of one key within a multi-key set()."""

    key: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _Pending:
    def __init__(self, key: str, future: Future):
        self.key = key
        self.future = future


def _settle(future: Future, value: Any = None, error: Optional[BaseException] = None) -> None:
    if future.done():
        return
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)
    except InvalidStateError:
        # cancelled by the caller in the meantime
        pass


def _stopped(r: Any) -> bool:
    return bool(isinstance(r, dict) and isinstance(r.get("sr"), dict) and r["sr"].get("stat") == STOP_STAT)


class RequestCorrelator:
    """
    Track outstanding set/get requests and resolve them from responses.

    Every request is a concurrent.futures.Future. It resolves with the echoed
    value, or fails with the first device or transport error reported while
    it is outstanding. Malformed lines (DecodeError) do not fail requests.
    """

    def __init__(
        self,
        emitter: EventEmitter,
        write: Callable[[Any], None],
        logger: Optional[logging.Logger] = None,
    ):
        self.emitter = emitter
        self.write = write
        self.logger = logger or logging.getLogger(__name__)
        self._pending: List[_Pending] = []
        self._handlers = [
            (EventKind.RESPONSE, self._on_response),
            (EventKind.ERROR, self._on_error),
        ]

    def attach(self) -> None:
        for kind, handler in self._handlers:
            self.emitter.on(kind, handler)

    def detach(self) -> None:
        for kind, handler in self._handlers:
            self.emitter.off(kind, handler)

    @property
    def outstanding(self) -> List[str]:
        """Keys of the requests still waiting, oldest first."""
        return [p.key for p in self._pending]

    def get(self, key: str) -> Future:
        return self.set(key, None)

    def set(
        self,
        key: Union[str, Mapping[str, Any], Sequence[Mapping[str, Any]]],
        value: Any = None,
    ) -> Future:
        """
        Write configuration values and wait for their echo.

        Args:
            key: A key name, a mapping of keys to values, or a list of mappings
            value: Value for a single key (None reads the current value)

        Returns:
            For a single key, a Future resolving to the echoed value.
            For a mapping or list, a Future resolving to a list of SetOutcome,
            one per key in issue order. Keys are issued one after another and
            a failing key does not stop the remaining ones.
        """
        if isinstance(key, Mapping):
            return self._chain(list(key.items()))
        if isinstance(key, (list, tuple)):
            items = []
            for mapping in key:
                items.extend(mapping.items())
            return self._chain(items)

        future: Future = Future()
        self._pending.append(_Pending(key, future))
        self.logger.debug(f"Requesting {key}={value!r}")
        try:
            self.write({key: value})
        except CNCError as e:
            self._forget(future)
            _settle(future, error=e)
        return future

    def _chain(self, items: List[tuple]) -> Future:
        result: Future = Future()
        outcomes: List[SetOutcome] = []
        remaining = list(items)

        def _next():
            if not remaining:
                _settle(result, outcomes)
                return
            k, v = remaining.pop(0)
            self.set(k, v).add_done_callback(lambda f, k=k: _collect(k, f))

        def _collect(k, f):
            if f.cancelled():
                outcomes.append(SetOutcome(k, error=CNCError(f"Request for {k} cancelled")))
            elif f.exception() is not None:
                self.logger.warning(f"Caught error setting {k}: {f.exception()}")
                outcomes.append(SetOutcome(k, error=f.exception()))
            else:
                outcomes.append(SetOutcome(k, f.result()))
            _next()

        _next()
        return result

    def write_with_result(
        self,
        data: Any,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> Future:
        """
        Write one value (or each value of a list) and wait for a condition.

        Args:
            data: Line, record, or list of them
            predicate: Called with each response body and with ``{"sr": report}``
                for each status report; the Future resolves with the first
                argument it accepts. Defaults to "status report with stat 3".

        Returns:
            Future resolving to the accepted response body or status report
        """
        predicate = predicate or _stopped
        future: Future = Future()

        def _on_response(response: Response):
            if predicate(response.body):
                _settle(future, response.body)

        def _on_status(sr):
            if predicate({"sr": sr}):
                _settle(future, sr)

        handlers = [(EventKind.RESPONSE, _on_response), (EventKind.STATUS_CHANGED, _on_status)]
        for kind, handler in handlers:
            self.emitter.on(kind, handler)

        def _cleanup(_f):
            for kind, handler in handlers:
                self.emitter.off(kind, handler)

        future.add_done_callback(_cleanup)

        for value in data if isinstance(data, list) else [data]:
            self.write(value)
        return future

    def fail_all(self, error: BaseException) -> None:
        """Fail every outstanding request (used when the connection goes away)."""
        pending, self._pending = self._pending, []
        for p in pending:
            _settle(p.future, error=error)

    def _forget(self, future: Future) -> None:
        self._pending = [p for p in self._pending if p.future is not future]

    def _on_response(self, response: Response) -> None:
        body = response.body
        if not isinstance(body, dict):
            return

        matched: Dict[str, _Pending] = {}
        for p in self._pending:
            if p.key in body and p.key not in matched and not p.future.done():
                matched[p.key] = p

        for key, p in matched.items():
            self._pending.remove(p)
            self.logger.debug(f"Response matched request for {key}: {body[key]!r}")
            _settle(p.future, body[key])

        # requests cancelled by the caller
        self._pending = [p for p in self._pending if not p.future.done()]

    def _on_error(self, error: BaseException) -> None:
        if isinstance(error, DecodeError) or not self._pending:
            return
        self.fail_all(error)
