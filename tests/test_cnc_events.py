"""
Unit tests for the event emitter.
"""

import unittest

from cnc_events import EventEmitter, EventKind, Response, SentRaw, CHANNEL_DATA


class TestEventEmitter(unittest.TestCase):
    """Test cases for EventEmitter."""

    def setUp(self):
        self.emitter = EventEmitter()
        self.received = []

    def test_emit_calls_handlers_in_order(self):
        """Handlers run in registration order with the payload."""
        self.emitter.on(EventKind.DATA, lambda p: self.received.append(("a", p)))
        self.emitter.on(EventKind.DATA, lambda p: self.received.append(("b", p)))

        self.assertTrue(self.emitter.emit(EventKind.DATA, "ok"))
        self.assertEqual(self.received, [("a", "ok"), ("b", "ok")])

    def test_emit_without_handlers(self):
        """Emitting with nobody listening returns False."""
        self.assertFalse(self.emitter.emit(EventKind.OPEN))

    def test_once(self):
        """A once handler is called a single time."""
        self.emitter.once(EventKind.RX_RECEIVED, self.received.append)

        self.emitter.emit(EventKind.RX_RECEIVED, 4)
        self.emitter.emit(EventKind.RX_RECEIVED, 5)

        self.assertEqual(self.received, [4])
        self.assertEqual(self.emitter.listener_count(EventKind.RX_RECEIVED), 0)

    def test_off(self):
        """Removed handlers are no longer called; unknown handlers are ignored."""
        handler = self.emitter.on(EventKind.DATA, self.received.append)
        self.emitter.off(EventKind.DATA, handler)
        self.emitter.off(EventKind.DATA, handler)

        self.emitter.emit(EventKind.DATA, "line")
        self.assertEqual(self.received, [])

    def test_off_during_emit(self):
        """A handler removing itself does not disturb the current delivery."""

        def first(payload):
            self.emitter.off(EventKind.DATA, first)
            self.received.append("first")

        self.emitter.on(EventKind.DATA, first)
        self.emitter.on(EventKind.DATA, lambda p: self.received.append("second"))

        self.emitter.emit(EventKind.DATA, "x")
        self.emitter.emit(EventKind.DATA, "y")
        self.assertEqual(self.received, ["first", "second", "second"])

    def test_remove_all_listeners(self):
        self.emitter.on(EventKind.DATA, self.received.append)
        self.emitter.on(EventKind.OPEN, self.received.append)

        self.emitter.remove_all_listeners(EventKind.DATA)
        self.assertEqual(self.emitter.listener_count(EventKind.DATA), 0)
        self.assertEqual(self.emitter.listener_count(EventKind.OPEN), 1)

        self.emitter.remove_all_listeners()
        self.assertEqual(self.emitter.listener_count(EventKind.OPEN), 0)

    def test_handler_exception_propagates(self):
        """Exceptions raised by handlers reach the caller of emit()."""

        def broken(payload):
            raise RuntimeError("boom")

        self.emitter.on(EventKind.DATA, broken)
        with self.assertRaises(RuntimeError):
            self.emitter.emit(EventKind.DATA, "x")

    def test_event_names(self):
        """Event kinds keep their wire-facing names."""
        self.assertEqual(EventKind.ERROR_REPORT.value, "errorReport")
        self.assertEqual(EventKind.STATUS_CHANGED.value, "statusChanged")
        self.assertEqual(EventKind.NEED_LINES.value, "needLines")

    def test_payload_types(self):
        response = Response({"xvm": 1}, [1, 0, 7])
        self.assertEqual(response.body, {"xvm": 1})
        self.assertEqual(response.footer, [1, 0, 7])
        self.assertIsNone(Response({}).footer)

        raw = SentRaw("G0\n", CHANNEL_DATA)
        self.assertEqual(raw.channel, "D")
        self.assertEqual(SentRaw("!\n").channel, "C")


if __name__ == "__main__":
    unittest.main()
