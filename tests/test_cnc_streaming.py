"""
Unit tests for program streaming.

These tests stream small programs through a controller on mock streams and
play the machine's part by feeding responses and status reports.
"""

import io
import os
import tempfile
import unittest

from cnc_controller import Controller, ControllerError
from cnc_events import EventKind
from cnc_protocol import AlarmError, CNCError, TransportError
from cnc_streaming import FileStreamer, StreamState

from test_cnc_controller import MockStream


class PushSource:
    """Non-blocking source: read() returns None until more text is pushed."""

    def __init__(self):
        self.chunks = []
        self.closed = False

    def push(self, text):
        self.chunks.append(text)

    def finish(self):
        self.closed = True

    def read(self, size=-1):
        if self.chunks:
            return self.chunks.pop(0)
        return "" if self.closed else None


class ChunkSource:
    """Source returning fixed chunks, then end of stream."""

    def __init__(self, chunks):
        self.chunks = list(chunks)

    def read(self, size=-1):
        return self.chunks.pop(0) if self.chunks else b""


class StreamingTestCase(unittest.TestCase):
    def setUp(self):
        self.streams = []
        self.controller = Controller(stream_factory=self.make_stream)
        self.events = []
        for kind in (EventKind.DONE_SENDING, EventKind.NEED_LINES):
            self.controller.on(kind, lambda payload, kind=kind: self.events.append((kind, payload)))
        self.results = []

    def tearDown(self):
        self.controller.close()

    def make_stream(self):
        stream = MockStream()
        self.streams.append(stream)
        return stream

    def feed(self, text):
        self.controller.feed(text.encode("utf-8"))

    def open_dual(self):
        self.controller.open("/dev/ttyACM0", data_port_path="/dev/ttyACM1", setup=False, threaded=False)
        return self.streams[1]

    def open_packet(self, rx):
        """Single channel connection with rx - 1 lines of credit."""
        self.controller.open("/dev/ttyACM0", setup=False, threaded=False)
        self.feed(f'{{"r":{{"rx":{rx}}},"f":[1,0,6]}}\n')
        return self.streams[0]

    def program_lines(self, stream):
        return [line for line in stream.sent_data if not line.startswith("{")]


class TestSendFile(StreamingTestCase):
    """Test cases for streaming a whole program."""

    def test_stream_completes_on_stop(self):
        """Lines are numbered and the transfer ends on the stop report."""
        data = self.open_dual()
        future = self.controller.send_file(io.StringIO("G0 X1\nG1 Y2 F100\n"), self.results.append)

        self.assertEqual(data.sent_data, ["N1 G0 X1\n", "N2 G1 Y2 F100\n"])
        self.assertEqual(len([k for k, _ in self.events if k == EventKind.DONE_SENDING]), 1)
        self.assertFalse(future.done())

        self.feed('{"sr":{"stat":5,"line":1}}\n')
        self.assertFalse(future.done())
        self.feed('{"sr":{"stat":3,"line":2}}\n')

        self.assertIsNone(future.result(timeout=0))
        self.assertEqual(self.results, [None])
        self.assertEqual(self.controller.file_stream.state, StreamState.COMPLETED)

    def test_stop_before_drained(self):
        """An early stop only counts once every line has been sent."""
        control = self.open_packet(rx=2)
        future = self.controller.send_file(io.StringIO("G0 X1\nG0 X2\n"))
        self.assertEqual(self.program_lines(control), ["N1 G0 X1\n"])

        self.feed('{"sr":{"stat":3}}\n')
        self.assertFalse(future.done())

        self.feed('{"r":{"gc":"N1G0X1"},"f":[1,0,9]}\n')
        self.assertEqual(self.program_lines(control), ["N1 G0 X1\n", "N2 G0 X2\n"])
        self.assertIsNone(future.result(timeout=0))

    def test_run_clears_stop(self):
        control = self.open_packet(rx=2)
        future = self.controller.send_file(io.StringIO("G0 X1\nG0 X2\n"))

        self.feed('{"sr":{"stat":3}}\n')
        self.feed('{"sr":{"stat":5}}\n')
        self.feed('{"r":{"gc":"N1G0X1"},"f":[1,0,9]}\n')
        self.assertEqual(len(self.program_lines(control)), 2)
        self.assertFalse(future.done())

        self.feed('{"sr":{"stat":3}}\n')
        self.assertTrue(future.done())

    def test_end_forces_completion(self):
        """Program end before the queue drains stops reading the file."""
        control = self.open_packet(rx=2)
        future = self.controller.send_file(io.StringIO("G0 X1\nM2\nG0 X3\n"))
        self.assertEqual(self.program_lines(control), ["N1 G0 X1\n"])

        self.feed('{"sr":{"stat":4}}\n')
        self.assertIsNone(future.result(timeout=0))
        self.assertEqual(self.program_lines(control), ["N1 G0 X1\n"])

    def test_alarm_fails_stream(self):
        data = self.open_dual()
        future = self.controller.send_file(io.StringIO("G0 X1\n"), self.results.append)
        self.assertEqual(data.sent_data, ["N1 G0 X1\n"])

        self.feed('{"sr":{"stat":2,"line":1}}\n')
        self.assertIsInstance(future.exception(timeout=0), AlarmError)
        self.assertIsInstance(self.results[0], AlarmError)
        self.assertEqual(self.controller.file_stream.state, StreamState.FAILED)

    def test_backpressure(self):
        """Only as many lines are read as there is credit for."""
        control = self.open_packet(rx=2)
        source = io.StringIO("".join(f"G0 X{i}\n" for i in range(10)))
        self.controller.send_file(source)

        self.assertEqual(len(self.program_lines(control)), 1)
        self.assertEqual(len(self.controller.credit.queue), 0)

        self.feed('{"r":{"rx":4},"f":[1,0,6]}\n')
        self.assertEqual(len(self.program_lines(control)), 4)
        self.assertEqual(len(self.controller.credit.queue), 0)

    def test_explicit_line_numbers(self):
        """Existing N words are kept and numbering continues after them."""
        data = self.open_dual()
        self.controller.send_file(io.StringIO("N10 G0 X1\nG0 X2\n\n(comment)\n"))

        self.assertEqual(data.sent_data, ["N10 G0 X1\n", "N11 G0 X2\n", "N12 (comment)\n"])

    def test_last_line_without_newline(self):
        data = self.open_dual()
        self.controller.send_file(io.StringIO("G0 X1\r\nG0 X2"))

        self.assertEqual(data.sent_data, ["N1 G0 X1\n", "N2 G0 X2\n"])

    def test_bytes_source(self):
        data = self.open_dual()
        self.controller.send_file(io.BytesIO("G0 X1 (café)\n".encode("utf-8")))

        self.assertEqual(data.sent_data, ["N1 G0 X1 (café)\n"])

    def test_character_split_across_reads(self):
        """A read holding only part of a character does not end the program."""
        data = self.open_dual()
        source = ChunkSource([b"G1 X1 ; caf", b"\xc3", b"\xa9\nG1 X2\nG1 X3\n"])
        self.controller.send_file(source)

        self.assertEqual(data.sent_data, ["N1 G1 X1 ; caf\u00e9\n", "N2 G1 X2\n", "N3 G1 X3\n"])
        self.assertEqual(self.controller.file_stream.state, StreamState.DRAINING)

    def test_path_source(self):
        fd, path = tempfile.mkstemp(suffix=".nc")
        with os.fdopen(fd, "w") as f:
            f.write("G0 X1\nG0 X2\n")
        self.addCleanup(os.unlink, path)

        data = self.open_dual()
        future = self.controller.send_file(path)

        self.assertEqual(data.sent_data, ["N1 G0 X1\n", "N2 G0 X2\n"])
        self.assertTrue(self.controller.file_stream.source.closed)
        self.feed('{"sr":{"stat":4}}\n')
        self.assertIsNone(future.result(timeout=0))

    def test_source_not_ready(self):
        """A source without data yet is resumed with source_readable()."""
        data = self.open_dual()
        source = PushSource()
        source.push("G0 X1\n")
        future = self.controller.send_file(source)
        self.assertEqual(data.sent_data, ["N1 G0 X1\n"])

        source.push("G0 X2\n")
        self.controller.source_readable()
        self.assertEqual(data.sent_data, ["N1 G0 X1\n", "N2 G0 X2\n"])
        self.assertEqual(self.events.count((EventKind.DONE_SENDING, None)), 0)

        source.finish()
        self.controller.source_readable()
        self.assertEqual(self.events.count((EventKind.DONE_SENDING, None)), 1)

        self.feed('{"sr":{"stat":3}}\n')
        self.assertIsNone(future.result(timeout=0))

    def test_one_transfer_at_a_time(self):
        self.open_dual()
        self.controller.send_file(io.StringIO("G0 X1\n"))
        with self.assertRaises(ControllerError):
            self.controller.send_file(io.StringIO("G0 X2\n"))

    def test_second_transfer_restarts_numbering(self):
        data = self.open_dual()
        self.controller.send_file(io.StringIO("G0 X1\n"))
        self.feed('{"sr":{"stat":4}}\n')

        self.controller.send_file(io.StringIO("G0 X9\n"))
        self.assertEqual(data.sent_data[-1], "N1 G0 X9\n")
        self.assertEqual(self.events.count((EventKind.DONE_SENDING, None)), 2)

    def test_close_cancels_transfer(self):
        self.open_dual()
        future = self.controller.send_file(io.StringIO("G0 X1\n"), self.results.append)

        self.controller.close()
        self.assertIsInstance(future.exception(timeout=0), TransportError)
        self.assertIsInstance(self.results[0], TransportError)


class TestFileStreamerState(StreamingTestCase):
    def test_start_twice(self):
        self.open_dual()
        streamer = FileStreamer(self.controller, self.controller.credit, self.controller.write, io.StringIO(""))
        streamer.start()
        with self.assertRaises(CNCError):
            streamer.start()

    def test_empty_program(self):
        """An empty program finishes as soon as the machine reports stop."""
        self.open_dual()
        future = self.controller.send_file(io.StringIO(""))
        self.assertEqual(self.events.count((EventKind.DONE_SENDING, None)), 1)

        self.feed('{"sr":{"stat":3}}\n')
        self.assertIsNone(future.result(timeout=0))


if __name__ == "__main__":
    unittest.main()
