"""
Unit tests for the serial stream wrapper.
"""

import unittest
from unittest.mock import MagicMock, PropertyMock

import serial

from communication.serial_stream import SerialStream, SerialStreamError


class TestSerialStream(unittest.TestCase):
    """Test cases for SerialStream error wrapping."""

    def setUp(self):
        self.stream = SerialStream()
        self.port = MagicMock()
        self.stream.serial = self.port
        self.stream.address = "/dev/ttyACM0"

    def test_waiting_for_recv(self):
        type(self.port).in_waiting = PropertyMock(return_value=3)
        self.assertTrue(self.stream.waiting_for_recv())

    def test_waiting_for_recv_os_error(self):
        """An unplugged device raising OSError is reported as a stream error."""
        type(self.port).in_waiting = PropertyMock(side_effect=OSError(5, "Input/output error"))
        with self.assertRaises(SerialStreamError):
            self.stream.waiting_for_recv()

    def test_waiting_for_recv_serial_error(self):
        type(self.port).in_waiting = PropertyMock(side_effect=serial.SerialException("gone"))
        with self.assertRaises(SerialStreamError):
            self.stream.waiting_for_recv()

    def test_recv_os_error(self):
        type(self.port).in_waiting = PropertyMock(return_value=0)
        self.port.read.side_effect = OSError(5, "Input/output error")
        with self.assertRaises(SerialStreamError):
            self.stream.recv()

    def test_not_connected(self):
        self.stream.serial = None
        self.assertFalse(self.stream.waiting_for_recv())
        with self.assertRaises(SerialStreamError):
            self.stream.recv()


if __name__ == "__main__":
    unittest.main()
