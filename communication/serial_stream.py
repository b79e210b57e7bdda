"""
Serial communication stream for CNC controllers.

This module provides the byte-level serial channel used by the controller
driver. A connection uses one stream for commands and, optionally, a second
one for bulk G-code lines.
"""

import logging
from typing import Optional, Union

import serial

SERIAL_TIMEOUT = 0.3  # seconds
DEFAULT_BAUD_RATE = 115200


class SerialStreamError(Exception):
    """Exception raised for serial stream errors."""
    pass


class SerialStream:
    """
    Serial communication stream for CNC controllers.

    This class handles one serial channel using the pyserial library.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize serial stream.

        Args:
            logger: Logger instance to use
        """
        self.logger = logger or logging.getLogger(__name__)
        self.serial = None
        self.address = None

    def send(self, data: Union[bytes, str]) -> int:
        """
        Send data to the serial port.

        The call returns once pyserial accepted the data, which serves as the
        write completion notification.

        Args:
            data: Data to send; text is encoded as UTF-8

        Returns:
            Number of bytes sent

        Raises:
            SerialStreamError: If not connected or send fails
        """
        if not self.serial:
            raise SerialStreamError("Not connected")

        if isinstance(data, str):
            data = data.encode("utf-8")

        try:
            sent = self.serial.write(data)
            self.logger.debug(f"Serial sent {sent} bytes to {self.address}: {data!r}")
            return sent
        except (serial.SerialException, OSError) as e:
            raise SerialStreamError(f"Failed to send data: {e}") from e

    def recv(self) -> bytes:
        """
        Receive whatever the serial port has buffered.

        Returns:
            Received data bytes (possibly empty)

        Raises:
            SerialStreamError: If not connected or receive fails
        """
        if not self.serial:
            raise SerialStreamError("Not connected")

        try:
            return self.serial.read(self.serial.in_waiting or 1)
        except (serial.SerialException, OSError) as e:
            raise SerialStreamError(f"Failed to receive data: {e}") from e

    def open(self, address: str, baudrate: int = DEFAULT_BAUD_RATE, rtscts: bool = True) -> bool:
        """
        Open serial connection.

        Args:
            address: Serial port address (e.g., '/dev/ttyACM0', 'COM3')
            baudrate: Line speed
            rtscts: Enable RTS/CTS hardware flow control

        Returns:
            True if connection successful

        Raises:
            SerialStreamError: If the connection fails
        """
        try:
            self.serial = serial.serial_for_url(
                address,
                baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_TIMEOUT,
                xonxoff=False,
                rtscts=rtscts,
            )
            self.address = address
            self.serial.reset_input_buffer()
            self.logger.info(f"Connected to serial device at {address}")
            return True

        except (serial.SerialException, ValueError) as e:
            self.logger.error(f"Failed to connect to {address}: {e}")
            self.serial = None
            raise SerialStreamError(f"Failed to connect: {e}") from e

    def close(self) -> bool:
        """
        Close serial connection.

        Returns:
            True if disconnection successful
        """
        if self.serial is None:
            return True

        try:
            self.serial.close()
            self.logger.info(f"Serial connection to {self.address} closed")
            return True
        except serial.SerialException as e:
            self.logger.error(f"Error closing serial connection: {e}")
            return False
        finally:
            self.serial = None

    def waiting_for_recv(self) -> bool:
        """
        Check if data is available to receive.

        Returns:
            True if data available

        Raises:
            SerialStreamError: If the port can no longer be queried
        """
        if not self.serial:
            return False
        try:
            return self.serial.in_waiting > 0
        except (serial.SerialException, OSError) as e:
            raise SerialStreamError(f"Failed to check for data: {e}") from e

    def is_connected(self) -> bool:
        """
        Check if connected.

        Returns:
            True if connected
        """
        return self.serial is not None and self.serial.is_open
