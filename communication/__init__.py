"""
Communication module for CNC controller.

This module provides the serial channel used to talk to CNC controllers.
"""

from .serial_stream import SerialStream, SerialStreamError, DEFAULT_BAUD_RATE

__all__ = ['SerialStream', 'SerialStreamError', 'DEFAULT_BAUD_RATE']
