"""
CNC Utilities Module - Controller discovery and G-code helpers.

This module groups the serial ports reported by the operating system into
controllers (a command port, optionally paired with a data port) and
provides small text helpers.
"""

import re
import sys
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

# USB identifiers of Synthetos boards
SYNTHETOS_VID = 0x1D50
SYNTHETOS_PID = 0x606D
KNOWN_MANUFACTURERS = ("FTDI", "Synthetos")

PORTNUMPAT = re.compile(r"^(.*?)([0-9]+)")
STRIPCOMMENTPAT = re.compile(r"^(.*?);\(.*$", re.MULTILINE)


@dataclass
class DeviceInfo:
    """A controller found on the system."""

    path: str
    data_port_path: Optional[str] = None
    serial_number: Optional[str] = None


def _is_synthetos(port: Any) -> bool:
    if (port.manufacturer or "") == "Synthetos":
        return True
    return port.vid == SYNTHETOS_VID and port.pid == SYNTHETOS_PID


def _is_data_port_of(command_path: str, candidate_path: str) -> bool:
    """
    Check whether a port without manufacturer is the data port of the previous one.

    The data port enumerates right after the command port: usbmodem1 and
    usbmodem3, or N and N+1 / N+2.
    """
    x = PORTNUMPAT.match(command_path)
    y = PORTNUMPAT.match(candidate_path)
    if not x or not y or x.group(1) != y.group(1):
        return False

    a, b = int(x.group(2)), int(y.group(2))
    return (a == 1 and b == 3) or b in (a + 1, a + 2)


def group_serial_ports(ports: Iterable[Any], platform: Optional[str] = None) -> List[DeviceInfo]:
    """
    Group serial ports into controllers.

    Args:
        ports: pyserial ListPortInfo objects (or anything with device,
            manufacturer, serial_number, vid and pid attributes), in the order
            the system lists them
        platform: sys.platform style name, defaults to the running platform

    Returns:
        List of controllers found
    """
    platform = platform or sys.platform
    found: List[DeviceInfo] = []

    for port in ports:
        manufacturer = port.manufacturer or ""

        if platform == "darwin":
            if manufacturer in KNOWN_MANUFACTURERS:
                found.append(DeviceInfo(port.device, serial_number=port.serial_number))
            elif not manufacturer and found and found[-1].data_port_path is None:
                if _is_data_port_of(found[-1].path, port.device):
                    found[-1].data_port_path = port.device

        elif platform.startswith("linux"):
            if not _is_synthetos(port):
                continue
            previous = found[-1] if found else None
            if (
                previous is not None
                and previous.data_port_path is None
                and previous.serial_number
                and previous.serial_number == port.serial_number
            ):
                previous.data_port_path = port.device
            else:
                found.append(DeviceInfo(port.device, serial_number=port.serial_number))

        elif manufacturer in KNOWN_MANUFACTURERS or _is_synthetos(port):
            found.append(DeviceInfo(port.device, serial_number=port.serial_number))

    return found


def list_controllers() -> List[DeviceInfo]:
    """
    Find connected controllers.

    Returns:
        List of controllers, each with its command port and optional data port
    """
    from serial.tools import list_ports

    return group_serial_ports(list_ports.comports())


def strip_gcode(gcode: str) -> str:
    """
    Normalize G-code text for comparison.

    Drops ``;(`` comments, spaces and tabs, and upper-cases the rest.

    Args:
        gcode: One or more lines of G-code

    Returns:
        Normalized text
    """
    gcode = STRIPCOMMENTPAT.sub(r"\1", gcode)
    gcode = re.sub(r"[ \t]", "", gcode)
    return gcode.upper()
