#!/usr/bin/env python3
"""
Program Streaming Script for CNC Controller Library.

Opens a controller (the only one attached, or the given port) and streams a
G-code file to it, printing progress as lines are acknowledged.

Usage:
    python stream_file.py program.nc [--port /dev/ttyACM0] [--data-port /dev/ttyACM1]
"""

import sys
import argparse
import logging
import os

# Add parent directory to path to import the CNC library
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cnc_controller import Controller, ControllerError
from cnc_events import EventKind
from cnc_protocol import CNCError


def stream_file(controller: Controller, path: str) -> bool:
    """
    Stream one program and wait for the machine to finish it.

    Args:
        controller: Open controller
        path: Program file

    Returns:
        True if the program ran to completion
    """
    print(f"📤 Streaming {path}...")

    controller.on(EventKind.STATUS_CHANGED, lambda sr: sr.get("line") and print(f"  line {sr['line']}", end="\r"))
    controller.on(EventKind.ERROR_REPORT, lambda er: print(f"\n⚠️  Controller reported: {er}"))

    try:
        controller.send_file(path).result()
    except CNCError as e:
        print(f"\n❌ Program failed: {e}")
        return False

    print("\n✅ Program complete")
    return True


def main():
    """Main function."""
    parser = argparse.ArgumentParser(description="Stream a G-code program to a controller")
    parser.add_argument("program", help="G-code file to send")
    parser.add_argument("--port", "-p", help="Command port (default: autodetect)")
    parser.add_argument("--data-port", "-d", help="Data port for dual-channel boards")
    parser.add_argument("--baud", "-b", type=int, default=115200, help="Baud rate (default: 115200)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    controller = Controller()
    try:
        if args.port:
            ready = controller.open(args.port, data_port_path=args.data_port, baud_rate=args.baud)
        else:
            ready = controller.open_first(fail_if_more=True, baud_rate=args.baud)
        ready.result(timeout=10)

        return 0 if stream_file(controller, args.program) else 1

    except ControllerError as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted, sending feedhold")
        if controller.is_connected():
            controller.write("!")
        return 1
    finally:
        controller.close()


if __name__ == "__main__":
    sys.exit(main())
