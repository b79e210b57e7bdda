#!/usr/bin/env python3
"""
Controller Discovery Script for CNC Controller Library.

This script lists the motion controllers attached over USB and can
optionally open one to read its firmware build and current status.

Usage:
    python discover_machines.py [--test] [--timeout 5]
"""

import sys
import argparse
import concurrent.futures
import os
import logging

# Add parent directory to path to import the CNC library
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cnc_controller import Controller, ControllerError
from cnc_utils import DeviceInfo, list_controllers


def discover_machines():
    """
    Find attached controllers.

    Returns:
        List of DeviceInfo
    """
    print("🔍 Looking for controllers...")
    print("=" * 50)

    found = list_controllers()

    if found:
        print(f"✅ Found {len(found)} controller(s):")
        print()
        for i, device in enumerate(found, 1):
            print(f"  {i}. {device.path}")
            if device.data_port_path:
                print(f"     Data port: {device.data_port_path}")
            if device.serial_number:
                print(f"     Serial:    {device.serial_number}")
            print()
    else:
        print("❌ No controllers found")
        print()
        print("Troubleshooting:")
        print("  - Make sure the board is powered and plugged in")
        print("  - On Linux, check that you are in the dialout group")

    return found


def test_machine_connection(device: DeviceInfo, timeout: float):
    """
    Open a controller and read a few values.

    Args:
        device: Controller to test
        timeout: Seconds to wait for each answer
    """
    print(f"🔗 Testing connection to {device.path}...")

    controller = Controller()
    try:
        ready = controller.open(device.path, data_port_path=device.data_port_path)
        ready.result(timeout=timeout)
        print("✅ Connected")

        build = controller.get("fb").result(timeout=timeout)
        print(f"📡 Firmware build: {build}")

        status = controller.get("sr").result(timeout=timeout)
        print(f"📡 Status: {status}")
        return True

    except ControllerError as e:
        print(f"❌ Connection failed: {e}")
        return False
    except concurrent.futures.TimeoutError:
        print("❌ No answer from controller")
        return False
    finally:
        controller.close()
        print("🔌 Disconnected")


def main():
    """Main function."""
    parser = argparse.ArgumentParser(description="Discover attached CNC controllers")
    parser.add_argument("--test", action="store_true",
                       help="Open each controller and query it")
    parser.add_argument("--timeout", "-t", type=float, default=5,
                       help="Seconds to wait for answers (default: 5)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        found = discover_machines()

        if found and args.test:
            print("🧪 Testing connections...")
            print("=" * 50)
            for device in found:
                test_machine_connection(device, args.timeout)
                print()

        return 0 if found else 1

    except KeyboardInterrupt:
        print("\n⚠️  Discovery interrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
