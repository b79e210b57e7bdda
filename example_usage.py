#!/usr/bin/env python3
"""
Example usage of the CNC Controller Library.

This script demonstrates the driver without hardware: it decodes sample
controller output, annotates G-code lines, and runs a short program
against a simulated machine on a loopback serial port.
"""

import io
import sys
import logging

from cnc_controller import Controller, ControllerError
from cnc_core import GCodeAnnotator
from cnc_events import EventEmitter, EventKind
from cnc_protocol import FrameDecoder
from cnc_utils import list_controllers

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def discover_controllers():
    """List controllers attached to this computer."""
    print("Looking for controllers...")
    found = list_controllers()
    if not found:
        print("No controllers found.")
    for device in found:
        if device.data_port_path:
            print(f"  - {device.path} (data port {device.data_port_path})")
        else:
            print(f"  - {device.path}")
    return found


def decoding_example():
    """Decode a few lines of controller output."""
    print("\n=== Decoding Example ===")

    emitter = EventEmitter()
    decoder = FrameDecoder(emitter, logger)

    emitter.on(EventKind.STATUS_CHANGED, lambda sr: print(f"  status report: {sr}"))
    emitter.on(EventKind.RESPONSE, lambda r: print(f"  response: {r.body} footer={r.footer}"))
    emitter.on(EventKind.ERROR, lambda e: print(f"  error: {e}"))

    # Output arrives in arbitrary chunks
    decoder.feed(b'{"r":{"xvm":12000},"f":[1,0,12]}\n{"sr":{"st')
    decoder.feed(b'at":5,"line":3}}\n{sr:{posx:1.25}}\n')
    decoder.feed(b'{"r":{"xvm":"fast"},"f":[1,108,14]}\n')


def annotation_example():
    """Show what the annotator extracts from G-code lines."""
    print("\n=== G-code Annotation Example ===")

    annotator = GCodeAnnotator()
    for line in ("N10 G01 X10.5 Y-2 F300 (cut)", "Y4", "M3 S12000 ; spindle on"):
        annotated = annotator.annotate(line)
        print(f"  {line!r}: line={annotated.line} command={annotated.command} values={annotated.values}")


def simulated_run_example():
    """Stream a short program to a simulated machine on a loopback port."""
    print("\n=== Simulated Program Run ===")

    controller = Controller(logger=logger)
    controller.on(EventKind.SENT_RAW, lambda raw: print(f"  sent on {raw.channel}: {raw.text.strip()}"))

    try:
        # loop:// echoes what is written; the machine's replies are fed by hand
        controller.open("loop://", rtscts=False, setup=False, threaded=False)
        controller.feed(b'{"r":{"rx":8},"f":[1,0,8]}\n')

        program = io.StringIO("G21\nG0 X10 Y10\nG1 X20 F500\nM2\n")
        done = controller.send_file(program)

        controller.feed(b'{"sr":{"stat":5,"line":1}}\n')
        controller.feed(b'{"sr":{"stat":4,"line":4}}\n')
        print(f"Program finished: {done.done() and done.exception() is None}")

    except ControllerError as e:
        print(f"Controller error: {e}")
    finally:
        controller.close()


def main():
    """Main example function."""
    print("CNC Controller Library Example")
    print("=" * 40)

    try:
        discover_controllers()
        decoding_example()
        annotation_example()
        simulated_run_example()

    except KeyboardInterrupt:
        print("\nExample interrupted by user")
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        return 1

    print("\nExample completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
