"""
CNC Core Module - Machine run state and G-code line annotation.

This module provides the status state machine fed by the controller's
status reports, and the annotator that extracts the line number, command
and word values from each G-code line sent to the machine.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

from cnc_events import EventEmitter, EventKind

# Regular expressions for G-code parsing
PARENPAT = re.compile(r"(\(.*?\))")
SEMIPAT = re.compile(r"(;.*)")
CMDPAT = re.compile(r"([a-z])")
LEADZEROPAT = re.compile(r"^([-+]?)0+(?=\d)")

# Letters that name the command of a line
COMMAND_LETTERS = ("g", "m", "t")


class MachineState(IntEnum):
    """Machine state codes carried in the ``stat`` field of status reports."""

    INITIALIZING = 0
    READY = 1
    ALARM = 2
    STOP = 3
    END = 4
    RUN = 5
    HOLD = 6
    PROBE = 7
    CYCLE = 8
    HOMING = 9
    JOG = 10
    INTERLOCK = 11
    SHUTDOWN = 12
    PANIC = 13


def as_state(stat: Any) -> Optional[int]:
    """Coerce a raw ``stat`` value to an int, None if it is not numeric."""
    try:
        return int(stat)
    except (TypeError, ValueError):
        return None


class MachineStatus:
    """
    Machine run state tracked from status reports.

    Status reports are usually filtered by the controller (only changed
    fields are sent), so every report is merged into one snapshot.
    Stop and end are only recorded here; deciding what they mean for a
    transfer is left to the file streamer.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.reset()

    def reset(self) -> None:
        self.state: Optional[int] = None
        self.in_hold = False
        self.last_line = 0
        self.report: Dict[str, Any] = {}

    @property
    def alarmed(self) -> bool:
        return self.state == MachineState.ALARM

    @property
    def stopped_or_ended(self) -> bool:
        return self.state in (MachineState.STOP, MachineState.END)

    def update(self, sr: Dict[str, Any]) -> Optional[int]:
        """
        Apply one status report.

        Args:
            sr: The ``sr`` object of a status report

        Returns:
            The reported state code, or None if the report has no ``stat``
        """
        self.report.update(sr)

        if sr.get("line"):
            self.last_line = sr["line"]

        stat = as_state(sr.get("stat"))
        if stat is None:
            return None

        if stat == MachineState.HOLD and not self.in_hold:
            self.in_hold = True
            self.logger.info("Machine entered feedhold")
        elif stat == MachineState.RUN and self.in_hold:
            self.in_hold = False
            self.logger.info("Machine resumed from feedhold")
        elif stat == MachineState.ALARM and self.state != MachineState.ALARM:
            self.logger.error(f"Machine entered alarm state at line {self.last_line}")

        self.state = stat
        return stat


@dataclass
class AnnotatedLine:
    """Result of annotating one G-code line."""

    command: Optional[Dict[str, str]] = None
    values: Dict[str, str] = field(default_factory=dict)
    line: Optional[int] = None
    gcode: str = ""


def value_from_word(word: str) -> str:
    """Value part of a word such as ``x010``, with redundant leading zeros removed."""
    return LEADZEROPAT.sub(r"\1", word[1:].strip())


class GCodeAnnotator:
    """
    Extract line number, command and word values from G-code lines.

    The annotator keeps the current line number for the transfer session:
    a line without an ``N`` word inherits the last one seen.
    """

    def __init__(self, emitter: Optional[EventEmitter] = None):
        self.emitter = emitter
        self.line: Optional[int] = None

    def reset(self) -> None:
        self.line = None

    def annotate(self, raw: str) -> AnnotatedLine:
        """
        Parse a single line of G-code.

        Args:
            raw: Line as sent to the machine

        Returns:
            The annotated line; also emitted as SENT_GCODE
        """
        line = PARENPAT.sub("", raw.strip())
        line = SEMIPAT.sub("", line)
        line = "".join(line.split()).lower()
        # Insert space before each word
        words = CMDPAT.sub(r" \1", line).split()

        if words and words[0][0] == "n":
            number = value_from_word(words.pop(0))
            try:
                self.line = int(number)
            except ValueError:
                pass

        annotated = AnnotatedLine(line=self.line, gcode=raw)
        if not words:
            return annotated

        if words[0][0] in COMMAND_LETTERS:
            word = words.pop(0)
            annotated.command = {word[0]: value_from_word(word)}

        for word in words:
            annotated.values[word[0]] = value_from_word(word)

        if self.emitter is not None:
            self.emitter.emit(EventKind.SENT_GCODE, annotated)
        return annotated
