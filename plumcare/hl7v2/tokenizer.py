"""
HL7v2 Segment/Field Tokenizer

Splits a pipe-delimited HL7 v2.x message into segments, fields and
components. Field positions follow the HL7 numbering: index 0 is the
segment name, so ``field(pid, 5)`` is PID-5. For MSH the field separator
itself is MSH-1, which the tokenizer re-inserts so MSH indices line up too.

Only ``|`` and ``^`` are interpreted. Repetitions (``~``) and escape
sequences (``\\F\\`` etc.) are left verbatim in the field text; use
``repetitions`` explicitly where a field is known to repeat.
"""
import re
from datetime import datetime
from dataclasses import dataclass
from typing import List, Optional, Tuple

from loguru import logger

from plumcare.errors import require_str

FIELD_SEPARATOR = "|"
COMPONENT_SEPARATOR = "^"
REPETITION_SEPARATOR = "~"
SUBCOMPONENT_SEPARATOR = "&"

_LINE_BREAK = re.compile(r"[\r\n]+")


@dataclass(frozen=True)
class Segment:
    """One segment line: its 3-letter name and positional fields."""
    name: str
    fields: Tuple[str, ...]

    def field(self, index: int) -> str:
        return field(self, index)


def parse_message(message: str) -> List[Segment]:
    """
    Tokenize a raw HL7v2 message.

    Args:
        message: Raw message text, segments separated by CR and/or LF

    Returns:
        Segments in message order (blank lines skipped)

    Raises:
        CallerContractViolation: If message is not a string
    """
    require_str(message, "HL7v2 message")

    segments = []
    for line in _LINE_BREAK.split(message):
        line = line.strip()
        if not line:
            continue
        tokens = line.split(FIELD_SEPARATOR)
        name = tokens[0]
        if name == "MSH":
            # MSH-1 is the separator itself, MSH-2 the encoding characters
            tokens = ["MSH", FIELD_SEPARATOR] + tokens[1:]
        segments.append(Segment(name=name, fields=tuple(tokens)))

    logger.debug("Tokenized HL7v2 message into {} segments", len(segments))
    return segments


def split_messages(text: str) -> List[str]:
    """
    Split a batch blob into individual messages, one per MSH segment.

    Lines before the first MSH are attached to the first message.
    """
    require_str(text, "HL7v2 batch")

    messages: List[List[str]] = []
    for line in _LINE_BREAK.split(text):
        if not line.strip():
            continue
        if line.startswith("MSH" + FIELD_SEPARATOR) or not messages:
            messages.append([line])
        else:
            messages[-1].append(line)
    return ["\r".join(lines) for lines in messages]


def find_segment(segments: List[Segment], name: str) -> Optional[Segment]:
    """First segment with the given name, or None."""
    for segment in segments:
        if segment.name == name:
            return segment
    return None


def find_segments(segments: List[Segment], name: str) -> List[Segment]:
    """All segments with the given name, in message order."""
    return [segment for segment in segments if segment.name == name]


def field(segment: Optional[Segment], index: int) -> str:
    """
    Field at HL7 position index.

    Returns:
        The raw field text, or "" if segment is None or the field is absent
    """
    if segment is None or index < 0 or index >= len(segment.fields):
        return ""
    return segment.fields[index]


def component(value: str, index: int) -> str:
    """
    Component of a field, 0-based (``component(f, 0)`` is HL7 component 1).

    Returns:
        The component text, or "" if out of range
    """
    if not value or index < 0:
        return ""
    parts = value.split(COMPONENT_SEPARATOR)
    return parts[index] if index < len(parts) else ""


def subcomponent(value: str, index: int) -> str:
    """Subcomponent of a component, 0-based; "" if out of range."""
    if not value or index < 0:
        return ""
    parts = value.split(SUBCOMPONENT_SEPARATOR)
    return parts[index] if index < len(parts) else ""


def repetitions(value: str) -> List[str]:
    """Split a repeating field on ``~``; an empty field has no repetitions."""
    if not value:
        return []
    return value.split(REPETITION_SEPARATOR)


def parse_hl7_datetime(value: Optional[str]) -> Optional[str]:
    """
    Decode an HL7 DTM value.

    ``YYYYMMDD`` becomes ``YYYY-MM-DD`` and ``YYYYMMDDHHMMSS[...]`` becomes
    ``YYYY-MM-DDTHH:MM:SS``. Any UTC offset or fractional seconds are
    dropped. Values shorter than 8 characters, or whose date digits are not
    a calendar date, decode to None; a bad time part falls back to the date.

    Returns:
        ISO-8601 string, or None
    """
    if not value or len(value) < 8:
        return None
    try:
        day = datetime.strptime(value[:8], "%Y%m%d")
    except ValueError:
        logger.warning("Ignoring malformed HL7 timestamp {!r}", value)
        return None
    if len(value) >= 14:
        try:
            moment = datetime.strptime(value[:14], "%Y%m%d%H%M%S")
        except ValueError:
            logger.warning("Ignoring malformed time in HL7 timestamp {!r}", value)
        else:
            return moment.strftime("%Y-%m-%dT%H:%M:%S")
    return day.strftime("%Y-%m-%d")


def parse_hl7_date(value: Optional[str]) -> Optional[str]:
    """Date part of an HL7 DTM value (``YYYY-MM-DD``), or None."""
    decoded = parse_hl7_datetime(value)
    return decoded[:10] if decoded else None
