"""
UART SMS Gateway - Frame codec
Encodes commands into the CMD_START/CMD_END envelope and decodes device
lines wrapped in SMS_START/SMS_END

Licensed under Apache License 2.0
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .const import CMD_END, CMD_START, LINE_TERMINATOR, MAX_LINE_BUFFER, SMS_END, SMS_START
from .errors import FrameEncodeError, FrameParseError, MissingTypeError, NotFramedError

logger = logging.getLogger(__name__)


@dataclass
class DeviceMessage:
    """One decoded downstream frame"""
    type: str
    json: str
    fields: Dict[str, Any] = field(default_factory=dict)


def encode_command(cmd: Dict[str, Any]) -> bytes:
    """Wrap a command dict as CMD_START:{json}:CMD_END\\r\\n"""
    try:
        payload = json.dumps(cmd, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise FrameEncodeError(f"Command is not JSON serializable: {e}") from e
    return f"{CMD_START}{payload}{CMD_END}{LINE_TERMINATOR}".encode("utf-8")


def decode_frame(line: str) -> DeviceMessage:
    """Decode a single received line into a DeviceMessage.

    Raises NotFramedError for lines without the start marker, FrameParseError
    for a missing end marker or broken payload and MissingTypeError when
    'type' is absent.
    """
    start = line.find(SMS_START)
    if start < 0:
        raise NotFramedError(line)

    body_start = start + len(SMS_START)
    end = line.find(SMS_END, body_start)
    if end < 0:
        raise FrameParseError(f"Frame end marker missing: {line[:80]}")

    raw = line[body_start:end].strip()
    if not raw:
        raise FrameParseError("Empty frame payload")

    try:
        fields = json.loads(raw)
    except ValueError as e:
        raise FrameParseError(f"Invalid JSON payload: {e}") from e

    if not isinstance(fields, dict):
        raise FrameParseError(f"Frame payload is not an object: {raw[:80]}")

    msg_type = fields.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MissingTypeError(raw)

    return DeviceMessage(type=msg_type, json=raw, fields=fields)


def is_framed_response(text: str) -> bool:
    """Check if a probe reply contains a downstream frame"""
    return SMS_START in text and SMS_END in text


class LineBuffer:
    """Accumulates raw serial chunks and yields complete lines.

    A line growing past max_size is dropped as a whole: the buffer is cleared
    and everything up to the next newline is skipped, so its tail is never
    returned as a line of its own.
    """

    def __init__(self, max_size: int = MAX_LINE_BUFFER):
        self.max_size = max_size
        self._buffer = b""
        self._discarding = False

    def feed(self, data: bytes) -> List[str]:
        if self._discarding:
            idx = data.find(b"\n")
            if idx < 0:
                return []
            data = data[idx + 1:]
            self._discarding = False

        self._buffer += data
        lines = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw, self._buffer = self._buffer[:idx], self._buffer[idx + 1:]
            lines.append(raw.decode("utf-8", errors="replace"))

        if len(self._buffer) > self.max_size:
            logger.warning(f"⚠️ Receive buffer overflow ({len(self._buffer)} bytes without newline), "
                           f"dropping line")
            self._buffer = b""
            self._discarding = True
        return lines

    def clear(self):
        self._buffer = b""
        self._discarding = False

    @property
    def pending(self) -> int:
        return len(self._buffer)
