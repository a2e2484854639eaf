"""
Message framing for the upstream API.

Messages are JSON objects separated by a fixed terminator byte (newline or
NUL, depending on deployment). The framer buffers partial input across reads.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..exceptions import ProtocolError

logger = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 1024 * 1024


@dataclass
class Frame:
    """One decoded unit from the byte stream: a message or a decode error."""
    message: Optional[Dict[str, Any]] = None
    error: Optional[ProtocolError] = None


class MessageFramer:
    """Splits a byte stream into JSON messages and encodes outgoing ones."""

    def __init__(self, delimiter: bytes = b"\n", max_message_bytes: int = MAX_MESSAGE_BYTES):
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single byte")
        self.delimiter = delimiter
        self.max_message_bytes = max_message_bytes
        self._buffer = bytearray()

    def reset(self) -> None:
        """Drop any partially received message."""
        self._buffer.clear()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def encode(self, message: Dict[str, Any]) -> bytes:
        """Serialize a message including its terminator."""
        data = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        if self.delimiter in data:
            # only possible with NUL, which JSON escapes, so this is a bug upstream of us
            raise ProtocolError("encoded message contains the delimiter byte")
        return data + self.delimiter

    def feed(self, data: bytes) -> List[Frame]:
        """Add received bytes, return all complete frames."""
        self._buffer.extend(data)
        frames: List[Frame] = []
        while True:
            end = self._buffer.find(self.delimiter)
            if end < 0:
                break
            raw = bytes(self._buffer[:end])
            del self._buffer[:end + 1]
            if not raw.strip():
                continue
            frames.append(self._decode(raw))

        if len(self._buffer) > self.max_message_bytes:
            size = len(self._buffer)
            self._buffer.clear()
            frames.append(Frame(error=ProtocolError(
                f"message exceeds {self.max_message_bytes} bytes without terminator ({size} buffered)"
            )))
        return frames

    @staticmethod
    def _decode(raw: bytes) -> Frame:
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return Frame(error=ProtocolError(f"invalid JSON message: {e}"))
        if not isinstance(obj, dict):
            return Frame(error=ProtocolError(
                f"expected a JSON object but received {type(obj).__name__}"
            ))
        return Frame(message=obj)
