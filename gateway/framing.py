"""Content-Length framing for JSON-RPC over byte streams.

Each message on the wire is::

    Content-Length: <N>\\r\\n
    \\r\\n
    <N bytes of UTF-8 JSON>

``FrameDecoder`` is a small state machine driven by ``feed(data)``. It copes
with headers and bodies split across arbitrary chunk boundaries and with
several frames arriving in one chunk. Faults (oversized frames, bad headers,
undecodable bodies) are reported through ``on_error`` and parsing continues,
so one bad frame never takes down the whole connection.
"""

import enum
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10 * 1024 * 1024
MAX_BUFFER_SIZE = 20 * 1024 * 1024

HEADER_TERMINATOR = b"\r\n\r\n"
_CONTENT_LENGTH_RE = re.compile(
    rb"(?:^|\r\n)content-length:[ \t]*(\S*)[ \t]*(?:\r\n|$)", re.IGNORECASE
)


class FramingError(Exception):
    """Raised (or reported) when the byte stream cannot be framed."""


class DecoderState(enum.Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_BODY = "awaiting_body"


def encode_message(message: Dict[str, Any]) -> bytes:
    """Serialize *message* as a single framed byte string."""
    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def _log_framing_error(error: FramingError) -> None:
    logger.warning("Framing error: %s", error)


class FrameDecoder:
    """Incremental decoder for Content-Length framed JSON messages."""

    def __init__(
        self,
        on_error: Optional[Callable[[FramingError], None]] = None,
        *,
        max_content_length: int = MAX_CONTENT_LENGTH,
        max_buffer_size: int = MAX_BUFFER_SIZE,
    ):
        self._buffer = bytearray()
        self._state = DecoderState.AWAITING_HEADER
        self._expected_length = 0
        self._on_error = on_error or _log_framing_error
        self.max_content_length = max_content_length
        self.max_buffer_size = max_buffer_size

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()
        self._state = DecoderState.AWAITING_HEADER
        self._expected_length = 0

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """Consume *data* and return every complete message it finishes."""
        if data:
            self._buffer.extend(data)

        if len(self._buffer) > self.max_buffer_size:
            size = len(self._buffer)
            self.reset()
            self._report(FramingError(
                f"Buffer overflow: {size} bytes exceeds limit of "
                f"{self.max_buffer_size}; buffer discarded"
            ))
            return []

        messages: List[Dict[str, Any]] = []
        while True:
            if self._state is DecoderState.AWAITING_HEADER:
                if not self._parse_header():
                    break
            else:
                if len(self._buffer) < self._expected_length:
                    break
                body = bytes(self._buffer[:self._expected_length])
                del self._buffer[:self._expected_length]
                self._state = DecoderState.AWAITING_HEADER
                self._expected_length = 0
                message = self._decode_body(body)
                if message is not None:
                    messages.append(message)
        return messages

    def _parse_header(self) -> bool:
        """Try to consume one header block. Returns False when more bytes are needed."""
        end = self._buffer.find(HEADER_TERMINATOR)
        if end == -1:
            return False

        header = bytes(self._buffer[:end])
        del self._buffer[:end + len(HEADER_TERMINATOR)]

        match = _CONTENT_LENGTH_RE.search(header)
        if not match:
            self._report(FramingError(
                f"Missing Content-Length header: {header[:200]!r}"
            ))
            return True

        raw_length = match.group(1)
        length = int(raw_length) if raw_length.isdigit() else -1
        if length < 0 or length > self.max_content_length:
            self._report(FramingError(
                f"Invalid Content-Length: {raw_length[:50]!r} "
                f"(limit {self.max_content_length})"
            ))
            return True

        self._expected_length = length
        self._state = DecoderState.AWAITING_BODY
        return True

    def _decode_body(self, body: bytes) -> Optional[Dict[str, Any]]:
        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._report(FramingError(f"Malformed message body: {e}"))
            return None
        if not isinstance(message, dict):
            self._report(FramingError(
                f"Expected a JSON object, got {type(message).__name__}"
            ))
            return None
        return message

    def _report(self, error: FramingError) -> None:
        try:
            self._on_error(error)
        except Exception as cb_err:
            logger.debug("Framing error callback failed: %s", cb_err)
