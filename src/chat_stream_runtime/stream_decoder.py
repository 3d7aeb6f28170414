"""Demultiplexer for the chat streaming endpoint.

The backend either frames its response as a JSON metadata preamble, eight
zero bytes and then the UTF-8 body, or sends the body as plain UTF-8 with no
framing at all. The format is decided from the first non-whitespace byte.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

from loguru import logger

DELIMITER = b"\x00" * 8
MAX_PREAMBLE_BYTES = 32 * 1024

_WHITESPACE = b" \t\n\r"
_OPEN_BRACE = ord("{")


@dataclass(frozen=True)
class DecodedChunk:
    text: str
    metadata: dict[str, Any] | None = None


_EMPTY = DecodedChunk(text="")


def _first_non_whitespace_byte(data: bytes | bytearray) -> int | None:
    for byte in data:
        if byte not in _WHITESPACE:
            return byte
    return None


def _parse_metadata(raw: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as ex:
        logger.debug(f"Dropping malformed stream metadata ({len(raw)} bytes): {ex}")
        return None
    if not isinstance(parsed, dict):
        logger.debug(f"Dropping non-object stream metadata: {type(parsed).__name__}")
        return None
    return parsed


class HybridStreamDecoder:
    """Per-stream decoder. Create a new instance for every streaming attempt."""

    def __init__(self, *, max_preamble_bytes: int = MAX_PREAMBLE_BYTES):
        self._max_preamble_bytes = max_preamble_bytes
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = bytearray()
        self._body_started = False
        self._plain_text = False
        self._scanned = 0

    @property
    def body_started(self) -> bool:
        return self._body_started

    @property
    def plain_text(self) -> bool:
        return self._plain_text

    def push(self, chunk: bytes | None) -> DecodedChunk:
        if not chunk:
            return _EMPTY

        if self._body_started:
            return DecodedChunk(text=self._text_decoder.decode(chunk))

        self._buffer.extend(chunk)

        first = _first_non_whitespace_byte(self._buffer)
        if first is not None and first != _OPEN_BRACE:
            self._plain_text = True
            return self._start_body(bytes(self._buffer))

        at = self._buffer.find(DELIMITER, self._scanned)
        if at != -1:
            metadata = _parse_metadata(bytes(self._buffer[:at]))
            body = bytes(self._buffer[at + len(DELIMITER):])
            started = self._start_body(body)
            return DecodedChunk(text=started.text, metadata=metadata)

        if len(self._buffer) >= self._max_preamble_bytes:
            logger.warning(
                f"No metadata delimiter within {self._max_preamble_bytes} bytes; treating stream as body text"
            )
            return self._start_body(bytes(self._buffer))

        # A delimiter may straddle the next chunk boundary.
        self._scanned = max(0, len(self._buffer) - len(DELIMITER) + 1)
        return _EMPTY

    def finish(self) -> DecodedChunk:
        """Flush bytes held back by the UTF-8 decoder at end of stream."""
        if not self._body_started:
            if self._buffer:
                logger.debug(f"Stream ended inside metadata preamble; discarding {len(self._buffer)} bytes")
            self._buffer.clear()
            return _EMPTY
        return DecodedChunk(text=self._text_decoder.decode(b"", final=True))

    def _start_body(self, body: bytes) -> DecodedChunk:
        self._body_started = True
        self._buffer = bytearray()
        self._scanned = 0
        if not body:
            return _EMPTY
        return DecodedChunk(text=self._text_decoder.decode(body))
