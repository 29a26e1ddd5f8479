"""
sse_decoder.py - Line-level Server-Sent Events decoder for the chat stream

Decodes chat protocol events from async byte streams (httpx response.aiter_bytes()).
Handles: cross-chunk lines, multi-byte UTF-8 characters split across chunks,
CRLF normalization, comments, malformed stream_error frames.

The chat backend sends exactly one `data:` line per event followed by a blank
line, so decoding is per line rather than per accumulated event block.
"""

import codecs
import json
import logging
from typing import AsyncGenerator, AsyncIterable, List, Optional

from stream_events import StreamEvent, parse_event, recover_stream_error

logger = logging.getLogger("chatstream.sse_decoder")

DATA_PREFIX = "data:"


class LineBuffer:
    """Incremental bytes -> lines splitter.

    feed() returns only complete lines; the trailing fragment is kept until
    its terminator arrives. Decoding is stateful so a UTF-8 sequence cut
    between two chunks is reassembled instead of replaced.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._pending_cr = False

    def feed(self, data: bytes) -> List[str]:
        text = self._decoder.decode(data)
        return self._split(text)

    def flush(self) -> List[str]:
        """End of stream: return the unterminated last line, if any."""
        lines = self._split(self._decoder.decode(b"", final=True))
        if self._buffer:
            lines.append(self._buffer)
            self._buffer = ""
        self._pending_cr = False
        return lines

    def _split(self, text: str) -> List[str]:
        if not text:
            return []

        # A CR at the end of the previous chunk may be the first half of CRLF
        if self._pending_cr:
            if text.startswith("\n"):
                text = text[1:]
            self._pending_cr = False
        if text.endswith("\r"):
            self._pending_cr = True

        # Normalize all line endings to LF
        text = text.replace("\r\n", "\n").replace("\r", "\n")

        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return lines


async def iter_lines(stream: AsyncIterable[bytes]) -> AsyncGenerator[str, None]:
    """Yield complete text lines from an async byte stream."""
    buffer = LineBuffer()
    async for chunk in stream:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def decode_line(line: str) -> Optional[StreamEvent]:
    """Classify one SSE line.

    - `data: <json>` -> StreamEvent (or None if not a known event)
    - blank line     -> None (event terminator)
    - anything else  -> None (comments, event:/id:/retry: fields)

    JSON errors never propagate. A malformed stream_error frame becomes a
    synthetic StreamErrorEvent; other malformed frames are skipped.
    """
    if not line.strip():
        return None

    if not line.startswith(DATA_PREFIX):
        return None

    raw = line[len(DATA_PREFIX):].strip()
    if not raw:
        return None

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse SSE data line (%s): %.200s", e, raw)
        recovered = recover_stream_error(line)
        if recovered is None:
            logger.debug("Skipping non-error malformed frame")
        return recovered

    return parse_event(payload)


async def decode_stream(stream: AsyncIterable[bytes]) -> AsyncGenerator[StreamEvent, None]:
    """Decode protocol events from an async byte stream."""
    async for line in iter_lines(stream):
        event = decode_line(line)
        if event is not None:
            yield event
