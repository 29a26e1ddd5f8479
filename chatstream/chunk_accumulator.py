"""Accumulate streamed chunks into the assistant's full response text.

Ordinary chunks append. A chunk starting with REPLACE: overwrites everything
accumulated so far, which lets one message rewrite its own content (for
example "Generating image..." turning into the final caption).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from stream_events import (
    StreamCancelledEvent,
    StreamChunkEvent,
    StreamEndEvent,
    StreamErrorEvent,
    StreamEvent,
    UserMessageEvent,
)

logger = logging.getLogger("chatstream.chunk_accumulator")

REPLACE_MARKER = "REPLACE:"


@dataclass(frozen=True)
class ContentDelta:
    """One unit handed to the consumer."""

    text: str
    replace: bool = False

    def apply(self, previous: str) -> str:
        return self.text if self.replace else previous + self.text


class ChunkAccumulator:
    def __init__(self) -> None:
        self._content = ""
        self._done = False
        self.final_event: Optional[StreamEvent] = None
        self.user_message: Optional[Dict[str, Any]] = None
        self.error: Optional[StreamErrorEvent] = None
        self.chunk_count = 0

    @property
    def content(self) -> str:
        return self._content

    @property
    def done(self) -> bool:
        return self._done

    def apply(self, event: StreamEvent) -> Optional[ContentDelta]:
        """Fold one event in. Returns the delta to deliver, if any."""
        if self._done:
            logger.debug("Ignoring %s after stream completion", event.type)
            return None

        if isinstance(event, StreamChunkEvent):
            return self._apply_chunk(event.chunk)

        if isinstance(event, (StreamEndEvent, StreamCancelledEvent)):
            self._done = True
            self.final_event = event
            return None

        if isinstance(event, StreamErrorEvent):
            # The error text becomes the visible end of the message
            self._done = True
            self.final_event = event
            self.error = event
            return self._apply_chunk(event.error)

        if isinstance(event, UserMessageEvent):
            self.user_message = event.message

        return None

    def _apply_chunk(self, chunk: str) -> Optional[ContentDelta]:
        if chunk.startswith(REPLACE_MARKER):
            text = chunk[len(REPLACE_MARKER):]
            self._content = text
            self.chunk_count += 1
            return ContentDelta(text, replace=True)

        if not chunk:
            return None

        self._content += chunk
        self.chunk_count += 1
        return ContentDelta(chunk)

    def finish(self) -> None:
        """Mark complete without a terminal event (transport EOF)."""
        self._done = True
