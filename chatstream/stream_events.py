"""Protocol events carried in the chat SSE stream.

Every `data:` frame is a JSON object with a `type` discriminator. The set of
event kinds is closed; parse_event() validates a decoded payload and returns
None for unknown types or payloads missing their required field.

When a stream_error frame is not valid JSON (upstream error text is often
truncated mid-string), recover_stream_error() salvages a readable message
with an ordered list of regex extractors. This is best-effort: returning the
generic fallback instead of a perfect extraction is acceptable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger("chatstream.stream_events")

USER_MESSAGE = "user_message"
STREAM_START = "stream_start"
STREAM_CHUNK = "stream_chunk"
STREAM_END = "stream_end"
STREAM_CANCELLED = "stream_cancelled"
STREAM_ERROR = "stream_error"

STREAM_ERROR_MARKER = '"type":"stream_error"'
GENERIC_STREAM_ERROR = "Error occurred during streaming"


@dataclass(frozen=True)
class UserMessageEvent:
    message: Dict[str, Any]
    type: str = field(default=USER_MESSAGE, init=False)


@dataclass(frozen=True)
class StreamStartEvent:
    timestamp: Any = None
    type: str = field(default=STREAM_START, init=False)


@dataclass(frozen=True)
class StreamChunkEvent:
    chunk: str
    type: str = field(default=STREAM_CHUNK, init=False)


@dataclass(frozen=True)
class StreamEndEvent:
    message: Dict[str, Any]
    type: str = field(default=STREAM_END, init=False)


@dataclass(frozen=True)
class StreamCancelledEvent:
    message: Dict[str, Any]
    cancelled: bool = True
    type: str = field(default=STREAM_CANCELLED, init=False)


@dataclass(frozen=True)
class StreamErrorEvent:
    error: str
    status_code: Optional[int] = None
    provider: Optional[str] = None
    retryable: bool = False
    recovered: bool = False
    type: str = field(default=STREAM_ERROR, init=False)


StreamEvent = Union[
    UserMessageEvent,
    StreamStartEvent,
    StreamChunkEvent,
    StreamEndEvent,
    StreamCancelledEvent,
    StreamErrorEvent,
]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _message_payload(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    message = payload.get("message")
    return message if isinstance(message, dict) else None


def parse_event(payload: Any) -> Optional[StreamEvent]:
    """Validate a decoded JSON payload into a StreamEvent.

    Returns None (and logs at debug) for anything outside the closed set.
    """
    if not isinstance(payload, dict):
        logger.debug("Dropping non-object SSE payload: %r", payload)
        return None

    event_type = payload.get("type")

    if event_type == STREAM_CHUNK:
        chunk = payload.get("chunk")
        if not isinstance(chunk, str):
            logger.debug("Dropping stream_chunk without string chunk")
            return None
        return StreamChunkEvent(chunk=chunk)

    if event_type == USER_MESSAGE:
        message = _message_payload(payload)
        if message is None:
            logger.debug("Dropping user_message without message")
            return None
        return UserMessageEvent(message=message)

    if event_type == STREAM_START:
        return StreamStartEvent(timestamp=payload.get("timestamp"))

    if event_type == STREAM_END:
        return StreamEndEvent(message=_message_payload(payload) or {})

    if event_type == STREAM_CANCELLED:
        return StreamCancelledEvent(
            message=_message_payload(payload) or {},
            cancelled=bool(payload.get("cancelled", True)),
        )

    if event_type == STREAM_ERROR:
        error = payload.get("error")
        if not isinstance(error, str) or not error:
            error = "An error occurred during streaming"
        return StreamErrorEvent(
            error=error,
            status_code=_as_int(payload.get("statusCode")),
            provider=payload.get("provider") if isinstance(payload.get("provider"), str) else None,
            retryable=bool(payload.get("retryable", False)),
        )

    logger.debug("Dropping SSE event with unknown type %r", event_type)
    return None


# ── Malformed stream_error recovery ───────────────────────────────────


def _regex_extractor(pattern: str) -> Callable[[str], Optional[str]]:
    compiled = re.compile(pattern)

    def extract(line: str) -> Optional[str]:
        match = compiled.search(line)
        if match and match.group(1):
            return match.group(1)
        return None

    return extract


# Tried in order; first non-empty match wins.
ERROR_EXTRACTORS: List[Callable[[str], Optional[str]]] = [
    # Properly quoted "error":"..." (escaped quotes allowed)
    _regex_extractor(r'"error"\s*:\s*"((?:[^"\\]|\\.)+)"'),
    # Unterminated string: stream cut mid-message
    _regex_extractor(r'"error"\s*:\s*"((?:[^"\\]|\\.)*)'),
    # Anything that looks like "429 Too many requests ..."
    _regex_extractor(r'(\d{3}\s+[^"]+(?:https?://[^\s"]+)?[^"]*)'),
]

_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "r": "\r", "t": "\t"}
_ESCAPE_RE = re.compile(r'\\(["\\nrt])')


def unescape_json_text(text: str) -> str:
    """Undo the common JSON string escapes in a single left-to-right pass."""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(1)], text)


def extract_error_text(line: str) -> str:
    """Best-effort error message from a raw, unparseable stream_error line."""
    for extractor in ERROR_EXTRACTORS:
        found = extractor(line)
        if found:
            text = unescape_json_text(found).strip()
            if text:
                return text
    return GENERIC_STREAM_ERROR


def recover_stream_error(line: str) -> Optional[StreamErrorEvent]:
    """Synthesize a StreamErrorEvent from a malformed line, if it is one."""
    if STREAM_ERROR_MARKER not in line.replace(" ", ""):
        return None
    error = extract_error_text(line)
    logger.warning("Recovered malformed stream_error event: %s", error)
    return StreamErrorEvent(error=error, recovered=True)
