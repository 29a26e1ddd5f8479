"""Pull-side view of a push-driven stream.

The transport read loop pushes ContentDelta items into a bounded queue; the
session controller pulls them with `async for`. One queue, one consumer:
producer and consumer never share any other state.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from typing import Any, Deque, Dict, Optional

from chunk_accumulator import ContentDelta

logger = logging.getLogger("chatstream.chunk_stream")

DEFAULT_MAXSIZE = 256
DEFAULT_POLL_INTERVAL = 0.01  # seconds


class ChunkStream:
    """Single-consumer, non-restartable async iterator of ContentDelta.

    Producer API: put(), finish(), fail().
    Consumer API: async iteration (or next()).

    A waiting consumer wakes on every put/finish and also re-checks the
    queue every poll_interval seconds. After finish(), queued deltas are
    still delivered before iteration stops; a failure is raised only once
    the backlog is drained.
    """

    def __init__(
        self,
        maxsize: int = DEFAULT_MAXSIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._items: Deque[ContentDelta] = collections.deque()
        self._maxsize = maxsize
        self._poll_interval = poll_interval
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._finished = False
        self._error: Optional[BaseException] = None
        self._exhausted = False
        self.delivered = 0

        # Metadata recorded by the producer
        self.final_event: Any = None
        self.user_message: Optional[Dict[str, Any]] = None

    @classmethod
    def from_text(cls, text: str, replace: bool = False) -> "ChunkStream":
        """A finished stream holding a single delta (empty text -> no delta)."""
        stream = cls()
        if text:
            stream._items.append(ContentDelta(text, replace=replace))
        stream.finish()
        return stream

    # ── Producer side ─────────────────────────────────────────────────

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def backlog(self) -> int:
        return len(self._items)

    async def put(self, delta: ContentDelta) -> None:
        """Queue a delta, suspending while the queue is full."""
        if self._finished:
            raise RuntimeError("put() on a finished ChunkStream")
        while len(self._items) >= self._maxsize:
            self._writable.clear()
            await self._writable.wait()
            if self._finished:
                logger.debug("Stream finished while producer waited; dropping put")
                return
        self._items.append(delta)
        self._readable.set()

    def finish(self) -> None:
        """Signal completion. Idempotent."""
        self._finished = True
        self._readable.set()
        self._writable.set()

    def fail(self, error: BaseException) -> None:
        """Complete with an error the consumer sees after the backlog."""
        if self._finished:
            return
        self._error = error
        self.finish()

    # ── Consumer side ─────────────────────────────────────────────────

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> ContentDelta:
        while True:
            if self._items:
                delta = self._items.popleft()
                self.delivered += 1
                self._writable.set()
                return delta

            if self._finished:
                if self._error is not None and not self._exhausted:
                    self._exhausted = True
                    raise self._error
                self._exhausted = True
                raise StopAsyncIteration

            self._readable.clear()
            try:
                await asyncio.wait_for(self._readable.wait(), self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def next(self) -> Optional[ContentDelta]:
        """Next delta, or None once the stream is finished and drained."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None
