"""Tests for the bounded pull iterator between read loop and controller."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chunk_accumulator import ContentDelta
from chunk_stream import ChunkStream


def run(coro):
    """Run async test in event loop."""
    return asyncio.new_event_loop().run_until_complete(coro)


async def _drain(stream):
    return [delta.text async for delta in stream]


class TestDelivery:
    def test_order_preserved(self):
        async def scenario():
            stream = ChunkStream()
            for text in ("a", "b", "c"):
                await stream.put(ContentDelta(text))
            stream.finish()
            return await _drain(stream)

        assert run(scenario()) == ["a", "b", "c"]

    def test_backlog_delivered_after_finish(self):
        async def scenario():
            stream = ChunkStream()
            await stream.put(ContentDelta("x"))
            stream.finish()
            assert stream.backlog == 1
            first = await stream.next()
            return first, await stream.next(), stream.delivered

        first, after, delivered = run(scenario())
        assert first.text == "x"
        assert after is None
        assert delivered == 1

    def test_consumer_waits_for_producer(self):
        async def scenario():
            stream = ChunkStream(poll_interval=0.005)

            async def produce():
                for text in ("one", "two"):
                    await asyncio.sleep(0.02)
                    await stream.put(ContentDelta(text))
                stream.finish()

            task = asyncio.create_task(produce())
            result = await _drain(stream)
            await task
            return result

        assert run(scenario()) == ["one", "two"]

    def test_finish_is_idempotent(self):
        async def scenario():
            stream = ChunkStream()
            stream.finish()
            stream.finish()
            return await stream.next()

        assert run(scenario()) is None

    def test_put_after_finish_rejected(self):
        async def scenario():
            stream = ChunkStream()
            stream.finish()
            await stream.put(ContentDelta("late"))

        with pytest.raises(RuntimeError):
            run(scenario())

    def test_from_text(self):
        async def scenario():
            stream = ChunkStream.from_text("![image](u)")
            return [d async for d in stream]

        deltas = run(scenario())
        assert deltas == [ContentDelta("![image](u)")]

    def test_from_empty_text(self):
        async def scenario():
            return await _drain(ChunkStream.from_text(""))

        assert run(scenario()) == []

    def test_invalid_maxsize(self):
        with pytest.raises(ValueError):
            ChunkStream(maxsize=0)


class TestBackpressure:
    def test_put_suspends_while_full(self):
        async def scenario():
            stream = ChunkStream(maxsize=1)
            await stream.put(ContentDelta("a"))
            pending = asyncio.create_task(stream.put(ContentDelta("b")))
            await asyncio.sleep(0.01)
            blocked = not pending.done()
            first = await stream.next()
            await asyncio.wait_for(pending, 1)
            second = await stream.next()
            stream.finish()
            return blocked, first.text, second.text, await stream.next()

        blocked, first, second, tail = run(scenario())
        assert blocked
        assert (first, second) == ("a", "b")
        assert tail is None

    def test_no_delta_dropped_under_pressure(self):
        async def scenario():
            stream = ChunkStream(maxsize=2)

            async def produce():
                for i in range(50):
                    await stream.put(ContentDelta(str(i)))
                stream.finish()

            task = asyncio.create_task(produce())
            received = await _drain(stream)
            await task
            return received

        assert run(scenario()) == [str(i) for i in range(50)]


class TestFailure:
    def test_error_raised_after_backlog(self):
        async def scenario():
            stream = ChunkStream()
            await stream.put(ContentDelta("partial"))
            stream.fail(ConnectionError("reset"))
            received = []
            with pytest.raises(ConnectionError):
                async for delta in stream:
                    received.append(delta.text)
            return received, await stream.next()

        received, after = run(scenario())
        assert received == ["partial"]
        assert after is None

    def test_fail_after_finish_ignored(self):
        async def scenario():
            stream = ChunkStream()
            stream.finish()
            stream.fail(RuntimeError("late"))
            return await _drain(stream)

        assert run(scenario()) == []
