from __future__ import annotations

import asyncio

import pytest

from tether.adapters.message_queue import DEFAULT_MODE, MessageQueue, mode_hash
from tether.engine.models import AbortSignal


def test_mode_hash_ignores_key_order() -> None:
    assert mode_hash({"a": 1, "b": 2}) == mode_hash({"b": 2, "a": 1})
    assert mode_hash({"permission_mode": "yolo"}) != mode_hash(DEFAULT_MODE)


@pytest.mark.asyncio
async def test_same_mode_messages_are_batched() -> None:
    queue = MessageQueue()
    queue.push("first")
    queue.push("second")
    queue.push("third", mode={"permission_mode": "yolo"})

    batch = await queue.wait_for_next_message(AbortSignal())
    assert batch is not None
    assert batch.text == "first\nsecond"
    assert batch.mode == DEFAULT_MODE

    nxt = await queue.wait_for_next_message(AbortSignal())
    assert nxt is not None
    assert nxt.text == "third"
    assert nxt.mode_hash == mode_hash({"permission_mode": "yolo"})
    assert queue.size() == 0


@pytest.mark.asyncio
async def test_isolated_messages_travel_alone() -> None:
    queue = MessageQueue()
    queue.push("one")
    queue.push("two", isolate=True)
    queue.push("three")

    texts = [(await queue.wait_for_next_message(AbortSignal())).text for _ in range(3)]
    assert texts == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_wait_returns_pushed_message() -> None:
    queue = MessageQueue()
    waiter = asyncio.create_task(queue.wait_for_next_message(AbortSignal()))
    await asyncio.sleep(0)
    assert not waiter.done()

    pushed = queue.push("hello")
    message = await asyncio.wait_for(waiter, timeout=1.0)
    assert message == pushed


@pytest.mark.asyncio
async def test_abort_wakes_waiter_with_none() -> None:
    queue = MessageQueue()
    signal = AbortSignal()
    waiter = asyncio.create_task(queue.wait_for_next_message(signal))
    await asyncio.sleep(0)

    signal.abort("abort")
    assert await asyncio.wait_for(waiter, timeout=1.0) is None

    # An aborted signal never hands out messages.
    queue.push("queued")
    assert await queue.wait_for_next_message(signal) is None
    assert queue.size() == 1


@pytest.mark.asyncio
async def test_close_drains_then_ends() -> None:
    queue = MessageQueue()
    queue.push("last words")
    queue.close()

    with pytest.raises(RuntimeError):
        queue.push("too late")
    message = await queue.wait_for_next_message(AbortSignal())
    assert message is not None and message.text == "last words"
    assert await queue.wait_for_next_message(AbortSignal()) is None


def test_reset_drops_everything() -> None:
    queue = MessageQueue()
    queue.push("a")
    queue.push("b")
    queue.reset()
    assert queue.size() == 0
