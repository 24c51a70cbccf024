"""In-memory session queue fed by the terminal and the HTTP server.

Consecutive messages enqueued under the same mode are delivered as one
batch (joined by newlines) so a burst of remote messages becomes one
agent turn. Isolated messages always travel alone.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import deque
from typing import Any

from tether.engine.collaborators import SessionQueue
from tether.engine.models import AbortSignal, PendingMessage

logger = logging.getLogger(__name__)

DEFAULT_MODE: dict[str, Any] = {"permission_mode": "default"}


def mode_hash(mode: dict[str, Any]) -> str:
    """Deterministic hash of a mode dict (key order does not matter)."""
    encoded = json.dumps(mode, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class MessageQueue(SessionQueue):
    """FIFO of PendingMessage with mode-aware batching."""

    def __init__(self) -> None:
        self._items: deque[PendingMessage] = deque()
        self._changed = asyncio.Event()
        self._closed = False

    def push(
        self,
        text: str,
        mode: dict[str, Any] | None = None,
        isolate: bool = False,
    ) -> PendingMessage:
        if self._closed:
            raise RuntimeError("message queue is closed")
        mode = dict(mode or DEFAULT_MODE)
        message = PendingMessage(
            text=text, mode=mode, mode_hash=mode_hash(mode), isolate=isolate,
        )
        self._items.append(message)
        self._changed.set()
        logger.debug(
            "Queued message %s (mode=%s, isolate=%s, size=%d)",
            message.message_id[:8], message.mode_hash[:8], isolate, len(self._items),
        )
        return message

    def close(self) -> None:
        """End of input: waiters get None once the queue drains."""
        self._closed = True
        self._changed.set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_for_next_message(
        self, signal: AbortSignal,
    ) -> PendingMessage | None:
        while True:
            if signal.aborted:
                return None
            if self._items:
                return self._take_batch()
            if self._closed:
                return None
            self._changed.clear()
            changed = asyncio.create_task(self._changed.wait())
            aborted = asyncio.create_task(signal.wait())
            try:
                await asyncio.wait(
                    {changed, aborted}, return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                changed.cancel()
                aborted.cancel()

    def _take_batch(self) -> PendingMessage:
        first = self._items.popleft()
        if first.isolate:
            return first
        texts = [first.text]
        while (
            self._items
            and not self._items[0].isolate
            and self._items[0].mode_hash == first.mode_hash
        ):
            texts.append(self._items.popleft().text)
        if len(texts) == 1:
            return first
        logger.debug("Batched %d messages (mode=%s)", len(texts), first.mode_hash[:8])
        return PendingMessage(
            text="\n".join(texts),
            mode=first.mode,
            mode_hash=first.mode_hash,
        )

    def reset(self) -> None:
        if self._items:
            logger.info("Dropping %d queued messages", len(self._items))
        self._items.clear()

    def size(self) -> int:
        return len(self._items)
