"""Websocket connection — the outbound side of a terminal client."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from fastapi import WebSocket

from agentterm.session.wire import offer_nowait

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000


class WebSocketConnection:
    """Queues shell output for one websocket and sends it from a pump task.

    ``send_output``/``send_exit`` are called synchronously from the shell's
    output pipeline, so they only enqueue. ``pump()`` drains the queue onto
    the socket: raw output as binary frames, the exit notice as a JSON text
    frame. The pump returns after the exit notice or ``close()``.

    The queue is bounded. A client that cannot keep up loses its oldest
    output chunks. Only output precedes the exit notice, so the notice and
    the close sentinel that follows it are never the ones evicted.
    """

    def __init__(
        self,
        websocket: WebSocket,
        connection_id: str | None = None,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
    ) -> None:
        if queue_size < 2:
            raise ValueError("queue_size must leave room for the exit notice")
        self.id = connection_id or uuid.uuid4().hex[:12]
        self._websocket = websocket
        self._queue: asyncio.Queue[bytes | dict[str, Any] | None] = asyncio.Queue(
            maxsize=queue_size
        )
        self._finished = False
        self._dropped = 0

    def _enqueue(self, item: bytes | dict[str, Any] | None) -> None:
        if offer_nowait(self._queue, item):
            self._dropped += 1
            if self._dropped == 1:
                logger.warning("Connection %s lagging, dropping oldest output", self.id)

    def send_output(self, data: bytes) -> None:
        if not self._finished:
            self._enqueue(data)

    def send_exit(self, exit_code: int | None) -> None:
        if self._finished:
            return
        self._enqueue({"type": "exit", "code": exit_code})
        self.close()

    def close(self) -> None:
        """Stop the pump once everything queued so far has been sent."""
        if not self._finished:
            self._finished = True
            self._enqueue(None)

    async def pump(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                logger.debug("Connection %s output drained", self.id)
                return
            if isinstance(item, bytes):
                await self._websocket.send_bytes(item)
            else:
                await self._websocket.send_json(item)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        """Output chunks discarded because the client fell behind."""
        return self._dropped
