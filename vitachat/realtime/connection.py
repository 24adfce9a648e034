"""
One live WebSocket connection.

Frames are never written to the socket from the caller's stack: ``send``
encodes the frame and appends it to the connection's outbound queue, and a
writer task drains the queue in order.  ``send`` therefore never suspends,
and per-connection order equals call order.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from vitachat.log import get_logger
from vitachat.observability.metrics import metrics
from vitachat.realtime.protocol import ServerFrame

logger = get_logger(__name__)

_CLOSE = object()


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Transport(Protocol):
    """Subset of starlette's WebSocket used for outbound traffic."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


def room_id_for(user_id: str) -> str:
    return f"room_{user_id}"


class Connection:

    def __init__(
        self,
        transport: Transport,
        connection_id: Optional[str] = None,
        queue_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.id = connection_id or uuid.uuid4().hex[:12]
        self.transport = transport
        self.state = ConnectionState.UNAUTHENTICATED
        self.user_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.history: List[Dict[str, str]] = []
        self._clock = clock
        self.last_activity = clock()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._closing = False

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user={self.user_id}, session={self.session_id}, state={self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.CLOSED and not self._closing

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED and self.is_open

    def touch(self) -> None:
        self.last_activity = self._clock()

    def authenticate(self, user_id: str, session_id: str) -> None:
        self.user_id = user_id
        self.session_id = session_id
        self.room_id = room_id_for(user_id)
        self.state = ConnectionState.AUTHENTICATED
        self.touch()

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(
                self._pump(), name=f"ws-writer-{self.id}"
            )

    def send(self, frame: ServerFrame) -> bool:
        """Queue *frame*; False when the connection is closing or closed."""
        if not self.is_open:
            return False
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning("[ws] outbound queue full on %s, dropped oldest frame (%.60s)", self.id, dropped)
        self._queue.put_nowait(frame.encode())
        metrics.ws_frames_sent_total.labels(type=frame.type.value).inc()
        return True

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            try:
                await self.transport.send_text(item)
            except Exception as e:
                logger.info("[ws] send failed on %s, stopping writer: %s", self.id, e)
                self.state = ConnectionState.CLOSED
                return

    async def close(self, code: int = 1000, reason: str = "", drain_timeout: float = 1.0) -> None:
        """Flush queued frames, then close the socket."""
        if self.state == ConnectionState.CLOSED or self._closing:
            return
        self._closing = True
        if self._writer is not None and not self._writer.done():
            # the sentinel may wait behind a full queue
            await self._queue.put(_CLOSE)
            try:
                await asyncio.wait_for(asyncio.shield(self._writer), timeout=drain_timeout)
            except asyncio.TimeoutError:
                self._writer.cancel()
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("[ws] close on %s raised: %s", self.id, e)
        self.mark_closed()

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
