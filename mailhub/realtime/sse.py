"""
Server-Sent Events adapter over the broadcaster.

Each open stream is one SSEConnection: it registers a subscriber at connect
time, buffers matching events in a queue and renders them as
`data: <json>\\n\\n` frames. The first frame is always the `connected`
event carrying the generated clientId; idle streams get a heartbeat comment.
"""

import asyncio
import json
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

from starlette.responses import StreamingResponse

from mailhub.exceptions import TransportError
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.events import NotificationEvent, connected_event

# Events buffered per client before the client counts as dead
MAX_QUEUED_EVENTS = 1000

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_frame(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


def heartbeat_frame() -> str:
    return f":heartbeat {int(time.time() * 1000)}\n\n"


class SSEConnection:
    """One client's event stream."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        render: Callable[[NotificationEvent], dict[str, Any]],
        mailbox_ids: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        heartbeat_seconds: float = 30.0,
    ):
        self.broadcaster = broadcaster
        self.render = render
        self.heartbeat_seconds = heartbeat_seconds
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_QUEUED_EVENTS)
        self.subscriber = broadcaster.subscribe(
            self._deliver, mailbox_ids=mailbox_ids, topics=topics, transport="sse"
        )

    @property
    def client_id(self) -> str:
        return self.subscriber.client_id

    @property
    def pending(self) -> int:
        """Events queued but not yet written to the client."""
        return self._queue.qsize()

    async def _deliver(self, event: NotificationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as exc:
            raise TransportError(f"SSE client {self.client_id} is not reading") from exc

    def close(self) -> None:
        self.broadcaster.unsubscribe(self.client_id)

    async def frames(
        self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None
    ) -> AsyncIterator[str]:
        try:
            yield format_frame(connected_event(self.client_id))

            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self.heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield heartbeat_frame()
                    continue
                yield format_frame(self.render(event))
        finally:
            self.close()

    def response(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> StreamingResponse:
        return StreamingResponse(
            self.frames(is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
