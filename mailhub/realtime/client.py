"""
Realtime client for dashboards and CLI tools.

Consumes a notification stream, keeps a local query cache fresh and collects
new-mail entries for a notification panel. Connection lifecycle:

    disconnected -> connecting -> connected -> (error) -> disconnected -> ...

After an error the client schedules exactly one reconnect after a fixed
delay. There is no backoff and no retry cap; stop() cancels everything.
"""

import asyncio
import contextlib
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Optional
from urllib.parse import urlencode

import httpx
import structlog

from mailhub.config import Settings
from mailhub.exceptions import TransportError
from mailhub.realtime.events import EventType, TOPICS, utc_timestamp

logger = structlog.get_logger()

DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_PANEL_CAPACITY = 100

# Cached views to refresh whenever new mail lands
EMAIL_QUERY_KEYS = ("emails", "threads", "threadDetails")

NEW_EMAIL_KINDS = {EventType.NEW_EMAIL.value, TOPICS[EventType.NEW_EMAIL]}
SYNC_COMPLETED_KINDS = {EventType.SYNC_COMPLETED.value, TOPICS[EventType.SYNC_COMPLETED]}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ============ QUERY CACHE ============

class QueryCache:
    """Minimal keyed cache with invalidation tracking."""

    def __init__(self):
        self._data: dict[str, Any] = {}
        self.invalidations: list[str] = []

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def invalidate(self, key: str) -> None:
        self._data.pop(key, None)
        self.invalidations.append(key)


# ============ NOTIFICATION PANEL ============

@dataclass
class PanelNotification:
    type: str
    title: str
    body: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utc_timestamp)
    read: bool = False


class NotificationPanel:
    """Newest-first list of recent notifications, bounded to `capacity`."""

    def __init__(self, capacity: int = DEFAULT_PANEL_CAPACITY):
        self._items: deque = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen

    @property
    def items(self) -> list[PanelNotification]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def add(self, notification: PanelNotification) -> None:
        # appendleft drops the oldest entry from the right once full
        self._items.appendleft(notification)

    def mark_read(self, notification_id: str) -> bool:
        for item in self._items:
            if item.id == notification_id:
                item.read = True
                return True
        return False

    def clear(self) -> None:
        self._items.clear()

    def unread_count(self) -> int:
        return sum(1 for item in self._items if not item.read)


# ============ TRANSPORT ============

class SSETransport:
    """Reads `data:` frames from the realtime SSE endpoint with httpx."""

    def __init__(
        self,
        base_url: str,
        mailbox_ids: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        path: str = "/api/realtime/stream",
        connect_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.mailbox_ids = list(mailbox_ids or [])
        self.topics = list(topics or [])
        self.path = path
        self.connect_timeout = connect_timeout

    @property
    def url(self) -> str:
        params = {}
        if self.topics:
            params["topics"] = ",".join(self.topics)
        if self.mailbox_ids:
            params["mailboxId"] = ",".join(self.mailbox_ids)
        query = f"?{urlencode(params)}" if params else ""
        return f"{self.base_url}{self.path}{query}"

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout) as http:
            async with http.stream("GET", self.url, headers={"Accept": "text/event-stream"}) as response:
                if response.status_code != 200:
                    raise TransportError(f"Stream refused with status {response.status_code}")

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        frame = json.loads(line[len("data:"):].strip())
                    except ValueError:
                        logger.warning("realtime_frame_unparseable", line=line[:200])
                        continue
                    if not isinstance(frame, dict):
                        logger.warning("realtime_frame_ignored", line=line[:200])
                        continue
                    yield frame


# ============ CLIENT ============

class RealtimeClient:
    """
    Reconnecting stream consumer.

    Args:
        transport: Object with an async-generator `events()` method
        cache: QueryCache whose email views are invalidated on new mail
        panel: NotificationPanel receiving new-mail entries
        reconnect_delay: Seconds between an error and the next attempt
        call_later: Timer factory `(delay, callback) -> handle with cancel()`;
            defaults to the running event loop's call_later
    """

    def __init__(
        self,
        transport,
        cache: Optional[QueryCache] = None,
        panel: Optional[NotificationPanel] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        enabled: bool = True,
        call_later: Optional[Callable[[float, Callable[[], None]], Any]] = None,
    ):
        self.transport = transport
        self.cache = cache if cache is not None else QueryCache()
        self.panel = panel if panel is not None else NotificationPanel()
        self.reconnect_delay = reconnect_delay
        self.enabled = enabled
        self._call_later = call_later

        self.state = ConnectionState.DISCONNECTED
        self.client_id: Optional[str] = None
        self._cleaning_up = False
        self._reconnect_timer = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        base_url: str,
        mailbox_ids: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        cache: Optional[QueryCache] = None,
    ) -> "RealtimeClient":
        """Client over the SSE stream with delay and panel size taken from settings."""
        return cls(
            SSETransport(base_url, mailbox_ids=mailbox_ids, topics=topics),
            cache=cache,
            panel=NotificationPanel(capacity=settings.notification_panel_capacity),
            reconnect_delay=settings.reconnect_delay_seconds,
        )

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # ============ LIFECYCLE ============

    def start(self) -> None:
        """Open the connection in the background."""
        if not self.enabled or self._cleaning_up:
            return
        if self._task is not None and not self._task.done():
            return
        self.state = ConnectionState.CONNECTING
        self._task = asyncio.create_task(self.connect())

    async def connect(self) -> None:
        """Run one connection until it fails or is cancelled."""
        self.state = ConnectionState.CONNECTING
        frames = self.transport.events()
        try:
            async for frame in frames:
                if self.state != ConnectionState.CONNECTED:
                    self.state = ConnectionState.CONNECTED
                    logger.info("realtime_connected")
                self.handle_frame(frame)
            raise TransportError("Stream closed by server")
        except (httpx.HTTPError, httpx.StreamError, TransportError) as exc:
            self._on_error(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("realtime_stream_crashed")
            self._on_error(exc)
        finally:
            await frames.aclose()

    async def stop(self) -> None:
        """Tear down: no reconnect is scheduled after this."""
        self._cleaning_up = True
        self._cancel_reconnect()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.state = ConnectionState.DISCONNECTED

    def _on_error(self, exc: Exception) -> None:
        self.state = ConnectionState.DISCONNECTED
        if self._cleaning_up:
            return

        logger.warning("realtime_connection_lost", error=str(exc), retry_in=self.reconnect_delay)
        self._cancel_reconnect()
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._reconnect_timer = call_later(self.reconnect_delay, self._reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._cleaning_up:
            return
        logger.info("realtime_reconnecting")
        self.start()

    # ============ FRAMES ============

    def handle_frame(self, frame: Any) -> None:
        """Apply one frame in either the flat or the topic-envelope shape."""
        if not isinstance(frame, dict):
            logger.warning("realtime_frame_ignored", frame_type=type(frame).__name__)
            return

        kind = frame.get("topic") or frame.get("type")
        payload = frame.get("payload") if "topic" in frame else frame
        if not isinstance(payload, dict):
            payload = {}

        if kind == EventType.CONNECTED.value:
            self.client_id = frame.get("clientId")
            return

        if kind in NEW_EMAIL_KINDS:
            self._invalidate_email_views()
            sender = payload.get("from")
            if not isinstance(sender, dict):
                sender = {}
            self.panel.add(
                PanelNotification(
                    type=TOPICS[EventType.NEW_EMAIL],
                    title=payload.get("subject") or "(No subject)",
                    body=f"From: {sender.get('displayName') or sender.get('emailAddress') or 'Unknown'}",
                    data=payload,
                )
            )
        elif kind in SYNC_COMPLETED_KINDS:
            created = payload.get("messagesCreated")
            if isinstance(created, int) and created > 0:
                self._invalidate_email_views()

    def _invalidate_email_views(self) -> None:
        for key in EMAIL_QUERY_KEYS:
            self.cache.invalidate(key)
