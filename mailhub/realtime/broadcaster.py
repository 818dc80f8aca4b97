"""
In-process notification broadcaster.

Every realtime transport (SSE streams, Socket.IO sockets) registers its
connected clients here as subscribers; publishers call publish() without
knowing which transports exist. Scoping is decided here, server-side, for
all transports:

- a subscriber with a mailbox filter receives events whose mailboxId is in
  the filter, plus events that carry no mailboxId
- a subscriber with a topic filter receives only those topics

There is no backlog: a subscriber only sees events published while it is
registered.
"""

import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from mailhub.exceptions import TransportError
from mailhub.realtime.events import NotificationEvent

logger = structlog.get_logger()

Deliver = Callable[[NotificationEvent], Awaitable[None]]


@dataclass
class Subscriber:
    client_id: str
    deliver: Deliver
    transport: str = "sse"
    mailbox_ids: Optional[frozenset[str]] = None
    topics: Optional[frozenset[str]] = None

    def matches(self, event: NotificationEvent) -> bool:
        if self.topics and event.topic not in self.topics:
            return False
        if self.mailbox_ids and event.mailbox_id is not None:
            return event.mailbox_id in self.mailbox_ids
        return True


def _as_filter(values: Optional[Iterable[str]]) -> Optional[frozenset[str]]:
    if values is None:
        return None
    cleaned = frozenset(v.strip() for v in values if v and v.strip())
    return cleaned or None


class Broadcaster:
    """Fan-out of NotificationEvents to every matching subscriber."""

    def __init__(self):
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(
        self,
        deliver: Deliver,
        mailbox_ids: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        transport: str = "sse",
        client_id: Optional[str] = None,
    ) -> Subscriber:
        subscriber = Subscriber(
            client_id=client_id or str(uuid.uuid4()),
            deliver=deliver,
            transport=transport,
            mailbox_ids=_as_filter(mailbox_ids),
            topics=_as_filter(topics),
        )
        self._subscribers[subscriber.client_id] = subscriber
        logger.info(
            "realtime_client_connected",
            client_id=subscriber.client_id,
            transport=transport,
            mailbox_ids=sorted(subscriber.mailbox_ids) if subscriber.mailbox_ids else "all",
            total=len(self._subscribers),
        )
        return subscriber

    def unsubscribe(self, client_id: str) -> None:
        subscriber = self._subscribers.pop(client_id, None)
        if subscriber is not None:
            logger.info(
                "realtime_client_disconnected",
                client_id=client_id,
                transport=subscriber.transport,
                total=len(self._subscribers),
            )

    def client_count(self, transport: Optional[str] = None) -> int:
        if transport is None:
            return len(self._subscribers)
        return sum(1 for s in self._subscribers.values() if s.transport == transport)

    async def publish(self, event: NotificationEvent) -> int:
        """
        Deliver an event to all matching subscribers.

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0

        # Snapshot: deliveries may unsubscribe clients while we iterate
        for subscriber in list(self._subscribers.values()):
            if not subscriber.matches(event):
                continue
            try:
                await subscriber.deliver(event)
                delivered += 1
            except TransportError as exc:
                logger.warning(
                    "realtime_delivery_failed",
                    client_id=subscriber.client_id,
                    transport=subscriber.transport,
                    error=str(exc),
                )
                self.unsubscribe(subscriber.client_id)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "realtime_delivery_crashed",
                    client_id=subscriber.client_id,
                    transport=subscriber.transport,
                )
                self.unsubscribe(subscriber.client_id)

        logger.debug(
            "realtime_event_published",
            type=event.type.value,
            mailbox_id=event.mailbox_id,
            delivered=delivered,
        )
        return delivered
