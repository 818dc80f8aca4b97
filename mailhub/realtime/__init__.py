"""
Realtime delivery of mailbox events.

- events: NotificationEvent and its two wire renderings
- broadcaster: single server-side pub/sub with mailbox/topic scoping
- sse / socket_gateway: transport adapters over the broadcaster
- client: reconnecting stream consumer used by dashboards and tools
"""

from mailhub.realtime.broadcaster import Broadcaster, Subscriber
from mailhub.realtime.events import EventType, NotificationEvent

__all__ = ["Broadcaster", "Subscriber", "EventType", "NotificationEvent"]
