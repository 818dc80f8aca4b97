"""
Realtime event contract.

A NotificationEvent is published once and rendered per transport:
- to_notification(): flat dict used by /api/notifications/stream
  ({"type", "timestamp", "mailboxId", ...payload})
- to_envelope(): topic envelope used by /api/realtime/stream and Socket.IO
  ({"topic", "payload", "scope", "timestamp"})
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    CONNECTED = "connected"
    NEW_EMAIL = "new_email"
    EMAIL_UPDATED = "email_updated"
    EMAIL_DELETED = "email_deleted"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"


TOPICS = {
    EventType.NEW_EMAIL: "email.received",
    EventType.EMAIL_UPDATED: "email.updated",
    EventType.EMAIL_DELETED: "email.deleted",
    EventType.SYNC_STARTED: "sync.started",
    EventType.SYNC_COMPLETED: "sync.completed",
}

TOPIC_TYPES = {topic: event_type for event_type, topic in TOPICS.items()}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class NotificationEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    mailbox_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)

    @property
    def topic(self) -> str:
        return TOPICS.get(self.type, self.type.value)

    @property
    def scope(self) -> dict[str, str]:
        return {"mailboxId": self.mailbox_id} if self.mailbox_id else {}

    def to_notification(self) -> dict[str, Any]:
        data = {"type": self.type.value, "timestamp": self.timestamp}
        if self.mailbox_id:
            data["mailboxId"] = self.mailbox_id
        data.update(self.payload)
        return data

    def to_envelope(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "scope": self.scope,
            "timestamp": self.timestamp,
        }


def connected_event(client_id: str) -> dict[str, Any]:
    """First frame of every stream; never scoped, never broadcast."""
    return {"type": EventType.CONNECTED.value, "clientId": client_id, "timestamp": utc_timestamp()}


# ============ EVENT BUILDERS ============

def new_email_event(
    mailbox_id: str,
    email_id: str,
    subject: str,
    sender: Optional[dict],
    received_at: Optional[str],
    mailbox_address: Optional[str] = None,
) -> NotificationEvent:
    return NotificationEvent(
        type=EventType.NEW_EMAIL,
        mailbox_id=mailbox_id,
        payload={
            "emailId": email_id,
            "subject": subject,
            "from": sender,
            "receivedAt": received_at,
            "mailboxAddress": mailbox_address,
        },
    )


def sync_started_event(mailbox_id: str, mailbox_address: str) -> NotificationEvent:
    return NotificationEvent(
        type=EventType.SYNC_STARTED,
        mailbox_id=mailbox_id,
        payload={"mailboxAddress": mailbox_address},
    )


def sync_completed_event(result: dict[str, Any]) -> NotificationEvent:
    return NotificationEvent(
        type=EventType.SYNC_COMPLETED,
        mailbox_id=result["mailboxId"],
        payload={
            "mailboxAddress": result["mailboxAddress"],
            "messagesProcessed": result["messagesProcessed"],
            "messagesCreated": result["messagesCreated"],
            "messagesSkipped": result["messagesSkipped"],
            "syncedAt": result["syncedAt"],
        },
    )
