"""
SQLAlchemy models for the mailbox sync service.

This package contains:
- Mailbox: Inbox record holding the provider delta cursor
- MailboxSubscription: Provider webhook subscription -> mailbox mapping
- Email / EmailParticipant: Ingested messages, unique per (mailbox, message_id)
- Notification: Persisted copy of realtime events with read tracking

Threads are not stored; they are derived by grouping emails on thread_id.
"""

from mailhub.models.mailbox import Mailbox, MailboxSubscription
from mailhub.models.email import Email, EmailParticipant, EmailDirection, ParticipantType
from mailhub.models.notification import Notification

__all__ = [
    "Mailbox",
    "MailboxSubscription",
    "Email",
    "EmailParticipant",
    "EmailDirection",
    "ParticipantType",
    "Notification",
]
