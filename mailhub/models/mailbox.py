"""
Mailbox and MailboxSubscription models.

A mailbox is an inbox such as support@ourdomain.com. Its delta_link is the
provider cursor used to resume incremental sync and is only written by the
sync engine. Subscriptions map a provider push subscription back to the
mailbox it watches.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailhub.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Mailbox(Base):
    """Inbox tracked by the sync engine."""
    __tablename__ = "mailboxes"

    id = Column(String(36), primary_key=True, default=_uuid)

    address = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Opaque provider cursor (Graph @odata.deltaLink)
    delta_link = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Deleting a mailbox removes its messages and subscriptions
    emails = relationship(
        "Email", back_populates="mailbox", cascade="all, delete-orphan", passive_deletes=True
    )
    subscriptions = relationship(
        "MailboxSubscription",
        back_populates="mailbox",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Mailbox(id={self.id}, address={self.address})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "address": self.address,
            "name": self.name,
            "hasDeltaLink": bool(self.delta_link),
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MailboxSubscription(Base):
    """Provider webhook subscription, keyed by the provider's subscription id."""
    __tablename__ = "mailbox_subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)

    subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    mailbox_id = Column(
        String(36), ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False, index=True
    )

    resource = Column(String(512), nullable=False)
    notification_url = Column(String(1024))
    change_type = Column(String(64), nullable=False, default="created,updated,deleted")
    client_state = Column(String(255))
    expiration_date_time = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    mailbox = relationship("Mailbox", back_populates="subscriptions")

    def __repr__(self):
        return f"<MailboxSubscription(subscription_id={self.subscription_id}, mailbox_id={self.mailbox_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionId": self.subscription_id,
            "mailboxId": self.mailbox_id,
            "resource": self.resource,
            "notificationUrl": self.notification_url,
            "changeType": self.change_type,
            "expirationDateTime": (
                self.expiration_date_time.isoformat() if self.expiration_date_time else None
            ),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
