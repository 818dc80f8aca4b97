"""
Notification model - persisted inbox of realtime events.

Realtime events themselves are ephemeral; this table keeps a copy per
recipient (e.g. recipient_type="mailbox", recipient_id=<mailbox id>) so the
dashboard can list them and track read state.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, Index
from sqlalchemy.sql import func

from mailhub.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    recipient_type = Column(String(64), nullable=False)
    recipient_id = Column(String(255), nullable=False)

    type = Column(String(64), nullable=False)
    title = Column(String(512), nullable=False)
    body = Column(Text)
    data = Column(JSON)

    read_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_notifications_recipient", "recipient_type", "recipient_id"),
        Index("ix_notifications_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, type={self.type}, recipient={self.recipient_type}:{self.recipient_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipientType": self.recipient_type,
            "recipientId": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "readAt": self.read_at.isoformat() if self.read_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
