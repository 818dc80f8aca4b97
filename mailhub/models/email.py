"""
Email and EmailParticipant models.

Emails are immutable after ingestion. The (mailbox_id, message_id) unique
constraint is the dedup key: a second insert of the same message fails at
the store layer, which is what makes retried and concurrent syncs safe.
"""

import enum
import uuid

from sqlalchemy import (
    Column, String, Text, DateTime, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailhub.database import Base


class EmailDirection(str, enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class ParticipantType(str, enum.Enum):
    FROM = "from"
    TO = "to"
    CC = "cc"
    BCC = "bcc"
    REPLY_TO = "reply_to"


class Email(Base):
    """Stored message, one row per provider message per mailbox."""
    __tablename__ = "emails"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    mailbox_id = Column(
        String(36), ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False
    )

    # RFC Message-ID (or graph:<id> fallback), dedup key within a mailbox
    message_id = Column(String(998), nullable=False)
    thread_id = Column(String(998))
    in_reply_to = Column(String(998))
    references = Column(Text)

    subject = Column(String(998), nullable=False, default="(No Subject)")
    body_text = Column(Text)
    body_html = Column(Text)
    raw_source = Column(Text, nullable=False, default="")

    direction = Column(String(16), nullable=False, default=EmailDirection.INCOMING.value)

    sent_at = Column(DateTime(timezone=True))
    received_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    mailbox = relationship("Mailbox", back_populates="emails")
    participants = relationship(
        "EmailParticipant",
        back_populates="email",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("mailbox_id", "message_id", name="uq_emails_mailbox_message"),
        Index("ix_emails_mailbox_thread", "mailbox_id", "thread_id"),
        Index("ix_emails_received_at", "received_at"),
    )

    def __repr__(self):
        return f"<Email(id={self.id}, message_id={self.message_id}, subject={self.subject[:30] if self.subject else ''})>"

    @property
    def sender(self):
        for participant in self.participants:
            if participant.type == ParticipantType.FROM.value:
                return participant
        return None

    def to_list_dict(self) -> dict:
        sender = self.sender
        return {
            "id": self.id,
            "mailboxId": self.mailbox_id,
            "messageId": self.message_id,
            "threadId": self.thread_id,
            "subject": self.subject,
            "from": sender.to_dict() if sender else None,
            "direction": self.direction,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
            "receivedAt": self.received_at.isoformat() if self.received_at else None,
        }

    def to_detail_dict(self) -> dict:
        return {
            **self.to_list_dict(),
            "inReplyTo": self.in_reply_to,
            "references": self.references,
            "bodyText": self.body_text,
            "bodyHtml": self.body_html,
            "participants": [p.to_dict() for p in self.participants],
        }


class EmailParticipant(Base):
    """Address attached to an email in one role (from/to/cc/bcc/reply_to)."""
    __tablename__ = "email_participants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email_id = Column(
        String(36), ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email_address = Column(String(320), nullable=False, index=True)
    display_name = Column(String(255))
    type = Column(String(16), nullable=False)

    email = relationship("Email", back_populates="participants")

    def to_dict(self) -> dict:
        return {
            "emailAddress": self.email_address,
            "displayName": self.display_name,
            "type": self.type,
        }
