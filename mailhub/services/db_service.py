"""
Database service layer for the mailbox sync service.

This module provides the mailbox store and message/thread store operations:
- Mailbox and subscription CRUD (subscription -> mailbox lookup for webhooks)
- save_email: Insert-once email storage, deduplicated by (mailbox_id, message_id)
- Thread summaries derived by grouping emails on thread_id
- Persisted notification log with read tracking
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailhub.exceptions import ConflictError, NotFoundError
from mailhub.models import (
    Email,
    EmailParticipant,
    Mailbox,
    MailboxSubscription,
    Notification,
)
from mailhub.services.text_cleaner import snippet

SNIPPET_LENGTH = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============ MAILBOX OPERATIONS ============

def create_mailbox(db: Session, address: str, name: str) -> Mailbox:
    """Create a mailbox; the address is normalized to lower case and must be unique."""
    normalized = address.strip().lower()

    if get_mailbox_by_address(db, normalized):
        raise ConflictError(f"Mailbox {normalized} already exists")

    mailbox = Mailbox(address=normalized, name=name.strip())
    db.add(mailbox)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Mailbox {normalized} already exists")

    db.refresh(mailbox)
    return mailbox


def list_mailboxes(db: Session) -> list[Mailbox]:
    return list(db.scalars(select(Mailbox).order_by(Mailbox.address)))


def get_mailbox(db: Session, mailbox_id: str) -> Optional[Mailbox]:
    return db.get(Mailbox, mailbox_id)


def get_mailbox_by_address(db: Session, address: str) -> Optional[Mailbox]:
    return db.scalars(
        select(Mailbox).where(Mailbox.address == address.strip().lower())
    ).first()


def require_mailbox(db: Session, mailbox_id: str) -> Mailbox:
    mailbox = get_mailbox(db, mailbox_id)
    if mailbox is None:
        raise NotFoundError(f"Mailbox {mailbox_id} not found")
    return mailbox


def delete_mailbox(db: Session, mailbox_id: str) -> None:
    """Delete a mailbox together with its emails and subscriptions."""
    mailbox = require_mailbox(db, mailbox_id)
    db.delete(mailbox)
    db.commit()


def update_delta_link(db: Session, mailbox_id: str, delta_link: Optional[str]) -> Mailbox:
    """Persist the provider cursor after a sync. Only the sync engine calls this."""
    mailbox = require_mailbox(db, mailbox_id)
    mailbox.delta_link = delta_link
    mailbox.last_sync_at = _utcnow()
    db.commit()
    db.refresh(mailbox)
    return mailbox


# ============ SUBSCRIPTION OPERATIONS ============

def create_subscription(
    db: Session,
    mailbox_id: str,
    subscription_id: str,
    resource: str,
    notification_url: Optional[str] = None,
    change_type: str = "created,updated,deleted",
    client_state: Optional[str] = None,
    expiration_date_time: Optional[datetime] = None,
) -> MailboxSubscription:
    require_mailbox(db, mailbox_id)

    if find_subscription(db, subscription_id):
        raise ConflictError(f"Subscription {subscription_id} already exists")

    subscription = MailboxSubscription(
        mailbox_id=mailbox_id,
        subscription_id=subscription_id,
        resource=resource,
        notification_url=notification_url,
        change_type=change_type,
        client_state=client_state,
        expiration_date_time=expiration_date_time,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def find_subscription(db: Session, subscription_id: str) -> Optional[MailboxSubscription]:
    return db.scalars(
        select(MailboxSubscription).where(
            MailboxSubscription.subscription_id == subscription_id
        )
    ).first()


def list_subscriptions(db: Session, mailbox_id: str) -> list[MailboxSubscription]:
    return list(
        db.scalars(
            select(MailboxSubscription)
            .where(MailboxSubscription.mailbox_id == mailbox_id)
            .order_by(MailboxSubscription.created_at)
        )
    )


# ============ EMAIL OPERATIONS ============

def email_exists(db: Session, mailbox_id: str, message_id: str) -> bool:
    return db.scalar(
        select(func.count(Email.id)).where(
            Email.mailbox_id == mailbox_id,
            Email.message_id == message_id,
        )
    ) > 0


def find_email_by_message_id(
    db: Session, message_id: str, mailbox_id: Optional[str] = None
) -> Optional[Email]:
    query = select(Email).where(Email.message_id == message_id)
    if mailbox_id:
        query = query.where(Email.mailbox_id == mailbox_id)
    return db.scalars(query.order_by(Email.created_at)).first()


def save_email(
    db: Session,
    mailbox_id: str,
    message_id: str,
    subject: str,
    participants: Iterable[dict] = (),
    thread_id: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
    raw_source: str = "",
    direction: str = "incoming",
    sent_at: Optional[datetime] = None,
    received_at: Optional[datetime] = None,
) -> Optional[Email]:
    """
    Insert a new email with its participants.

    Returns:
        Email: The stored email
        None: Another writer stored the same (mailbox_id, message_id) first
    """
    email = Email(
        mailbox_id=mailbox_id,
        message_id=message_id,
        thread_id=thread_id,
        in_reply_to=in_reply_to,
        references=references,
        subject=subject or "(No Subject)",
        body_text=body_text,
        body_html=body_html,
        raw_source=raw_source or "",
        direction=direction,
        sent_at=sent_at,
        received_at=received_at,
    )
    email.participants = [
        EmailParticipant(
            email_address=p["email_address"],
            display_name=p.get("display_name"),
            type=p["type"],
        )
        for p in participants
    ]

    db.add(email)

    try:
        db.commit()
    except IntegrityError:
        # Race condition - a concurrent sync stored it
        db.rollback()
        return None

    db.refresh(email)
    return email


def list_emails(
    db: Session,
    mailbox_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Email], int]:
    query = select(Email)
    count_query = select(func.count(Email.id))
    if mailbox_id:
        query = query.where(Email.mailbox_id == mailbox_id)
        count_query = count_query.where(Email.mailbox_id == mailbox_id)

    total = db.scalar(count_query)
    emails = db.scalars(
        query.order_by(_effective_date().desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return list(emails), total


# ============ THREAD QUERIES ============

def _thread_key():
    # Threadless messages form their own single-message thread
    return func.coalesce(Email.thread_id, Email.message_id)


def _effective_date():
    return func.coalesce(Email.received_at, Email.sent_at, Email.created_at)


def _latest_email(db: Session, thread_key: str, mailbox_id: Optional[str]) -> Optional[Email]:
    query = select(Email).where(_thread_key() == thread_key)
    if mailbox_id:
        query = query.where(Email.mailbox_id == mailbox_id)
    return db.scalars(query.order_by(_effective_date().desc()).limit(1)).first()


def _thread_participants(db: Session, thread_key: str, mailbox_id: Optional[str]) -> list[str]:
    query = (
        select(EmailParticipant.email_address)
        .join(Email, EmailParticipant.email_id == Email.id)
        .where(_thread_key() == thread_key)
        .distinct()
        .order_by(EmailParticipant.email_address)
    )
    if mailbox_id:
        query = query.where(Email.mailbox_id == mailbox_id)
    return list(db.scalars(query))


def _snippet(email: Email) -> str:
    return snippet(email.body_text, SNIPPET_LENGTH)


def get_threads(
    db: Session,
    mailbox_id: Optional[str] = None,
    query: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[dict], int]:
    """
    Thread summaries, newest thread first.

    messageCount is the number of emails sharing the thread key and
    latestDate is the max of their received (or sent/created) timestamps.
    """
    key = _thread_key()

    grouped = select(
        key.label("thread_key"),
        func.count(Email.id).label("message_count"),
        func.max(_effective_date()).label("latest_date"),
    )
    if mailbox_id:
        grouped = grouped.where(Email.mailbox_id == mailbox_id)
    if query:
        pattern = f"%{query}%"
        matching = select(key).where(
            or_(Email.subject.ilike(pattern), Email.body_text.ilike(pattern))
        )
        if mailbox_id:
            matching = matching.where(Email.mailbox_id == mailbox_id)
        grouped = grouped.where(key.in_(matching))
    grouped = grouped.group_by(key).subquery()

    total = db.scalar(select(func.count()).select_from(grouped))

    rows = db.execute(
        select(grouped.c.thread_key, grouped.c.message_count, grouped.c.latest_date)
        .order_by(grouped.c.latest_date.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    summaries = []
    for thread_key, message_count, latest_date in rows:
        latest = _latest_email(db, thread_key, mailbox_id)
        summaries.append({
            "threadId": thread_key,
            "subject": latest.subject if latest else None,
            "messageCount": message_count,
            "participants": _thread_participants(db, thread_key, mailbox_id),
            "latestMessageId": latest.id if latest else None,
            "latestDate": latest_date,
            "snippet": _snippet(latest) if latest else "",
        })

    return summaries, total


def get_thread_messages(
    db: Session, thread_id: str, mailbox_id: Optional[str] = None
) -> list[Email]:
    """All emails of a thread, oldest first."""
    query = select(Email).where(_thread_key() == thread_id)
    if mailbox_id:
        query = query.where(Email.mailbox_id == mailbox_id)
    return list(db.scalars(query.order_by(_effective_date())))


# ============ NOTIFICATION LOG ============

def create_notification(
    db: Session,
    recipient_type: str,
    recipient_id: str,
    type: str,
    title: str,
    body: Optional[str] = None,
    data: Optional[dict] = None,
) -> Notification:
    notification = Notification(
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        type=type,
        title=title,
        body=body,
        data=data,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def list_notifications(
    db: Session,
    recipient_type: Optional[str] = None,
    recipient_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Notification]:
    query = select(Notification)
    if recipient_type:
        query = query.where(Notification.recipient_type == recipient_type)
    if recipient_id:
        query = query.where(Notification.recipient_id == recipient_id)

    return list(
        db.scalars(
            query.order_by(Notification.created_at.desc(), Notification.id)
            .offset(offset)
            .limit(limit)
        )
    )


def mark_notification_read(db: Session, notification_id: str) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError(f"Notification {notification_id} not found")

    if notification.read_at is None:
        notification.read_at = _utcnow()
        db.commit()
        db.refresh(notification)
    return notification
