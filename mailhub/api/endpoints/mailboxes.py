"""
Mailbox administration.

Mailboxes are created here and linked to their Graph subscriptions so that
incoming change notifications can be routed to the right mailbox.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mailhub.api.deps import get_app_settings, get_sync_engine
from mailhub.config import Settings
from mailhub.database import get_db
from mailhub.services import db_service
from mailhub.services.sync_service import SyncEngine

router = APIRouter(prefix="/api/mailboxes", tags=["Mailboxes"])


# ============ Request Schemas ============

class MailboxCreate(BaseModel):
    address: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=255)


class SubscriptionCreate(BaseModel):
    """Provider subscription as returned by Graph when it was created."""
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)
    resource: Optional[str] = None
    change_type: str = Field("created,updated,deleted", alias="changeType")
    expiration_date_time: Optional[datetime] = Field(None, alias="expirationDateTime")


# ============ Endpoints ============

@router.post("", status_code=201)
def create_mailbox(payload: MailboxCreate, db: Session = Depends(get_db)):
    mailbox = db_service.create_mailbox(db, payload.address, payload.name)
    return mailbox.to_dict()


@router.get("")
def list_mailboxes(db: Session = Depends(get_db)):
    return {"data": [mailbox.to_dict() for mailbox in db_service.list_mailboxes(db)]}


@router.get("/{mailbox_id}")
def get_mailbox(
    mailbox_id: str,
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    mailbox = db_service.require_mailbox(db, mailbox_id).to_dict()
    mailbox["syncing"] = engine.is_syncing(mailbox_id)
    return mailbox


@router.delete("/{mailbox_id}", status_code=204)
def delete_mailbox(mailbox_id: str, db: Session = Depends(get_db)):
    """Delete a mailbox together with its emails and subscriptions."""
    db_service.delete_mailbox(db, mailbox_id)


@router.post("/{mailbox_id}/subscriptions", status_code=201)
def create_subscription(
    mailbox_id: str,
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    mailbox = db_service.require_mailbox(db, mailbox_id)
    subscription = db_service.create_subscription(
        db,
        mailbox_id=mailbox.id,
        subscription_id=payload.subscription_id,
        resource=payload.resource or f"/users/{mailbox.address}/messages",
        notification_url=settings.webhook_notification_url,
        change_type=payload.change_type,
        client_state=settings.webhook_client_state,
        expiration_date_time=payload.expiration_date_time,
    )
    return subscription.to_dict()


@router.get("/{mailbox_id}/subscriptions")
def list_subscriptions(mailbox_id: str, db: Session = Depends(get_db)):
    db_service.require_mailbox(db, mailbox_id)
    return {"data": [s.to_dict() for s in db_service.list_subscriptions(db, mailbox_id)]}
