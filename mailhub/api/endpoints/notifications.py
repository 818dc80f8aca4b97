"""
Notification endpoints.

- /stream: SSE feed of flat notification objects, optionally scoped to
  mailboxes with ?mailboxIds=a,b
- /status: number of connected stream clients
- list / mark-read over the persisted notification log
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from mailhub.api.deps import get_app_settings, get_broadcaster
from mailhub.config import Settings
from mailhub.database import get_db
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.sse import SSEConnection
from mailhub.services import db_service

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


def split_csv(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()] or None


@router.get("/stream")
async def notification_stream(
    request: Request,
    mailbox_ids: Optional[str] = Query(None, alias="mailboxIds"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    connection = SSEConnection(
        broadcaster,
        render=lambda event: event.to_notification(),
        mailbox_ids=split_csv(mailbox_ids),
        heartbeat_seconds=settings.sse_heartbeat_seconds,
    )
    return connection.response(request.is_disconnected)


@router.get("/status")
def notification_status(broadcaster: Broadcaster = Depends(get_broadcaster)):
    return {"connectedClients": broadcaster.client_count(transport="sse")}


@router.get("")
def list_notifications(
    recipient_type: Optional[str] = Query(None, alias="recipientType"),
    recipient_id: Optional[str] = Query(None, alias="recipientId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    notifications = db_service.list_notifications(
        db,
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        limit=limit,
        offset=offset,
    )
    return {"data": [n.to_dict() for n in notifications]}


@router.patch("/{notification_id}/read")
def mark_notification_read(notification_id: str, db: Session = Depends(get_db)):
    return db_service.mark_notification_read(db, notification_id).to_dict()
