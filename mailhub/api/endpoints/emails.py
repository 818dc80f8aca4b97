"""
Mail API: manual sync, email list and thread views.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mailhub.api.deps import get_sync_engine
from mailhub.database import get_db
from mailhub.exceptions import NotFoundError
from mailhub.services import db_service
from mailhub.services.sync_service import SyncEngine

router = APIRouter(prefix="/api/emails", tags=["Emails"])


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": (total + limit - 1) // limit if limit else 0,
    }


@router.post("/mailbox/{mailbox_id}/sync")
async def sync_mailbox(mailbox_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """
    Run a sync now and return its result.

    Shares the per-mailbox lock with webhook-triggered syncs, so this waits
    for any run already in progress.
    """
    result = await engine.sync(mailbox_id)
    return result.to_dict()


@router.get("")
def list_emails(
    mailbox_id: Optional[str] = Query(None, alias="mailboxId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    emails, total = db_service.list_emails(db, mailbox_id=mailbox_id, page=page, limit=limit)
    return {
        "data": [email.to_list_dict() for email in emails],
        "pagination": _pagination(page, limit, total),
    }


@router.get("/threads")
def list_threads(
    mailbox_id: Optional[str] = Query(None, alias="mailboxId"),
    q: Optional[str] = Query(None, description="Search subject and body text"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    threads, total = db_service.get_threads(
        db, mailbox_id=mailbox_id, query=q, page=page, limit=limit
    )
    for thread in threads:
        latest = thread["latestDate"]
        thread["latestDate"] = latest.isoformat() if latest else None

    return {"data": threads, "pagination": _pagination(page, limit, total)}


@router.get("/thread/{thread_id}")
def get_thread(
    thread_id: str,
    mailbox_id: Optional[str] = Query(None, alias="mailboxId"),
    db: Session = Depends(get_db),
):
    messages = db_service.get_thread_messages(db, thread_id, mailbox_id=mailbox_id)
    if not messages:
        raise NotFoundError(f"Thread {thread_id} not found")

    return {
        "threadId": thread_id,
        "subject": messages[0].subject,
        "messageCount": len(messages),
        "messages": [email.to_detail_dict() for email in messages],
    }
