"""
Microsoft Graph change-notification webhook.

Graph calls this endpoint in two ways:
1. Subscription validation: `?validationToken=T`, answered by echoing T as
   text/plain within a few seconds
2. Change notifications: `{"value": [...]}`, answered with 202 right away;
   the affected mailboxes are synced in the background

Pipeline for change notifications:
1. Check every notification's clientState against WEBHOOK_CLIENT_STATE
2. Map subscriptionId -> mailbox
3. Trigger one background sync per distinct mailbox
"""

import json
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from mailhub.api.deps import get_app_settings, get_sync_engine
from mailhub.config import Settings
from mailhub.database import get_db
from mailhub.exceptions import ValidationError
from mailhub.services.sync_service import SyncEngine
from mailhub.services.webhook_service import resolve_notifications

logger = structlog.get_logger()

router = APIRouter(prefix="/mailbox/webhooks", tags=["Webhooks"])


@router.get("/graph")
async def validate_subscription(validation_token: Optional[str] = Query(None, alias="validationToken")):
    """Subscription validation handshake."""
    if not validation_token:
        raise ValidationError("Missing validationToken")
    return PlainTextResponse(validation_token)


@router.post("/graph")
async def graph_notifications(
    request: Request,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Receive a batch of change notifications.

    Returns 202 without waiting for the syncs it triggers.
    """
    # Graph sends the validation handshake as a POST as well
    if validation_token:
        logger.info("webhook_validation_handshake")
        return PlainTextResponse(validation_token)

    try:
        body = json.loads(await request.body())
    except ValueError:
        raise ValidationError("Request body is not valid JSON")

    batch = resolve_notifications(db, body, settings.webhook_client_state)

    if not batch.received:
        return JSONResponse(
            status_code=202,
            content={"success": True, "message": "No notifications to process"},
        )

    for mailbox_id in batch.mailbox_ids:
        engine.trigger(mailbox_id)

    return JSONResponse(
        status_code=202,
        content={
            "success": True,
            "message": f"Sync triggered for {len(batch.mailbox_ids)} mailbox(es)",
        },
    )
