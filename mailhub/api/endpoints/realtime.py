"""
Topic-envelope realtime stream.

GET /api/realtime/stream?topics=email.received,sync.completed&mailboxId=mbx-1
streams `{topic, payload, scope, timestamp}` envelopes; the same envelopes
are emitted on the Socket.IO /realtime namespace.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from mailhub.api.deps import get_app_settings, get_broadcaster
from mailhub.api.endpoints.notifications import split_csv
from mailhub.config import Settings
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.events import TOPICS
from mailhub.realtime.sse import SSEConnection

router = APIRouter(prefix="/api/realtime", tags=["Realtime"])


@router.get("/stream")
async def realtime_stream(
    request: Request,
    topics: Optional[str] = Query(None, description="Comma-separated topic names"),
    mailbox_id: Optional[str] = Query(None, alias="mailboxId"),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    settings: Settings = Depends(get_app_settings),
):
    connection = SSEConnection(
        broadcaster,
        render=lambda event: event.to_envelope(),
        mailbox_ids=split_csv(mailbox_id),
        topics=split_csv(topics),
        heartbeat_seconds=settings.sse_heartbeat_seconds,
    )
    return connection.response(request.is_disconnected)


@router.get("/status")
def realtime_status(broadcaster: Broadcaster = Depends(get_broadcaster)):
    return {
        "connectedClients": broadcaster.client_count(),
        "sseClients": broadcaster.client_count(transport="sse"),
        "socketClients": broadcaster.client_count(transport="socketio"),
        "topics": sorted(TOPICS.values()),
    }
