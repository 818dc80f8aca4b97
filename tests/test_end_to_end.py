"""End-to-end: webhook -> background sync -> scoped realtime delivery."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import TEST_CLIENT_STATE, make_descriptor
from mailhub.models import Mailbox
from mailhub.realtime.socket_gateway import RealtimeNamespace
from mailhub.realtime.sse import SSEConnection
from mailhub.services import db_service
from mailhub.services.graph_service import DeltaPage


def _parse(frame: str) -> dict:
    return json.loads(frame[len("data: "):])


@pytest.mark.asyncio
async def test_webhook_sync_reaches_scoped_subscribers(
    app, db, mailbox, provider, broadcaster, session_factory
) -> None:
    """
    mbx-1 stores cursor C0 and subscription sub-1. A notification for sub-1
    syncs from C0, stores both new messages of thread T1, persists C1 and pushes
    sync_completed to subscribers scoped to mbx-1 only.
    """
    db.add(Mailbox(id="mbx-2", address="sales@example.com", name="Sales"))
    db.commit()

    provider.pages["C0"] = DeltaPage(
        messages=[
            make_descriptor(
                "g1", "m1@example.com", subject="Order #42", conversation_id="T1",
                received_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
            ),
            make_descriptor(
                "g2", "m2@example.com", subject="Re: Order #42", conversation_id="T1",
                received_at=datetime(2024, 5, 1, 9, 5, tzinfo=timezone.utc),
            ),
        ],
        delta_link="C1",
    )

    sse_mbx1 = SSEConnection(broadcaster, render=lambda e: e.to_envelope(), mailbox_ids=["mbx-1"])
    sse_mbx2 = SSEConnection(broadcaster, render=lambda e: e.to_notification(), mailbox_ids=["mbx-2"])
    frames = sse_mbx1.frames()
    assert _parse(await frames.__anext__())["type"] == "connected"

    namespace = RealtimeNamespace(broadcaster)
    namespace.emit = AsyncMock()
    await namespace.on_connect("sid-1", {"QUERY_STRING": "mailboxId=mbx-1"})

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        response = await http.post(
            "/mailbox/webhooks/graph",
            json={"value": [{"subscriptionId": "sub-1", "clientState": TEST_CLIENT_STATE}]},
        )

    assert response.status_code == 202
    assert response.json()["success"] is True

    await app.state.sync_engine.drain()

    with session_factory() as s:
        assert db_service.get_mailbox(s, "mbx-1").delta_link == "C1"
        thread = db_service.get_thread_messages(s, "T1", "mbx-1")
        assert [e.subject for e in thread] == ["Order #42", "Re: Order #42"]

    received = [_parse(await frames.__anext__()) for _ in range(4)]
    assert [f["topic"] for f in received] == [
        "sync.started", "email.received", "email.received", "sync.completed",
    ]
    completed = received[3]
    assert completed["scope"] == {"mailboxId": "mbx-1"}
    assert completed["payload"]["messagesProcessed"] == 2
    assert completed["payload"]["messagesCreated"] == 2
    assert completed["payload"]["messagesSkipped"] == 0
    await frames.aclose()

    emitted = [call.args[0] for call in namespace.emit.await_args_list]
    assert emitted == ["sync.started", "email.received", "email.received", "sync.completed"]

    assert sse_mbx2.pending == 0
    sse_mbx2.close()
