"""
Socket.IO gateway (namespace /realtime).

Each connected socket becomes a broadcaster subscriber. The optional
mailbox scope is read from the connect auth payload ({"mailboxId": ...} or
{"mailboxIds": [...]}) or the query string (?mailboxId=a or ?mailboxIds=a,b),
so scoping is enforced on the server exactly like the SSE streams. Events are
emitted under their topic name, e.g. `email.received`, with the topic
envelope as payload.
"""

from typing import Any, Optional
from urllib.parse import parse_qs

import socketio
from socketio.exceptions import SocketIOError

from mailhub.exceptions import TransportError
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.events import NotificationEvent

NAMESPACE = "/realtime"


def _split(values: list[str]) -> list[str]:
    ids = []
    for value in values:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    return ids


def scope_from_handshake(environ: dict, auth: Optional[Any]) -> Optional[list[str]]:
    """Mailbox IDs requested by the client, or None for every mailbox."""
    ids: list[str] = []

    if isinstance(auth, dict):
        if auth.get("mailboxId"):
            ids.append(str(auth["mailboxId"]))
        mailbox_ids = auth.get("mailboxIds")
        if isinstance(mailbox_ids, str):
            ids.extend(_split([mailbox_ids]))
        elif isinstance(mailbox_ids, list):
            ids.extend(str(m) for m in mailbox_ids if m)

    query = parse_qs(environ.get("QUERY_STRING", ""))
    ids.extend(_split(query.get("mailboxId", [])))
    ids.extend(_split(query.get("mailboxIds", [])))

    return ids or None


class RealtimeNamespace(socketio.AsyncNamespace):

    def __init__(self, broadcaster: Broadcaster, namespace: str = NAMESPACE):
        super().__init__(namespace)
        self.broadcaster = broadcaster

    async def on_connect(self, sid, environ, auth=None):
        mailbox_ids = scope_from_handshake(environ, auth)

        async def deliver(event: NotificationEvent) -> None:
            try:
                await self.emit(event.topic, event.to_envelope(), to=sid)
            except SocketIOError as exc:
                raise TransportError(f"Socket {sid} emit failed: {exc}") from exc

        self.broadcaster.subscribe(
            deliver, mailbox_ids=mailbox_ids, transport="socketio", client_id=sid
        )

    async def on_disconnect(self, sid, *args):
        self.broadcaster.unsubscribe(sid)


def create_socket_server(broadcaster: Broadcaster, cors_origins: list[str]) -> socketio.AsyncServer:
    server = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=cors_origins or "*",
    )
    server.register_namespace(RealtimeNamespace(broadcaster))
    return server
