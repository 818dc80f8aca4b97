"""
Microsoft Graph mail provider client.

Wraps the calls the sync engine needs:
- client-credentials access token (cached until shortly before expiry)
- delta query for a mailbox inbox, following @odata.nextLink pages until
  the provider hands back a new @odata.deltaLink cursor
- single message fetch and raw MIME fetch

Graph messages are converted to MessageDescriptor values so the sync engine
never touches provider JSON directly.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import quote

import httpx
import structlog

from mailhub.config import Settings, get_settings
from mailhub.exceptions import ConfigurationError, DeltaExpiredError, ProviderError

logger = structlog.get_logger()

TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Refresh the cached token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 30

MESSAGE_FIELDS = (
    "id,subject,bodyPreview,body,from,toRecipients,ccRecipients,bccRecipients,"
    "replyTo,sentDateTime,receivedDateTime,hasAttachments,internetMessageId,"
    "conversationId,importance,isRead"
)

# Graph error codes meaning the stored delta link can no longer be used
EXPIRED_DELTA_CODES = {"syncStateNotFound", "syncStateInvalid", "resyncRequired"}


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class MessageDescriptor:
    """One change reported by the provider for a mailbox."""
    change_type: ChangeType
    provider_id: str
    internet_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    subject: Optional[str] = None
    body_content: Optional[str] = None
    body_content_type: Optional[str] = None
    participants: list[dict] = field(default_factory=list)
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None

    @property
    def sender(self) -> Optional[dict]:
        for participant in self.participants:
            if participant["type"] == "from":
                return participant
        return None

    @property
    def is_minimal(self) -> bool:
        """Delta entries sometimes omit identity or content; the full message is needed then."""
        return (
            not self.internet_message_id
            or self.sender is None
            or (self.subject is None and self.body_content is None)
        )


@dataclass
class DeltaPage:
    """Result of a delta query: the ordered changes plus the new cursor."""
    messages: list[MessageDescriptor]
    delta_link: str


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _participants(raw: dict) -> list[dict]:
    participants = []

    sender = (raw.get("from") or {}).get("emailAddress") or {}
    if sender.get("address"):
        participants.append({
            "email_address": sender["address"],
            "display_name": sender.get("name") or None,
            "type": "from",
        })

    for key, role in (
        ("toRecipients", "to"),
        ("ccRecipients", "cc"),
        ("bccRecipients", "bcc"),
        ("replyTo", "reply_to"),
    ):
        for recipient in raw.get(key) or []:
            address = (recipient.get("emailAddress") or {})
            if not address.get("address"):
                continue
            participants.append({
                "email_address": address["address"],
                "display_name": address.get("name") or None,
                "type": role,
            })

    return participants


def _json_body(response: httpx.Response, what: str) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderError(f"{what} was not valid JSON", upstream_status=response.status_code) from exc
    if not isinstance(data, dict):
        raise ProviderError(f"{what} was not a JSON object", upstream_status=response.status_code)
    return data


def parse_graph_message(raw: dict) -> MessageDescriptor:
    """Convert a Graph message (or delta entry) into a MessageDescriptor."""
    if "@removed" in raw:
        return MessageDescriptor(change_type=ChangeType.DELETE, provider_id=raw["id"])

    body = raw.get("body") or {}
    return MessageDescriptor(
        change_type=ChangeType.CREATE,
        provider_id=raw["id"],
        internet_message_id=raw.get("internetMessageId"),
        conversation_id=raw.get("conversationId"),
        subject=raw.get("subject"),
        body_content=body.get("content"),
        body_content_type=body.get("contentType"),
        participants=_participants(raw),
        sent_at=parse_graph_datetime(raw.get("sentDateTime")),
        received_at=parse_graph_datetime(raw.get("receivedDateTime")),
    )


class GraphClient:
    """Async Microsoft Graph client used by the sync engine."""

    def __init__(self, settings: Optional[Settings] = None, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._http = http or httpx.AsyncClient(timeout=self.settings.provider_timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    # ============ AUTH ============

    async def get_access_token(self) -> str:
        now = time.monotonic()
        if self._token and self._token_expires_at - TOKEN_EXPIRY_MARGIN > now:
            return self._token

        settings = self.settings
        if not (settings.ms_tenant_id and settings.ms_client_id and settings.ms_client_secret):
            raise ConfigurationError(
                "Missing Microsoft Graph credentials (MS_TENANT_ID/MS_CLIENT_ID/MS_CLIENT_SECRET)"
            )

        try:
            response = await self._http.post(
                TOKEN_URL.format(tenant_id=settings.ms_tenant_id),
                data={
                    "client_id": settings.ms_client_id,
                    "client_secret": settings.ms_client_secret,
                    "grant_type": "client_credentials",
                    "scope": GRAPH_SCOPE,
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise ProviderError(
                f"Token request failed with status {response.status_code}",
                upstream_status=response.status_code,
            )

        data = _json_body(response, "Token response")
        token = data.get("access_token")
        if not token:
            raise ProviderError("Token response did not include an access_token")
        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600

        self._token = token
        self._token_expires_at = now + expires_in
        return self._token

    # ============ REQUESTS ============

    async def _get(self, url: str) -> httpx.Response:
        token = await self.get_access_token()
        try:
            response = await self._http.get(
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Prefer": 'odata.maxpagesize=50, outlook.body-content-type="html"',
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Graph request failed: {exc}") from exc

        if response.status_code >= 400:
            code = None
            try:
                code = (response.json().get("error") or {}).get("code")
            except ValueError:
                pass

            if response.status_code == 410 or code in EXPIRED_DELTA_CODES:
                raise DeltaExpiredError(
                    f"Delta link expired ({code or response.status_code})",
                    upstream_status=response.status_code,
                )
            raise ProviderError(
                f"Graph request failed with status {response.status_code}: {code or 'unknown error'}",
                upstream_status=response.status_code,
            )

        return response

    def _user_url(self, address: str) -> str:
        return f"{self.settings.graph_base_url}/users/{quote(address)}"

    async def get_messages_delta(
        self, address: str, delta_link: Optional[str] = None
    ) -> DeltaPage:
        """
        Fetch changes for a mailbox inbox.

        Args:
            address: Mailbox email address
            delta_link: Stored cursor; None performs a full (non-incremental) fetch

        Returns:
            DeltaPage with changes in provider order and the new delta link
        """
        url = delta_link or (
            f"{self._user_url(address)}/mailFolders/inbox/messages/delta?$select={MESSAGE_FIELDS}"
        )

        messages: list[MessageDescriptor] = []
        new_delta_link = None
        pages = 0

        while url:
            response = await self._get(url)
            data = _json_body(response, "Delta response")
            pages += 1

            for raw in data.get("value") or []:
                if not isinstance(raw, dict) or not raw.get("id"):
                    logger.warning("graph_delta_entry_ignored", mailbox=address)
                    continue
                messages.append(parse_graph_message(raw))

            if data.get("@odata.nextLink"):
                url = data["@odata.nextLink"]
            else:
                new_delta_link = data.get("@odata.deltaLink")
                url = None

        if not new_delta_link:
            raise ProviderError(f"Delta query for {address} did not return a deltaLink")

        logger.info(
            "graph_delta_fetched",
            mailbox=address,
            incremental=delta_link is not None,
            pages=pages,
            messages=len(messages),
        )
        return DeltaPage(messages=messages, delta_link=new_delta_link)

    async def get_message(self, address: str, provider_id: str) -> MessageDescriptor:
        response = await self._get(
            f"{self._user_url(address)}/messages/{quote(provider_id)}?$select={MESSAGE_FIELDS}"
        )
        return parse_graph_message(_json_body(response, "Message response"))

    async def get_message_raw_content(self, address: str, provider_id: str) -> str:
        response = await self._get(f"{self._user_url(address)}/messages/{quote(provider_id)}/$value")
        return response.text
