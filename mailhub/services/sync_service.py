"""
Mailbox sync engine.

Pipeline per mailbox:
1. Load the mailbox and its stored delta link
2. Fetch changes from the provider (incremental with a delta link, full without
   one or when the provider reports the link expired)
3. Store each message not seen before, deduplicated by (mailbox_id, message_id)
4. Persist the new delta link
5. Broadcast new_email per stored message and sync_completed when anything was created

All syncs of one mailbox run under that mailbox's lock so two runs can never
race on the delta link. trigger() is the fire-and-forget entry point used by
the webhook: it coalesces triggers that arrive while a run is already queued.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailhub.exceptions import DeltaExpiredError, MailhubError, NotFoundError, ProviderError
from mailhub.models import Email, Mailbox
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.events import new_email_event, sync_completed_event, sync_started_event
from mailhub.services import db_service
from mailhub.services.graph_service import ChangeType, MessageDescriptor
from mailhub.services.text_cleaner import body_text_for
from mailhub.services.threading_service import compute_thread_id, normalize_message_id

logger = structlog.get_logger()


@dataclass
class SyncResult:
    mailbox_id: str
    mailbox_address: str
    messages_processed: int = 0
    messages_created: int = 0
    messages_skipped: int = 0
    synced_at: Optional[datetime] = None
    delta_link: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "mailboxId": self.mailbox_id,
            "mailboxAddress": self.mailbox_address,
            "messagesProcessed": self.messages_processed,
            "messagesCreated": self.messages_created,
            "messagesSkipped": self.messages_skipped,
            "syncedAt": self.synced_at.isoformat() if self.synced_at else None,
        }


def storage_message_id(descriptor: MessageDescriptor) -> str:
    """RFC Message-ID when the provider has one, else a provider-scoped fallback."""
    if descriptor.internet_message_id:
        return normalize_message_id(descriptor.internet_message_id)
    return f"graph:{descriptor.provider_id}"


class SyncEngine:
    """Runs mailbox syncs against a provider client and broadcasts the outcome."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider,
        broadcaster: Broadcaster,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.broadcaster = broadcaster

        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def _lock_for(self, mailbox_id: str) -> asyncio.Lock:
        lock = self._locks.get(mailbox_id)
        if lock is None:
            lock = self._locks[mailbox_id] = asyncio.Lock()
        return lock

    # ============ ENTRY POINTS ============

    async def sync(self, mailbox_id: str) -> SyncResult:
        """
        Sync one mailbox and wait for the result.

        Raises:
            NotFoundError: Unknown mailbox
            ProviderError: Upstream fetch failed (not retried here)
        """
        async with self._lock_for(mailbox_id):
            return await self._sync(mailbox_id)

    def trigger(self, mailbox_id: str) -> bool:
        """
        Schedule a background sync without waiting for it.

        Returns:
            False when a triggered sync for this mailbox is already queued
        """
        if mailbox_id in self._pending:
            logger.info("sync_trigger_coalesced", mailbox_id=mailbox_id)
            return False

        self._pending.add(mailbox_id)
        task = asyncio.create_task(self._run_triggered(mailbox_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Wait for every triggered sync that is queued or running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_syncing(self, mailbox_id: str) -> bool:
        lock = self._locks.get(mailbox_id)
        return bool(lock and lock.locked()) or mailbox_id in self._pending

    async def _run_triggered(self, mailbox_id: str) -> None:
        async with self._lock_for(mailbox_id):
            # Triggers arriving from here on queue one more run
            self._pending.discard(mailbox_id)
            try:
                await self._sync(mailbox_id)
            except MailhubError as exc:
                logger.error("triggered_sync_failed", mailbox_id=mailbox_id, error=str(exc))
            except Exception:  # noqa: BLE001
                logger.exception("triggered_sync_crashed", mailbox_id=mailbox_id)

    # ============ SYNC ============

    async def _sync(self, mailbox_id: str) -> SyncResult:
        with self.session_factory() as db:
            mailbox = db_service.get_mailbox(db, mailbox_id)
            if mailbox is None:
                raise NotFoundError(f"Mailbox {mailbox_id} not found")

            result = SyncResult(mailbox_id=mailbox.id, mailbox_address=mailbox.address)
            logger.info(
                "sync_started",
                mailbox_id=mailbox.id,
                mailbox=mailbox.address,
                incremental=bool(mailbox.delta_link),
            )
            await self.broadcaster.publish(sync_started_event(mailbox.id, mailbox.address))

            page = await self._fetch_changes(mailbox)
            result.messages_processed = len(page.messages)

            for descriptor in page.messages:
                if descriptor.change_type == ChangeType.DELETE:
                    continue

                try:
                    email = await self._store_message(db, mailbox, descriptor)
                except (ProviderError, SQLAlchemyError) as exc:
                    db.rollback()
                    logger.error(
                        "sync_message_failed",
                        mailbox_id=mailbox.id,
                        provider_id=descriptor.provider_id,
                        error=str(exc),
                    )
                    email = None

                if email is None:
                    result.messages_skipped += 1
                    continue

                result.messages_created += 1
                await self._announce_email(db, mailbox, email)

            # Cursor moves only after every message above has been stored or skipped
            mailbox = db_service.update_delta_link(db, mailbox.id, page.delta_link)
            result.delta_link = page.delta_link
            result.synced_at = datetime.now(timezone.utc)

        logger.info(
            "sync_completed",
            mailbox_id=result.mailbox_id,
            processed=result.messages_processed,
            created=result.messages_created,
            skipped=result.messages_skipped,
        )

        if result.messages_created > 0:
            await self.broadcaster.publish(sync_completed_event(result.to_dict()))

        return result

    async def _fetch_changes(self, mailbox: Mailbox):
        try:
            return await self.provider.get_messages_delta(mailbox.address, mailbox.delta_link)
        except DeltaExpiredError:
            if not mailbox.delta_link:
                raise
            logger.warning("delta_link_expired", mailbox_id=mailbox.id, mailbox=mailbox.address)
            return await self.provider.get_messages_delta(mailbox.address, None)

    async def _store_message(
        self, db: Session, mailbox: Mailbox, descriptor: MessageDescriptor
    ) -> Optional[Email]:
        """Store one message; None when it already exists."""
        content = descriptor
        message_id = storage_message_id(descriptor)

        if descriptor.is_minimal:
            try:
                content = await self.provider.get_message(mailbox.address, descriptor.provider_id)
                message_id = storage_message_id(content)
            except ProviderError as exc:
                logger.debug(
                    "full_message_unavailable",
                    provider_id=descriptor.provider_id,
                    error=str(exc),
                )

        if db_service.email_exists(db, mailbox.id, message_id):
            logger.debug("message_already_stored", mailbox_id=mailbox.id, message_id=message_id)
            return None

        raw_source = ""
        try:
            raw_source = await self.provider.get_message_raw_content(
                mailbox.address, descriptor.provider_id
            )
        except ProviderError as exc:
            logger.warning(
                "raw_content_unavailable",
                provider_id=descriptor.provider_id,
                error=str(exc),
            )

        threading = compute_thread_id(
            db, mailbox.id, message_id, raw_source, content.conversation_id
        )

        return db_service.save_email(
            db=db,
            mailbox_id=mailbox.id,
            message_id=message_id,
            subject=content.subject or "(No Subject)",
            participants=content.participants,
            thread_id=threading.thread_id,
            in_reply_to=threading.in_reply_to,
            references=threading.references,
            body_text=body_text_for(content.body_content, content.body_content_type) or None,
            body_html=content.body_content if content.body_content_type == "html" else None,
            raw_source=raw_source,
            direction="incoming",
            sent_at=content.sent_at,
            received_at=content.received_at,
        )

    async def _announce_email(self, db: Session, mailbox: Mailbox, email: Email) -> None:
        sender = email.sender
        sender_info = (
            {"emailAddress": sender.email_address, "displayName": sender.display_name}
            if sender else None
        )
        received_at = email.received_at.isoformat() if email.received_at else None

        logger.info("email_stored", mailbox_id=mailbox.id, email_id=email.id, subject=email.subject)

        await self.broadcaster.publish(
            new_email_event(
                mailbox_id=mailbox.id,
                email_id=email.id,
                subject=email.subject,
                sender=sender_info,
                received_at=received_at,
                mailbox_address=mailbox.address,
            )
        )

        from_label = "Unknown"
        if sender_info:
            from_label = sender_info["displayName"] or sender_info["emailAddress"]

        db_service.create_notification(
            db,
            recipient_type="mailbox",
            recipient_id=mailbox.id,
            type="email.received",
            title=email.subject or "(No subject)",
            body=f"From: {from_label}",
            data={
                "emailId": email.id,
                "subject": email.subject,
                "from": sender_info,
                "receivedAt": received_at,
                "mailboxAddress": mailbox.address,
            },
        )
