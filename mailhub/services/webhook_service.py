"""
Graph change-notification handling.

Graph posts `{"value": [notification, ...]}` where every notification
carries the subscriptionId and the clientState secret agreed when the
subscription was created. This module validates the batch and resolves it
to the set of mailboxes that need a sync; the endpoint does the triggering.
"""

import hmac
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.orm import Session

from mailhub.exceptions import ValidationError
from mailhub.services import db_service

logger = structlog.get_logger()


@dataclass
class WebhookBatch:
    received: int = 0
    valid: int = 0
    unknown_subscriptions: list[str] = field(default_factory=list)
    # Insertion-ordered and distinct
    mailbox_ids: list[str] = field(default_factory=list)


def _client_state_matches(received: Any, expected: str) -> bool:
    if not isinstance(received, str):
        return False
    return hmac.compare_digest(received.encode(), expected.encode())


def resolve_notifications(db: Session, body: Any, client_state: str) -> WebhookBatch:
    """
    Validate a notification batch and map it to mailboxes.

    Raises:
        ValidationError(400): Body is not an object with a `value` list
        ValidationError(401): Every notification failed the clientState check
    """
    if not isinstance(body, dict) or not isinstance(body.get("value"), list):
        raise ValidationError("Invalid notification payload")

    notifications = body["value"]
    batch = WebhookBatch(received=len(notifications))
    if not notifications:
        return batch

    for notification in notifications:
        if not isinstance(notification, dict):
            continue
        if not _client_state_matches(notification.get("clientState"), client_state):
            logger.warning(
                "webhook_client_state_mismatch",
                subscription_id=notification.get("subscriptionId"),
            )
            continue

        batch.valid += 1
        subscription_id = notification.get("subscriptionId")
        subscription = db_service.find_subscription(db, subscription_id) if subscription_id else None
        if subscription is None:
            logger.warning("webhook_unknown_subscription", subscription_id=subscription_id)
            batch.unknown_subscriptions.append(str(subscription_id))
            continue

        if subscription.mailbox_id not in batch.mailbox_ids:
            batch.mailbox_ids.append(subscription.mailbox_id)

    if batch.valid == 0:
        raise ValidationError("Invalid client state", status_code=401)

    logger.info(
        "webhook_batch_resolved",
        received=batch.received,
        valid=batch.valid,
        mailboxes=len(batch.mailbox_ids),
    )
    return batch
