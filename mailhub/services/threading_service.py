"""
Thread ID resolution for newly ingested messages.

Order of precedence:
1. Parent found via In-Reply-To -> parent's thread
2. Any known ancestor in References (most recent first) -> its thread
3. Provider conversation id
4. The message's own Message-ID (starts a new thread)
"""

from dataclasses import dataclass
from email.parser import HeaderParser
from typing import Optional
import re

import structlog
from sqlalchemy.orm import Session

from mailhub.services import db_service

logger = structlog.get_logger()

_MESSAGE_ID_RE = re.compile(r"<([^>]+)>")


@dataclass
class ThreadingHeaders:
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


@dataclass
class ThreadingResult:
    thread_id: str
    in_reply_to: Optional[str]
    references: Optional[str]


def normalize_message_id(value: str) -> str:
    return value.strip().strip("<>").strip()


def _single_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = _MESSAGE_ID_RE.search(value)
    cleaned = match.group(1) if match else value
    return normalize_message_id(cleaned) or None


def parse_headers(raw_source: str) -> ThreadingHeaders:
    """Read Message-ID, In-Reply-To and References from a raw MIME source."""
    if not raw_source:
        return ThreadingHeaders()

    # headersonly parsing unfolds continuation lines for us
    headers = HeaderParser().parsestr(raw_source, headersonly=True)

    references = headers.get("References")
    if references:
        ids = _MESSAGE_ID_RE.findall(str(references))
        references = " ".join(ids) if ids else " ".join(str(references).split())

    return ThreadingHeaders(
        message_id=_single_id(headers.get("Message-ID")),
        in_reply_to=_single_id(headers.get("In-Reply-To")),
        references=references or None,
    )


def compute_thread_id(
    db: Session,
    mailbox_id: str,
    message_id: str,
    raw_source: str,
    conversation_id: Optional[str] = None,
) -> ThreadingResult:
    headers = parse_headers(raw_source)
    own_id = headers.message_id or normalize_message_id(message_id)

    if headers.in_reply_to:
        parent = db_service.find_email_by_message_id(db, headers.in_reply_to, mailbox_id)
        if parent is not None:
            logger.debug("thread_parent_found", via="in_reply_to", parent_id=parent.id)
            return ThreadingResult(
                thread_id=parent.thread_id or parent.message_id,
                in_reply_to=headers.in_reply_to,
                references=headers.references,
            )

    if headers.references:
        for ref_id in reversed(headers.references.split()):
            ancestor = db_service.find_email_by_message_id(db, ref_id, mailbox_id)
            if ancestor is not None:
                logger.debug("thread_parent_found", via="references", parent_id=ancestor.id)
                return ThreadingResult(
                    thread_id=ancestor.thread_id or ancestor.message_id,
                    in_reply_to=headers.in_reply_to,
                    references=headers.references,
                )

    if conversation_id:
        return ThreadingResult(
            thread_id=conversation_id,
            in_reply_to=headers.in_reply_to,
            references=headers.references,
        )

    return ThreadingResult(
        thread_id=own_id,
        in_reply_to=headers.in_reply_to,
        references=headers.references,
    )
