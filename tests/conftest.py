"""Pytest configuration and shared fixtures."""

import os

# Must be set before mailhub.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mailhub.config import Settings
from mailhub.database import Base, build_engine, get_db
from mailhub.exceptions import ProviderError
from mailhub.models import Mailbox, MailboxSubscription
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.services.graph_service import ChangeType, DeltaPage, MessageDescriptor

TEST_CLIENT_STATE = "test-secret"


class StubProvider:
    """In-memory stand-in for GraphClient.

    `pages` maps a delta link (None for a full fetch) to the DeltaPage to
    return, or to an exception to raise.
    """

    def __init__(self):
        self.pages: dict = {}
        self.messages: dict[str, MessageDescriptor] = {}
        self.raw: dict[str, str] = {}
        self.delta_calls: list[tuple[str, Optional[str]]] = []

    async def get_messages_delta(self, address: str, delta_link: Optional[str] = None) -> DeltaPage:
        self.delta_calls.append((address, delta_link))
        outcome = self.pages.get(delta_link)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return DeltaPage(messages=[], delta_link=delta_link or "delta-empty")
        return outcome

    async def get_message(self, address: str, provider_id: str) -> MessageDescriptor:
        if provider_id not in self.messages:
            raise ProviderError(f"Message {provider_id} not found", upstream_status=404)
        return self.messages[provider_id]

    async def get_message_raw_content(self, address: str, provider_id: str) -> str:
        if provider_id not in self.raw:
            raise ProviderError(f"Raw content for {provider_id} not found", upstream_status=404)
        return self.raw[provider_id]


def make_descriptor(
    provider_id: str,
    message_id: Optional[str] = None,
    subject: str = "Hello",
    sender: str = "alice@example.com",
    sender_name: Optional[str] = "Alice",
    conversation_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> MessageDescriptor:
    return MessageDescriptor(
        change_type=ChangeType.CREATE,
        provider_id=provider_id,
        internet_message_id=f"<{message_id}>" if message_id else None,
        conversation_id=conversation_id,
        subject=subject,
        body_content=f"Body of {subject}",
        body_content_type="text",
        participants=[
            {"email_address": sender, "display_name": sender_name, "type": "from"},
            {"email_address": "support@example.com", "display_name": None, "type": "to"},
        ],
        sent_at=received_at,
        received_at=received_at or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        webhook_client_state=TEST_CLIENT_STATE,
        webhook_base_url="https://hooks.example.com",
        frontend_url="http://localhost:5173",
        log_level="DEBUG",
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def mailbox(db) -> Mailbox:
    """mbx-1 with a stored cursor and subscription sub-1."""
    mailbox = Mailbox(id="mbx-1", address="support@example.com", name="Support", delta_link="C0")
    db.add(mailbox)
    db.add(MailboxSubscription(
        subscription_id="sub-1",
        mailbox_id="mbx-1",
        resource="/users/support@example.com/messages",
        client_state=TEST_CLIENT_STATE,
    ))
    db.commit()
    return mailbox


@pytest.fixture
def app(settings, session_factory, provider, broadcaster):
    from main import create_app

    app = create_app(
        settings=settings,
        session_factory=session_factory,
        provider=provider,
        broadcaster=broadcaster,
        create_tables=False,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
