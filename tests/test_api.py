"""API tests for mailboxes, emails, threads and notifications."""

from datetime import datetime, timedelta, timezone

from conftest import make_descriptor
from mailhub.exceptions import ProviderError
from mailhub.models import Notification
from mailhub.services import db_service
from mailhub.services.graph_service import DeltaPage

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _save(db, message_id: str, thread_id: str, minutes: int, subject: str = "Hello", sender: str = "alice@example.com"):
    return db_service.save_email(
        db,
        mailbox_id="mbx-1",
        message_id=message_id,
        subject=subject,
        participants=[{"email_address": sender, "display_name": None, "type": "from"}],
        thread_id=thread_id,
        body_text=f"Body of {subject}",
        received_at=BASE_TIME + timedelta(minutes=minutes),
    )


class TestMailboxes:

    def test_create_list_get(self, client) -> None:
        response = client.post("/api/mailboxes", json={"address": "Support@Example.com", "name": "Support"})
        assert response.status_code == 201
        mailbox = response.json()
        assert mailbox["address"] == "support@example.com"
        assert mailbox["hasDeltaLink"] is False

        assert [m["id"] for m in client.get("/api/mailboxes").json()["data"]] == [mailbox["id"]]

        detail = client.get(f"/api/mailboxes/{mailbox['id']}").json()
        assert detail["syncing"] is False

    def test_duplicate_address_conflicts(self, client) -> None:
        client.post("/api/mailboxes", json={"address": "a@example.com", "name": "A"})

        response = client.post("/api/mailboxes", json={"address": "A@example.com", "name": "A"})

        assert response.status_code == 409

    def test_unknown_mailbox(self, client) -> None:
        assert client.get("/api/mailboxes/missing").status_code == 404
        assert client.delete("/api/mailboxes/missing").status_code == 404

    def test_subscriptions(self, client, mailbox) -> None:
        response = client.post(
            "/api/mailboxes/mbx-1/subscriptions",
            json={"subscriptionId": "sub-9", "expirationDateTime": "2024-05-04T09:00:00Z"},
        )
        assert response.status_code == 201
        subscription = response.json()
        assert subscription["mailboxId"] == "mbx-1"
        assert subscription["resource"] == "/users/support@example.com/messages"
        assert subscription["notificationUrl"] == "https://hooks.example.com/mailbox/webhooks/graph"

        listed = client.get("/api/mailboxes/mbx-1/subscriptions").json()["data"]
        assert {s["subscriptionId"] for s in listed} == {"sub-1", "sub-9"}

        duplicate = client.post("/api/mailboxes/mbx-1/subscriptions", json={"subscriptionId": "sub-9"})
        assert duplicate.status_code == 409

    def test_delete_cascades(self, client, db, mailbox, session_factory) -> None:
        """Test that deleting a mailbox removes its emails and subscriptions."""
        _save(db, "m1@example.com", "t1", 0)

        assert client.delete("/api/mailboxes/mbx-1").status_code == 204

        with session_factory() as s:
            assert db_service.find_email_by_message_id(s, "m1@example.com") is None
            assert db_service.find_subscription(s, "sub-1") is None


class TestEmails:

    def test_list_emails_newest_first(self, client, db, mailbox) -> None:
        _save(db, "m1@example.com", "t1", 0, subject="Old")
        _save(db, "m2@example.com", "t2", 5, subject="New")

        body = client.get("/api/emails", params={"mailboxId": "mbx-1", "limit": 1}).json()

        assert [e["subject"] for e in body["data"]] == ["New"]
        assert body["data"][0]["from"]["emailAddress"] == "alice@example.com"
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "totalPages": 2}

    def test_thread_summaries(self, client, db, mailbox) -> None:
        """Test that messageCount and latestDate aggregate each thread."""
        _save(db, "m1@example.com", "t1", 0, subject="Question")
        _save(db, "m2@example.com", "t1", 10, subject="Re: Question", sender="bob@example.com")
        _save(db, "m3@example.com", "t2", 5, subject="Other")

        threads = client.get("/api/emails/threads", params={"mailboxId": "mbx-1"}).json()["data"]

        assert [t["threadId"] for t in threads] == ["t1", "t2"]
        first = threads[0]
        assert first["messageCount"] == 2
        assert first["subject"] == "Re: Question"
        assert first["participants"] == ["alice@example.com", "bob@example.com"]
        assert first["latestDate"].startswith("2024-05-01T09:10:00")

    def test_thread_search(self, client, db, mailbox) -> None:
        _save(db, "m1@example.com", "t1", 0, subject="Invoice overdue")
        _save(db, "m2@example.com", "t2", 5, subject="Lunch")

        threads = client.get("/api/emails/threads", params={"q": "invoice"}).json()["data"]

        assert [t["threadId"] for t in threads] == ["t1"]

    def test_thread_detail(self, client, db, mailbox) -> None:
        _save(db, "m2@example.com", "t1", 10, subject="Re: Question")
        _save(db, "m1@example.com", "t1", 0, subject="Question")

        thread = client.get("/api/emails/thread/t1").json()

        assert thread["messageCount"] == 2
        assert [m["messageId"] for m in thread["messages"]] == ["m1@example.com", "m2@example.com"]
        assert client.get("/api/emails/thread/missing").status_code == 404

    def test_manual_sync(self, client, provider, mailbox) -> None:
        provider.pages["C0"] = DeltaPage(messages=[make_descriptor("g1", "m1@example.com")], delta_link="C1")

        response = client.post("/api/emails/mailbox/mbx-1/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["messagesCreated"] == 1
        assert body["mailboxAddress"] == "support@example.com"

    def test_manual_sync_errors(self, client, provider, mailbox) -> None:
        assert client.post("/api/emails/mailbox/missing/sync").status_code == 404

        provider.pages["C0"] = ProviderError("upstream down", upstream_status=503)
        response = client.post("/api/emails/mailbox/mbx-1/sync")

        assert response.status_code == 502
        assert response.json()["detail"] == "upstream down"


class TestNotificationLog:

    def test_list_newest_first_and_filter(self, client, db, mailbox) -> None:
        for i, recipient in enumerate(["mbx-1", "mbx-1", "mbx-2"]):
            db.add(Notification(
                recipient_type="mailbox",
                recipient_id=recipient,
                type="email.received",
                title=f"n{i}",
                created_at=BASE_TIME + timedelta(minutes=i),
            ))
        db.commit()

        data = client.get(
            "/api/notifications", params={"recipientType": "mailbox", "recipientId": "mbx-1"}
        ).json()["data"]

        assert [n["title"] for n in data] == ["n1", "n0"]
        assert data[0]["readAt"] is None

        page = client.get("/api/notifications", params={"limit": 1, "offset": 1}).json()["data"]
        assert [n["title"] for n in page] == ["n1"]

    def test_mark_read(self, client, db, mailbox) -> None:
        notification = db_service.create_notification(
            db, recipient_type="mailbox", recipient_id="mbx-1", type="email.received", title="Hi"
        )

        response = client.patch(f"/api/notifications/{notification.id}/read")

        assert response.status_code == 200
        assert response.json()["readAt"] is not None
        assert client.patch("/api/notifications/missing/read").status_code == 404


class TestStatus:

    def test_realtime_status_counts_clients(self, client, broadcaster) -> None:
        async def deliver(event) -> None:
            pass

        broadcaster.subscribe(deliver, transport="sse")
        broadcaster.subscribe(deliver, transport="socketio", client_id="sid-1")

        status = client.get("/api/realtime/status").json()
        assert status["connectedClients"] == 2
        assert status["socketClients"] == 1
        assert "email.received" in status["topics"]

        assert client.get("/api/notifications/status").json() == {"connectedClients": 1}

    def test_health(self, client) -> None:
        assert client.get("/health").json()["status"] == "ok"
