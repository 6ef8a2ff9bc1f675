"""
Tests for the conversation, message and send endpoints.

Tests cover:
- POST /conversations/resolve, including error status mapping
- POST /send-sms
- GET /conversations
- DELETE /conversations/{key} (deletion cascade)
- GET /messages/{phone_or_key}
"""

from smscrm.provider import ProviderError
from smscrm.storage import create_message

from tests.conftest import CUSTOMER_PHONE, SENDER_PHONE


def send(client, sender_id: str, to: str = CUSTOMER_PHONE, message: str = "Hello"):
    return client.post(
        "/send-sms",
        json={"to": to, "message": message, "sender_phone_number_id": sender_id},
    )


class TestResolveEndpoint:
    """Test POST /conversations/resolve."""

    def test_resolve_creates_then_reuses(self, client, sender):
        payload = {"customer_phone": "+15559990000", "sender_phone_number_id": sender.id}

        first = client.post("/conversations/resolve", json=payload)
        assert first.status_code == 200
        data = first.json()
        assert data["conversation_id"].startswith("CH")
        assert data["participants_added"] == 1
        assert data["created"] is True

        second = client.post("/conversations/resolve", json=payload)
        assert second.status_code == 200
        assert second.json() == {
            "conversation_id": data["conversation_id"],
            "participants_added": 0,
            "created": False,
        }

    def test_unknown_sender_is_configuration_error(self, client):
        response = client.post(
            "/conversations/resolve",
            json={"customer_phone": CUSTOMER_PHONE, "sender_phone_number_id": "nope"},
        )

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["kind"] == "configuration"
        assert detail["code"] == "sender_phone_not_found"
        assert detail["retryable"] is False

    def test_transient_provider_error(self, client, sender, provider):
        provider.fail_next("list_conversations", ProviderError(
            "Read timed out", operation="list_conversations", transient=True,
        ))

        response = client.post(
            "/conversations/resolve",
            json={"customer_phone": CUSTOMER_PHONE, "sender_phone_number_id": sender.id},
        )

        assert response.status_code == 502
        assert response.json()["detail"]["retryable"] is True

    def test_invalid_phone_rejected(self, client, sender):
        response = client.post(
            "/conversations/resolve",
            json={"customer_phone": "call me", "sender_phone_number_id": sender.id},
        )

        assert response.status_code == 422


class TestSendSms:
    """Test POST /send-sms."""

    def test_send_creates_conversation_and_records_message(self, client, sender, provider):
        response = send(client, sender.id)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["conversation_id"] in provider.conversation_sids()
        assert data["participants_added"] == 1
        assert data["message_sid"].startswith("IM")
        assert data["message"]["from"] == SENDER_PHONE
        assert data["message"]["to"] == CUSTOMER_PHONE
        assert data["message"]["direction"] == "outbound"
        assert data["message"]["conversation_id"] == data["conversation_id"]

    def test_second_send_reuses_conversation(self, client, sender, provider):
        first = send(client, sender.id).json()
        provider.calls.clear()

        second = send(client, sender.id, to="(555) 123-4567").json()

        assert second["conversation_id"] == first["conversation_id"]
        assert second["participants_added"] == 0
        assert "create_conversation" not in provider.calls

    def test_send_conflict_returns_409(self, client, sender, provider):
        owner = provider.create_conversation("owner")
        for sid in (owner.sid, "CH" + "9" * 32):
            provider.fail_next("add_participant", ProviderError(
                f"A binding for this participant and proxy address already exists in Conversation {sid}",
                code=50416,
                status=409,
            ))

        response = send(client, sender.id)

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "double_conflict"

    def test_send_failure_after_resolution(self, client, sender, provider):
        provider.fail_next("send_message", ProviderError("Service unavailable", status=503, operation="send_message"))

        response = send(client, sender.id)

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "send_failed"

    def test_empty_message_rejected(self, client, sender):
        assert send(client, sender.id, message="").status_code == 422


class TestListConversations:
    """Test GET /conversations."""

    def test_empty(self, client):
        response = client.get("/conversations")

        assert response.status_code == 200
        assert response.json() == {"conversations": []}

    def test_lists_sent_conversation_with_contact(self, client, sender):
        sent = send(client, sender.id, message="first").json()
        send(client, sender.id, message="second")
        client.post("/contacts", json={"phone": "15551234567", "name": "Ada"})

        response = client.get("/conversations")

        conversations = response.json()["conversations"]
        assert len(conversations) == 1
        conversation = conversations[0]
        assert conversation["conversation_id"] == sent["conversation_id"]
        assert conversation["phone_number"] == CUSTOMER_PHONE
        assert conversation["sender_phones"] == [SENDER_PHONE]
        assert conversation["message_count"] == 2
        assert conversation["contact"]["name"] == "Ada"
        assert conversation["last_message"]["direction"] == "outbound"

    def test_sender_phone_filter(self, client, sender, second_sender):
        send(client, sender.id, to="+15550000001")
        send(client, second_sender.id, to="+15550000002")

        response = client.get("/conversations", params={"sender_phone": second_sender.phone_number})

        conversations = response.json()["conversations"]
        assert [c["phone_number"] for c in conversations] == ["+15550000002"]

    def test_legacy_messages_grouped_by_phone(self, client, db, sender):
        for direction in ("inbound", "outbound", "inbound"):
            create_message(
                db,
                direction=direction,
                from_number="+15550001111" if direction == "inbound" else SENDER_PHONE,
                to_number=SENDER_PHONE if direction == "inbound" else "+15550001111",
                body=direction,
            )

        conversations = client.get("/conversations").json()["conversations"]

        assert len(conversations) == 1
        assert conversations[0]["conversation_id"] == "+15550001111"
        assert conversations[0]["message_count"] == 3


class TestDeleteConversation:
    """Test DELETE /conversations/{key}."""

    def test_delete_cascades_to_remote(self, client, sender, provider):
        key = send(client, sender.id).json()["conversation_id"]
        send(client, sender.id)

        response = client.delete(f"/conversations/{key}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted_count": 2, "remote_deleted": True}
        assert key not in provider.conversation_sids()
        assert client.get(f"/messages/{key}", params={"use_conversation_id": True}).json() == {"messages": []}

    def test_deleted_count_survives_remote_failure(self, client, sender, provider):
        key = send(client, sender.id).json()["conversation_id"]
        send(client, sender.id)
        send(client, sender.id)
        provider.fail_next("delete_conversation", ProviderError("Service unavailable", status=503))

        response = client.delete(f"/conversations/{key}")

        assert response.status_code == 200
        assert response.json()["deleted_count"] == 3
        assert response.json()["remote_deleted"] is False
        assert key in provider.conversation_sids()

    def test_delete_legacy_conversation(self, client, db):
        for body in ("one", "two"):
            create_message(db, direction="inbound", from_number="+15550001111", to_number=SENDER_PHONE, body=body)

        response = client.delete("/conversations/+15550001111")

        assert response.json()["deleted_count"] == 2
        assert response.json()["remote_deleted"] is False

    def test_delete_legacy_conversation_mixed_formats(self, client, db, sender):
        create_message(db, direction="inbound", from_number="+15550001111", to_number=SENDER_PHONE, body="a")
        create_message(db, direction="outbound", from_number=SENDER_PHONE, to_number="5550001111", body="b")
        create_message(db, direction="inbound", from_number="(555) 000-1111", to_number=SENDER_PHONE, body="c")
        create_message(db, direction="inbound", from_number="+15550002222", to_number=SENDER_PHONE, body="other")

        conversations = client.get("/conversations").json()["conversations"]
        group = next(c for c in conversations if c["conversation_id"] == "+15550001111")
        assert group["message_count"] == 3

        response = client.delete("/conversations/+15550001111")

        assert response.json()["deleted_count"] == group["message_count"]
        remaining = client.get("/conversations").json()["conversations"]
        assert [c["conversation_id"] for c in remaining] == ["+15550002222"]

    def test_delete_unknown_key(self, client):
        response = client.delete("/conversations/CH" + "0" * 32)

        assert response.status_code == 200
        assert response.json()["deleted_count"] == 0


class TestThreadMessages:
    """Test GET /messages/{phone_or_key}."""

    def test_thread_by_phone_any_format(self, client, sender):
        send(client, sender.id, message="first")
        send(client, sender.id, message="second")

        response = client.get("/messages/5551234567")

        assert response.status_code == 200
        bodies = [m["body"] for m in response.json()["messages"]]
        assert sorted(bodies) == ["first", "second"]

    def test_thread_oldest_first(self, client, db):
        create_message(
            db, direction="inbound", from_number=CUSTOMER_PHONE, to_number=SENDER_PHONE,
            body="later", received_at="2025-01-15T10:05:00Z",
        )
        create_message(
            db, direction="inbound", from_number=CUSTOMER_PHONE, to_number=SENDER_PHONE,
            body="earlier", received_at="2025-01-15T10:00:00Z",
        )

        messages = client.get(f"/messages/{CUSTOMER_PHONE}").json()["messages"]

        assert [m["body"] for m in messages] == ["earlier", "later"]
        assert messages[0]["timestamp"] == "2025-01-15T10:00:00Z"

    def test_thread_filtered_by_sender_phone(self, client, sender, second_sender):
        send(client, sender.id, message="from first")
        send(client, second_sender.id, message="from second")

        response = client.get(f"/messages/{CUSTOMER_PHONE}", params={"sender_phone": second_sender.phone_number})

        assert [m["body"] for m in response.json()["messages"]] == ["from second"]

    def test_unknown_phone(self, client):
        assert client.get("/messages/+15550000000").json() == {"messages": []}
