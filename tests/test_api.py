from __future__ import annotations

import json

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from api import app


API_KEY = "secret"
HEADERS = {"X-API-Key": API_KEY, "X-User-Id": "user-1"}


def _provider_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "api.twilio.com":
        return httpx.Response(201, json={"sid": "SID123", "status": "queued"})
    if request.url.host == "fcm.googleapis.com":
        token = json.loads(request.content)["message"].get("token")
        if token == "stale":
            return httpx.Response(
                404,
                json={
                    "error": {
                        "status": "NOT_FOUND",
                        "message": "Requested entity was not found.",
                        "details": [
                            {
                                "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
                                "errorCode": "UNREGISTERED",
                            }
                        ],
                    }
                },
            )
        return httpx.Response(200, json={"name": f"projects/demo/messages/{token}"})
    if request.url.host == "iid.googleapis.com":
        tokens = json.loads(request.content)["registration_tokens"]
        results = [{"error": "NOT_FOUND"} if token == "stale" else {} for token in tokens]
        return httpx.Response(200, json={"results": results})
    return httpx.Response(404)


@pytest.fixture
def client(tmp_path, monkeypatch):
    config = {
        "notifyhub": {
            "database": {"type": "sqlite", "name": "api.db", "path": str(tmp_path / "db")},
            "api_key": API_KEY,
            "default_country_code": "33",
            "page_limit_max": 50,
        },
        "channels": {
            "email": {
                "smtp_host": "smtp.example.org",
                "from_address": "bot@example.org",
            },
            "sms": {
                "provider": "twilio",
                "account_sid": "AC123",
                "auth_token": "token",
                "from_number": "+15550001111",
            },
            "push": {"project_id": "demo", "access_token": "ya29.token", "validate_on_register": False},
        },
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    monkeypatch.setenv("NOTIFYHUB_CONFIG", str(config_path))
    monkeypatch.delenv("DATA_SERVICE_URL", raising=False)

    sent_mail = []

    async def fake_smtp_send(message, **kwargs):
        sent_mail.append(message)
        return ({}, "OK")

    app.state.provider_transport = httpx.MockTransport(_provider_handler)
    app.state.smtp_send = fake_smtp_send
    with TestClient(app) as test_client:
        test_client.sent_mail = sent_mail
        yield test_client
    del app.state.provider_transport
    del app.state.smtp_send


def test_requests_without_api_key_are_rejected(client):
    response = client.get("/notifications", headers={"X-User-Id": "user-1"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_listing_requires_owner_header(client):
    response = client.get("/notifications", headers={"X-API-Key": API_KEY})

    assert response.status_code == 401


def test_sms_send_then_twilio_callback(client):
    response = client.post("/notifications/sms", json={"to": "0612345678", "message": "hello"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["provider_message_id"] == "SID123"

    record = client.get(f"/notifications/{body['notification_id']}", headers=HEADERS).json()
    assert record["status"] == "sent"
    assert record["provider_metadata"]["recipient"] == "+33612345678"

    ack = client.post(
        f"/webhooks/twilio?api_key={API_KEY}",
        data={"MessageSid": "SID123", "MessageStatus": "delivered"},
    )
    assert ack.status_code == 200
    assert ack.json()["outcome"] == "applied"

    replay = client.post(
        "/webhooks/delivery",
        json={"providerMessageId": "SID123", "channel": "sms", "providerStatus": "delivered"},
        headers={"X-API-Key": API_KEY},
    )
    assert replay.json()["outcome"] == "unchanged"

    record = client.get(f"/notifications/{body['notification_id']}", headers=HEADERS).json()
    assert record["status"] == "delivered"
    assert record["delivered_at"] is not None


def test_webhook_for_unknown_message_is_acknowledged(client):
    response = client.post(
        "/webhooks/delivery",
        json={"providerMessageId": "nope", "channel": "sms", "providerStatus": "delivered"},
        headers={"X-API-Key": API_KEY},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "not_found"


def test_validation_errors_use_error_envelope_and_create_nothing(client):
    response = client.post("/notifications/email", json={"to": "ada@example.org", "subject": "Hi"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
    listing = client.get("/notifications", headers=HEADERS).json()
    assert listing["total"] == 0


def test_email_send_with_template(client):
    response = client.post(
        "/notifications/email",
        json={"to": "ada@example.org", "template": "reset", "variables": {"code": "123456"}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "123456" in client.sent_mail[0].get_content()


def test_pagination_and_stats(client):
    for index in range(25):
        response = client.post(
            "/notifications/email",
            json={"to": "ada@example.org", "subject": f"Message {index}", "body": "Hello"},
            headers=HEADERS,
        )
        assert response.status_code == 200

    page = client.get("/notifications", params={"page": 2, "limit": 10}, headers=HEADERS).json()
    assert page["total"] == 25
    assert page["pages"] == 3
    assert len(page["items"]) == 10

    stats = client.get("/notifications/stats", headers=HEADERS).json()
    assert stats["byStatus"]["sent"] == 25
    assert stats["byType"] == {"email": 25, "sms": 0, "push": 0}
    assert sum(stats["byDay"].values()) == 25


def test_invalid_filter_is_rejected(client):
    response = client.get("/notifications", params={"type": "fax"}, headers=HEADERS)

    assert response.status_code == 400


def test_mark_read_and_invalid_transition(client):
    sent = client.post(
        "/notifications/email",
        json={"to": "ada@example.org", "subject": "Hi", "body": "Hello"},
        headers=HEADERS,
    ).json()

    response = client.patch(f"/notifications/{sent['notification_id']}/read", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "read"

    other_owner = client.patch(
        f"/notifications/{sent['notification_id']}/read",
        headers={"X-API-Key": API_KEY, "X-User-Id": "user-2"},
    )
    assert other_owner.status_code == 404


def test_bulk_read_and_delete(client):
    for _ in range(3):
        client.post(
            "/notifications/email",
            json={"to": "ada@example.org", "subject": "Hi", "body": "Hello"},
            headers=HEADERS,
        )

    assert client.patch("/notifications/read", json={}, headers=HEADERS).json()["count"] == 3
    assert client.delete("/notifications", headers=HEADERS).json()["count"] == 3
    assert client.get("/notifications/missing", headers=HEADERS).status_code == 404


def test_push_targets_lifecycle_and_pruning(client):
    for token in ("good", "stale"):
        response = client.post("/push/targets", json={"token": token}, headers=HEADERS)
        assert response.json()["added"] is True

    result = client.post(
        "/notifications/push",
        json={"title": "Hi", "body": "There", "userId": "user-1"},
        headers=HEADERS,
    ).json()

    assert result["success"] is True
    assert client.get("/push/targets", headers=HEADERS).json()["tokens"] == ["good"]

    assert client.delete("/push/targets/good", headers=HEADERS).status_code == 204
    empty = client.post(
        "/notifications/push",
        json={"title": "Hi", "body": "There", "userId": "user-1"},
        headers=HEADERS,
    ).json()
    assert empty["success"] is False
    assert empty["error_kind"] == "NotFound"
    assert empty["notification_id"] is None


def test_topic_subscription_prunes_unknown_tokens(client):
    for token in ("good", "stale"):
        client.post("/push/targets", json={"token": token}, headers=HEADERS)

    subscribed = client.post("/push/topics/news", headers=HEADERS)

    assert subscribed.status_code == 200
    body = subscribed.json()
    assert body["topic"] == "news"
    assert body["success"] is True
    assert body["errors"] == {"stale": "NOT_FOUND"}
    assert client.get("/push/targets", headers=HEADERS).json()["tokens"] == ["good"]

    removed = client.delete("/push/topics/news", params={"token": "good"}, headers=HEADERS)
    assert removed.json()["success_count"] == 1


def test_topic_subscription_rejects_bad_names_and_missing_tokens(client):
    assert client.post("/push/topics/news", headers=HEADERS).status_code == 404
    bad = client.post("/push/topics/bad%20topic", json={"token": "good"}, headers=HEADERS)
    assert bad.status_code == 400
