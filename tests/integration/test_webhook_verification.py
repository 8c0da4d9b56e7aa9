import hashlib
import hmac
import json

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.routes import sms


def _make_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _client() -> TestClient:
    app = FastAPI()
    app.include_router(sms.router)
    return TestClient(app)


def test_webhook_valid_signature(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    payload = {"message_id": "m-1", "status": "Delivered", "to": "+966501234567", "provider": "taqnyat"}
    raw = json.dumps(payload).encode("utf-8")
    signature = _make_signature("test-secret", raw)

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message_id": "m-1", "status": "delivered"}


def test_webhook_invalid_signature(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    raw = json.dumps({"status": "delivered"}).encode("utf-8")

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": "bad", "Content-Type": "application/json"},
    )

    assert response.status_code == 401


def test_webhook_missing_signature(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    response = client.post("/sms/webhook/status", content=b"{}", headers={"Content-Type": "application/json"})

    assert response.status_code == 401


def test_webhook_missing_secret(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", None)

    raw = json.dumps({"status": "delivered"}).encode("utf-8")

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": "any", "Content-Type": "application/json"},
    )

    assert response.status_code == 401


def test_webhook_rejects_signed_non_json(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    raw = b"status=delivered"

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": _make_signature("test-secret", raw)},
    )

    assert response.status_code == 400


def test_webhook_rejects_json_array(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    raw = b"[1, 2]"

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": _make_signature("test-secret", raw), "Content-Type": "application/json"},
    )

    assert response.status_code == 400


def test_webhook_accepts_plivo_message_uuid(monkeypatch):
    client = _client()
    monkeypatch.setattr("app.routes.sms.SMS_WEBHOOK_SECRET", "test-secret")

    raw = json.dumps({"MessageUUID": "uuid-7", "status": "failed", "error": "unreachable"}).encode("utf-8")

    response = client.post(
        "/sms/webhook/status",
        content=raw,
        headers={"x-sms-signature": _make_signature("test-secret", raw), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message_id": "uuid-7", "status": "failed"}
