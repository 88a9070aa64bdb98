"""Tests for the HTTP surface: cron ingress and provider webhooks."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import api.main as main_module
import config.settings as settings_module
from api.main import app
from channels.providers.twilio_sms import compute_signature
from config.settings import load_settings
from database.store_factory import get_store, reset_store
from utils.rate_limit import KeyedRateLimiter

CRON_SECRET = "s3cret"
SMS_CALLBACK = "https://example.com/webhooks/sms"
AUTH = {"Authorization": f"Bearer {CRON_SECRET}"}

CONFIG = f"""
engine:
  timezone: UTC
  send_hour: 0
  cron_secret: {CRON_SECRET}
database:
  store_backend: memory
channels:
  sms:
    enabled: true
    credentials:
      auth_token: tok
      status_callback_url: {SMS_CALLBACK}
"""


@pytest.fixture
def client(tmp_path, monkeypatch):
    path = tmp_path / "settings.yaml"
    path.write_text(CONFIG)
    monkeypatch.setattr(settings_module, "_settings", None)
    load_settings(str(path))
    reset_store()
    with TestClient(app) as c:
        yield c
    reset_store()


@pytest.fixture
def store(client):
    return get_store()


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["channels"] == ["email", "sms", "call"]

    def test_channel_health(self, client):
        body = client.get("/api/channels/health").json()
        assert body["email"]["initialized"]
        assert body["sms"]["circuit_breaker"]["state"] == "closed"


class TestCron:
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": CRON_SECRET}])
    def test_rejects_bad_secret(self, client, headers):
        assert client.post("/api/cron/evaluate", headers=headers).status_code == 401
        assert client.post("/api/cron/dispatch", headers=headers).status_code == 401

    def test_empty_store(self, client):
        resp = client.post("/api/cron/evaluate", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["stats"]["debts"] == 0

    def test_evaluate_dispatch_and_bounce(self, client, store, seed):
        today = datetime.now(timezone.utc).date()
        world = asyncio.run(seed(due_date=today + timedelta(days=30)))

        evaluated = client.post("/api/cron/evaluate", headers=AUTH).json()
        assert evaluated["status"] == "ok"
        assert evaluated["stats"]["created"] == 1

        dispatched = client.post("/api/cron/dispatch", headers=AUTH).json()
        assert dispatched["stats"]["sent"] == 1

        [record] = asyncio.run(store.list_history(world.debt.id))
        assert record.external_id.startswith("sim_")

        resp = client.post("/webhooks/email", json={
            "type": "email.bounced",
            "data": {"email_id": record.external_id, "bounce": {"type": "Transient"}},
        })
        body = resp.json()
        assert body["status"] == "retry_scheduled"
        assert body["attempt"] == 2


class TestWebhooks:
    def test_email_unknown_event_ignored(self, client):
        assert client.post("/webhooks/email", json={"type": "domain.updated"}).json() == {"status": "ignored"}

    def test_email_unknown_id(self, client):
        resp = client.post("/webhooks/email", json={"type": "email.delivered", "data": {"email_id": "re_x"}})
        assert resp.json() == {"status": "not_found"}

    def test_sms_signature_required(self, client):
        params = {"MessageSid": "SM1", "MessageStatus": "delivered"}
        resp = client.post("/webhooks/sms", data=params, headers={"X-Twilio-Signature": "bogus"})
        assert resp.status_code == 403

    def test_sms_signed_callback(self, client):
        params = {"MessageSid": "SM1", "MessageStatus": "delivered"}
        signature = compute_signature("tok", SMS_CALLBACK, params)
        resp = client.post("/webhooks/sms", data=params, headers={"X-Twilio-Signature": signature})
        assert resp.status_code == 200
        assert resp.json() == {"status": "not_found"}

    def test_voice_payload_without_call_id(self, client):
        assert client.post("/webhooks/voice", json={"status": "completed"}).json() == {"status": "ignored"}


class TestWebhookRateLimit:
    def test_over_limit_gets_429(self, client, monkeypatch):
        monkeypatch.setattr(main_module, "webhook_limiter", KeyedRateLimiter(rate=0.0, burst=2))
        codes = [client.post("/webhooks/email", json={"type": "domain.updated"}).status_code
                 for _ in range(3)]
        assert codes == [200, 200, 429]

    def test_limit_is_per_client_ip(self, client, monkeypatch):
        monkeypatch.setattr(main_module, "webhook_limiter", KeyedRateLimiter(rate=0.0, burst=1))
        first = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        second = {"X-Forwarded-For": "198.51.100.2"}

        assert client.post("/webhooks/voice", json={}, headers=first).status_code == 200
        assert client.post("/webhooks/voice", json={}, headers=first).status_code == 429
        assert client.post("/webhooks/voice", json={}, headers=second).status_code == 200

    def test_rejected_before_signature_check(self, client, monkeypatch):
        monkeypatch.setattr(main_module, "webhook_limiter", KeyedRateLimiter(rate=0.0, burst=0))
        resp = client.post("/webhooks/sms", data={"MessageSid": "SM1", "MessageStatus": "delivered"})
        assert resp.status_code == 429
