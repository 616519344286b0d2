"""
Tests for the Messaging API endpoints.

Covers:
  - Conversation open / reload / send / retry / discard / read
  - Ledger read, rebuild and unread recount
  - Focus changes
  - Draft handoff
  - Status and health
  - Ledger notifications over the websocket
  - Error mapping (502 / 409 / 404 / 400 / 503)
"""

import asyncio
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from medexchange.messaging.alerts import AlertRegistry, LogAlert
from medexchange.messaging.drafts import DraftStore
from medexchange.messaging.ledger import ConversationLedger, MemoryKeyValueStore
from medexchange.messaging.models import HospitalIdentity
from medexchange.messaging.reconciler import ReconciliationEngine
from medexchange.messaging.tests.fakes import ME, OTHER, THIRD, FakeMessageStore, make_message
from medexchange.routers import health, messaging_api


# ── Helpers ──


def _create_test_engine():
    store = MemoryKeyValueStore()
    fake = FakeMessageStore(ME)
    alerts = AlertRegistry()
    alerts.register(LogAlert())
    engine = ReconciliationEngine(
        identity=HospitalIdentity(id=ME, name="St. Mary's"),
        store_client=fake,
        ledger=ConversationLedger(ME, store=store),
        alerts=alerts,
    )
    return engine, fake, DraftStore(ME, store=store), alerts


@pytest.fixture
def wired():
    engine, fake, drafts, alerts = _create_test_engine()
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(messaging_api.router)
    with patch("medexchange.messaging.setup._engine", engine), \
         patch("medexchange.messaging.setup._drafts", drafts), \
         patch("medexchange.messaging.setup._alert_registry", alerts):
        yield TestClient(app), engine, fake


@pytest.fixture
def unwired():
    app = FastAPI()
    app.include_router(messaging_api.router)
    with patch("medexchange.messaging.setup._engine", None), \
         patch("medexchange.messaging.setup._drafts", None):
        yield TestClient(app)


# ── Conversation ──


class TestConversationEndpoints:

    def test_open_returns_history(self, wired):
        client, engine, fake = wired
        fake.seed(
            make_message("b1", OTHER, ME, "Any spare insulin?", minute=1),
            make_message("a1", ME, OTHER, "Yes, 10 vials", minute=2),
        )

        resp = client.post(f"/api/messaging/conversations/{OTHER}/open")

        assert resp.status_code == 200
        data = resp.json()
        assert data["counterparty_id"] == OTHER
        assert data["state"] == "loaded"
        assert [m["id"] for m in data["messages"]] == ["b1", "a1"]
        assert fake.mark_read_calls == [OTHER]

    def test_open_failure_is_502(self, wired):
        client, engine, fake = wired
        fake.fail_fetch = True

        resp = client.post(f"/api/messaging/conversations/{OTHER}/open")

        assert resp.status_code == 502
        assert client.get("/api/messaging/conversation").json()["state"] == "failed"

    def test_reload_without_conversation_is_409(self, wired):
        client, _, _ = wired
        assert client.post("/api/messaging/conversation/reload").status_code == 409

    def test_reload_after_failure(self, wired):
        client, engine, fake = wired
        fake.seed(make_message("b1", OTHER, ME, minute=1, read=True))
        fake.fail_fetch = True
        client.post(f"/api/messaging/conversations/{OTHER}/open")

        fake.fail_fetch = False
        resp = client.post("/api/messaging/conversation/reload")

        assert resp.status_code == 200
        assert resp.json()["state"] == "loaded"

    def test_send(self, wired):
        client, engine, fake = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")

        resp = client.post("/api/messaging/conversation/messages", json={"text": "Hello"})

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["message"]["content"] == "Hello"
        assert [m.content for m in engine.messages] == ["Hello"]

    def test_send_empty_is_409(self, wired):
        client, _, _ = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        resp = client.post("/api/messaging/conversation/messages", json={"text": "   "})
        assert resp.status_code == 409

    def test_send_invalid_kind_is_400(self, wired):
        client, _, _ = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        resp = client.post(
            "/api/messaging/conversation/messages",
            json={"text": "x", "kind": "video"},
        )
        assert resp.status_code == 400

    def test_send_failure_returns_text_then_retry(self, wired):
        client, engine, fake = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        fake.fail_send = True

        resp = client.post("/api/messaging/conversation/messages", json={"text": "Need O-neg"})

        assert resp.status_code == 502
        detail = resp.json()["detail"]
        assert detail["text"] == "Need O-neg"
        temp_id = detail["temp_id"]
        assert engine.messages[0].delivery_status.value == "failed"

        fake.fail_send = False
        retry = client.post(f"/api/messaging/conversation/messages/{temp_id}/retry")

        assert retry.status_code == 200
        assert [m.id for m in engine.messages] == [retry.json()["message"]["id"]]

    def test_retry_blocked_by_send_in_flight_keeps_entry(self, wired):
        client, engine, fake = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        fake.fail_send = True
        temp_id = client.post(
            "/api/messaging/conversation/messages", json={"text": "Spare insulin?"},
        ).json()["detail"]["temp_id"]
        engine._sending = True

        resp = client.post(f"/api/messaging/conversation/messages/{temp_id}/retry")

        assert resp.status_code == 409
        assert [m.id for m in engine.messages] == [temp_id]
        engine._sending = False

    def test_retry_unknown_is_404(self, wired):
        client, _, _ = wired
        resp = client.post("/api/messaging/conversation/messages/temp-x/retry")
        assert resp.status_code == 404

    def test_discard_failed(self, wired):
        client, engine, fake = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        fake.fail_send = True
        temp_id = client.post(
            "/api/messaging/conversation/messages", json={"text": "oops"},
        ).json()["detail"]["temp_id"]

        resp = client.delete(f"/api/messaging/conversation/messages/{temp_id}")

        assert resp.status_code == 200
        assert resp.json()["text"] == "oops"
        assert engine.messages == []

    def test_mark_read(self, wired):
        client, engine, fake = wired
        client.post(f"/api/messaging/conversations/{OTHER}/open")
        fake.seed(make_message("b1", OTHER, ME, minute=1))

        resp = client.post("/api/messaging/conversation/read")

        assert resp.status_code == 200
        assert resp.json() == {"counterparty_id": OTHER, "updated": 1}


# ── Ledger ──


class TestLedgerEndpoints:

    def test_ledger_after_incoming(self, wired):
        client, engine, fake = wired
        asyncio.run(engine.handle_insert(make_message("c1", THIRD, ME, "Albumin?", minute=1)))

        data = client.get("/api/messaging/ledger").json()

        assert data["order"] == [THIRD]
        assert data["unread"] == {THIRD: 1}
        assert data["total_unread"] == 1
        assert data["previews"][THIRD]["text"] == "Albumin?"

    def test_rebuild(self, wired):
        client, engine, fake = wired
        fake.seed(
            make_message("b1", OTHER, ME, minute=1),
            make_message("c1", THIRD, ME, minute=2, read=True),
        )

        data = client.post("/api/messaging/ledger/rebuild").json()

        assert data["order"] == [THIRD, OTHER]
        assert data["unread"] == {OTHER: 1}

    def test_rebuild_failure_is_502(self, wired):
        client, engine, fake = wired
        fake.fail_fetch = True
        assert client.post("/api/messaging/ledger/rebuild").status_code == 502

    def test_unread_refresh(self, wired):
        client, engine, fake = wired
        fake.seed(make_message("b1", OTHER, ME, minute=1), make_message("b2", OTHER, ME, minute=2))

        data = client.post("/api/messaging/unread/refresh").json()

        assert data == {"unread": {OTHER: 2}, "total_unread": 2}

    def test_unread_refresh_failure_is_502(self, wired):
        client, engine, fake = wired
        fake.fail_unread = True
        assert client.post("/api/messaging/unread/refresh").status_code == 502

    def test_focus_regained_recounts(self, wired):
        client, engine, fake = wired
        fake.seed(make_message("c1", THIRD, ME, minute=1))
        client.post("/api/messaging/focus", json={"focused": False})

        data = client.post("/api/messaging/focus", json={"focused": True}).json()

        assert data == {"focused": True, "unread": {THIRD: 1}}


# ── Drafts ──


class TestDraftEndpoints:

    def test_draft_handoff_consumed_once(self, wired):
        client, _, _ = wired
        client.put("/api/messaging/drafts", json={"text": "Offer: 20 vials", "target": OTHER})

        first = client.get("/api/messaging/drafts").json()
        second = client.get("/api/messaging/drafts").json()

        assert first == {"text": "Offer: 20 vials", "target": OTHER}
        assert second == {"text": "", "target": None}

    def test_delete_draft(self, wired):
        client, _, _ = wired
        client.put("/api/messaging/drafts", json={"text": "x"})
        client.delete("/api/messaging/drafts")
        assert client.get("/api/messaging/drafts").json()["text"] == ""


# ── Status / health ──


class TestStatusEndpoints:

    def test_status(self, wired):
        client, _, _ = wired
        data = client.get("/api/messaging/status").json()
        assert data["status"] == "ok"
        assert data["hospital_id"] == ME
        assert data["conversation_state"] == "empty"
        assert data["registered_alerts"] == ["log"]

    def test_health(self, wired):
        client, _, _ = wired
        assert client.get("/health").json()["status"] == "healthy"
        assert "MedExchange" in client.get("/").json()["status"]

    def test_not_initialized_is_503(self, unwired):
        assert unwired.get("/api/messaging/status").status_code == 503
        assert unwired.get("/api/messaging/ledger").status_code == 503
        assert unwired.get("/api/messaging/drafts").status_code == 503
        assert unwired.post("/api/messaging/identity", json={"id": ME}).status_code == 503


# ── Identity ──


class TestIdentityEndpoint:

    def test_confirm_same_identity(self, wired):
        client, engine, fake = wired

        resp = client.post("/api/messaging/identity", json={"id": ME, "name": "St. Mary's"})

        assert resp.status_code == 200
        assert resp.json()["hospital_id"] == ME
        assert fake.subscribe_calls == 1
        assert resp.json()["degraded"] is False

    def test_other_hospital_is_409(self, wired):
        client, engine, _ = wired
        resp = client.post("/api/messaging/identity", json={"id": "HOSP-Z"})
        assert resp.status_code == 409
        assert engine.hospital_id == ME

    def test_blank_id_is_400(self, wired):
        client, _, _ = wired
        assert client.post("/api/messaging/identity", json={"id": "  "}).status_code == 400


# ── Ledger notifications ──


class TestLedgerWebSocket:

    def test_pushes_ledger_changes(self, wired):
        client, engine, fake = wired
        fake.seed(make_message("b1", OTHER, ME, minute=1))

        with client.websocket_connect("/api/messaging/ws/ledger") as ws:
            client.post("/api/messaging/unread/refresh")
            message = ws.receive_json()

        assert message == {"event": "unread-changed", "key": None}
