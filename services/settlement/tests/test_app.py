"""Tests for the settlement service HTTP and WebSocket surface."""

import asyncio

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from core.config.config import Settings
from orchestration.ws_hub import ChannelHub
from services.settlement.app import create_app
from services.settlement.gateway import LedgerGateway
from storage.session_registry import SessionRegistry

from conftest import STUDENT, T0, TUTOR

SESSION = {"sessionId": "s1", "studentAddress": STUDENT, "tutorAddress": TUTOR, "languageId": 2}


@pytest.fixture
def app(registry, gateway):
    return create_app(Settings(), registry=registry, gateway=gateway, hub=ChannelHub())


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_healthz_echoes_request_id(app) -> None:
    async with _client(app) as ac:
        r = await ac.get("/healthz", headers={"X-Request-ID": "req-1"})
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["ledger"] == "ledger"
    assert r.headers["X-Request-ID"] == "req-1"


@pytest.mark.asyncio
async def test_create_and_read_session(app) -> None:
    async with _client(app) as ac:
        created = await ac.post("/sessions", json={**SESSION, "tutorAddress": TUTOR.upper().replace("0X", "0x")})
        got = await ac.get("/sessions/s1")
    assert created.status_code == 201
    assert got.status_code == 200
    body = got.json()["session"]
    assert body["tutorAddress"] == TUTOR
    assert body["languageId"] == 2
    assert body["startTime"] > T0


@pytest.mark.asyncio
async def test_end_unknown_session_is_404(app) -> None:
    async with _client(app) as ac:
        r = await ac.post("/sessions/missing/end", json={})
        g = await ac.get("/sessions/missing")
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Session missing is not active"}
    assert g.status_code == 404


@pytest.mark.asyncio
async def test_end_settles_from_ledger_and_is_final(app, ledger) -> None:
    ledger.open_session(TUTOR, STUDENT, 7, T0, 10_000)
    async with _client(app) as ac:
        await ac.post("/sessions", json=SESSION)
        r = await ac.post("/sessions/s1/end", json={"userAddress": TUTOR, "userRole": "tutor", "endedBy": TUTOR})
        again = await ac.post("/sessions/s1/end", json={})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    summary = body["summary"]
    assert summary["durationSeconds"] == 125
    assert summary["costMinorUnits"] == "1250000"
    assert summary["costFormatted"] == "1.25"
    assert summary["ledgerSessionId"] == 7
    assert summary["initiatedBy"] == TUTOR
    assert summary["metadata"]["userRole"] == "tutor"
    assert body["transaction"]["confirmed"] is True
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_ledger_failure_is_502_and_retryable(app, ledger) -> None:
    ledger.open_session(TUTOR, STUDENT, 7, T0, 10_000)
    ledger.fail_end = True
    async with _client(app) as ac:
        await ac.post("/sessions", json=SESSION)
        r = await ac.post("/sessions/s1/end")
        still = await ac.get("/sessions/s1")
        ledger.fail_end = False
        retry = await ac.post("/sessions/s1/end")
    assert r.status_code == 502
    assert r.json()["success"] is False
    assert "transaction rejected" in r.json()["details"]
    assert still.status_code == 200
    assert retry.status_code == 200


@pytest.mark.asyncio
async def test_end_without_contract_uses_client_estimate(registry) -> None:
    app = create_app(Settings(), registry=registry, gateway=LedgerGateway(None), hub=ChannelHub())
    async with _client(app) as ac:
        await ac.post("/sessions", json=SESSION)
        r = await ac.post(
            "/sessions/s1/end",
            json={"userAddress": STUDENT, "durationSeconds": "125", "ratePerSecondWei": "10000"},
        )
        status = await ac.get("/ledger/status")
    assert r.status_code == 200
    assert r.json()["summary"]["costFormatted"] == "1.25"
    assert r.json()["summary"]["metadata"]["onChain"] is False
    assert r.json()["transaction"]["mock"] is True
    assert status.json()["mode"] == "fallback-only"


@pytest.mark.asyncio
async def test_media_events_drive_liveness_and_settlement(app) -> None:
    monitor = app.state.lifecycle.monitor
    async with _client(app) as ac:
        await ac.post("/sessions", json=SESSION)
        r = await ac.post("/webrtc-events", json={"type": "user-connected", "sessionId": "s1", "userRole": "tutor"})
        assert r.status_code == 200
        assert monitor.table.get("s1").roles == {"tutor"}

        await ac.post("/webrtc-events", json={"type": "session-heartbeat", "sessionId": "s1"})
        odd = await ac.post("/webrtc-events", json={"type": "screen-share", "sessionId": "s1"})
        assert odd.json()["success"] is True

        ended = await ac.post("/webrtc-events", json={
            "type": "session-ended", "sessionId": "s1", "endedBy": STUDENT,
            "session": {"durationSeconds": 30, "estimatedRatePerSecondWei": "1000"},
        })
        repeat = await ac.post("/webrtc-events", json={"type": "session-ended", "sessionId": "s1"})

    assert ended.status_code == 200
    assert ended.json()["summary"]["initiatedBy"] == STUDENT
    assert "s1" not in monitor.table
    assert repeat.json() == {"success": True, "message": "Session already settled"}


@pytest.mark.asyncio
async def test_registration_lookups_and_invalidation(app, ledger) -> None:
    async with _client(app) as ac:
        tutor = await ac.get(f"/tutors/{TUTOR}")
        await ac.get(f"/tutors/{TUTOR}")
        inv = await ac.post(f"/tutors/{TUTOR}/invalidate-cache")
        await ac.get(f"/tutors/{TUTOR}")
        student = await ac.get(f"/students/{STUDENT}")
        inv_student = await ac.post(f"/students/{STUDENT}/invalidate-cache")
    assert tutor.json()["tutor"]["name"] == "Ana"
    assert tutor.json()["tutor"]["ratePerSecondWei"] == "10000"
    assert inv.json()["success"] is True
    assert ledger.tutor_calls == 2
    assert student.json()["student"]["isRegistered"] is True
    assert inv_student.status_code == 200


@pytest.mark.asyncio
async def test_metrics_exposed(app) -> None:
    async with _client(app) as ac:
        await ac.post("/sessions/missing/end")
        r = await ac.get("/metrics")
    assert r.status_code == 200
    assert "settlement_terminations_total" in r.text


def test_websocket_receives_settlement_event() -> None:
    registry = SessionRegistry(FakeRedis(server=FakeServer(), decode_responses=True))
    app = create_app(Settings(), registry=registry, gateway=LedgerGateway(None), hub=ChannelHub())

    with TestClient(app) as client, client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "register", "address": TUTOR.upper().replace("0X", "0x")})
        assert ws.receive_json() == {"type": "registered", "address": TUTOR}

        client.post("/sessions", json={**SESSION, "sessionId": "s9"})
        r = client.post("/sessions/s9/end", json={"durationSeconds": 60, "ratePerSecondWei": "10000"})
        assert r.status_code == 200

        direct = ws.receive_json()
        assert direct["type"] == "session-ended"
        assert direct["data"]["role"] == "tutor"
        assert direct["data"]["earnings"] == "0.6"
        broadcast = ws.receive_json()
        assert broadcast["data"]["role"] == "broadcast"

        ws.send_json({"type": "session-ended-onchain", "sessionId": "s9"})
        assert ws.receive_json() == {"type": "session-already-settled", "sessionId": "s9"}


class SlowLifecycle:
    """Stands in for the lifecycle; ledger notices take a while to settle."""

    def __init__(self) -> None:
        self.notices = []

    async def ledger_already_ended(self, session_id, address=None):
        await asyncio.sleep(0.2)
        self.notices.append(session_id)
        return None


def test_websocket_keeps_reading_while_ledger_notice_settles() -> None:
    registry = SessionRegistry(FakeRedis(server=FakeServer(), decode_responses=True))
    app = create_app(Settings(), registry=registry, gateway=LedgerGateway(None), hub=ChannelHub())

    with TestClient(app) as client:
        slow = SlowLifecycle()
        app.state.lifecycle = slow
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "session-ended-onchain", "sessionId": "s5"})
            ws.send_json({"type": "register", "address": TUTOR})

            assert ws.receive_json() == {"type": "registered", "address": TUTOR}
            assert ws.receive_json() == {"type": "session-already-settled", "sessionId": "s5"}
    assert slow.notices == ["s5"]
