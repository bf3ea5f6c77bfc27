"""Tests for session-ended fan-out over the channel hub."""

import pytest

from orchestration.ws_hub import ChannelHub
from packages.schemas.session import SettlementSummary
from services.settlement.notifier import NotificationFanout, build_event

from conftest import STUDENT, TUTOR


class FakeSocket:
    def __init__(self) -> None:
        self.sent = []

    async def send_json(self, data) -> None:
        self.sent.append(data)


class BrokenSocket:
    async def send_json(self, data) -> None:
        raise ConnectionResetError("peer went away")


def _summary() -> SettlementSummary:
    return SettlementSummary(
        session_id="s1",
        ledger_session_id=7,
        tutor_address=TUTOR,
        student_address=STUDENT,
        language_id=1,
        duration_seconds=125,
        cost_minor_units=1_250_000,
        cost_formatted="1.25",
        currency_code="PYUSD",
        ended_at_iso="2023-11-14T22:15:25.000Z",
        initiated_by=TUTOR,
    )


async def _hub_with(**bindings):
    hub = ChannelHub()
    sockets = {}
    for cid, (sock, address) in bindings.items():
        await hub.register(cid, sock)
        if address:
            await hub.bind(cid, address)
        sockets[cid] = sock
    return hub, sockets


def test_event_payload_is_role_specific() -> None:
    tutor = build_event(_summary(), "tutor")
    student = build_event(_summary(), "student")
    assert tutor["type"] == student["type"] == "session-ended"
    assert tutor["data"]["earnings"] == "1.25"
    assert "cost" not in tutor["data"]
    assert student["data"]["cost"] == "1.25"
    assert student["data"]["costMinorUnits"] == "1250000"
    assert student["data"]["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_direct_delivery_then_broadcast() -> None:
    hub, socks = await _hub_with(t=(FakeSocket(), TUTOR), s=(FakeSocket(), STUDENT), x=(FakeSocket(), None))
    report = await NotificationFanout(hub).notify(_summary())

    assert report.delivered == ["tutor", "student"]
    assert report.failed == []
    assert report.broadcast_count == 3
    assert socks["t"].sent[0]["data"]["role"] == "tutor"
    assert socks["s"].sent[0]["data"]["role"] == "student"
    bcast = socks["x"].sent[0]["data"]
    assert bcast["role"] == "broadcast"
    assert bcast["targets"] == [TUTOR, STUDENT]


@pytest.mark.asyncio
async def test_stale_index_falls_back_to_scan() -> None:
    hub, socks = await _hub_with(old=(FakeSocket(), TUTOR), new=(FakeSocket(), TUTOR))
    await hub.unregister("new")
    assert hub.lookup(TUTOR) is None

    report = await NotificationFanout(hub).notify(_summary())

    assert "tutor" in report.delivered
    assert socks["old"].sent[0]["data"]["role"] == "tutor"
    assert hub.lookup(TUTOR).channel_id == "old"


@pytest.mark.asyncio
async def test_unreachable_participants_do_not_raise() -> None:
    hub, socks = await _hub_with(t=(BrokenSocket(), TUTOR), other=(FakeSocket(), None))

    report = await NotificationFanout(hub).notify(_summary())

    assert report.delivered == []
    assert report.failed == ["tutor", "student"]
    assert report.broadcast_count == 1
    assert socks["other"].sent[0]["data"]["targets"] == [TUTOR, STUDENT]
    assert [c.channel_id for c in hub.channels()] == ["other"]
