"""Shared fixtures: in-memory redis, a scriptable fake ledger, and wired services."""

import time
from typing import Callable, Dict, Optional

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from adapters.base import LedgerClient
from orchestration.service_mesh_hooks import PollConfig
from packages.schemas.session import LedgerReceipt, LedgerSessionRecord, StudentInfo, TutorInfo
from services.settlement.gateway import LedgerGateway
from services.settlement.terminator import SessionTerminator
from storage.redis_cache import ReadThroughCache
from storage.session_registry import SessionRegistry

T0 = 1_700_000_000
TUTOR = "0xabcdef0000000000000000000000000000000001"
STUDENT = "0x1234560000000000000000000000000000000002"


class FakeLedger(LedgerClient):
    """In-memory escrow contract.

    `end_session` closes the active slot at `clock()` and records the history
    entry with `total_paid = elapsed * rate`, like the real contract.
    """

    def __init__(self, writable: bool = True, clock: Optional[Callable[[], int]] = None) -> None:
        self.writable = writable
        self.clock = clock or (lambda: int(time.time()))
        self.active: Dict[str, LedgerSessionRecord] = {}
        self.history: Dict[int, LedgerSessionRecord] = {}
        self.tutors: Dict[str, TutorInfo] = {}
        self.fail_reads = False
        self.failing_active_reads = 0
        self.history_lag = False
        self.fail_end = False
        self.fail_after_end = False
        self.end_calls = 0
        self.tutor_calls = 0
        self.active_reads = 0

    @property
    def can_write(self) -> bool:
        return self.writable

    def open_session(self, tutor: str, student: str, ledger_id: int, start: int, rate: int) -> None:
        self.active[tutor] = LedgerSessionRecord(
            student_address=student,
            tutor_address=tutor,
            start_time=start,
            rate_per_second_wei=rate,
            language_id=1,
            ledger_session_id=ledger_id,
            is_active=True,
        )

    def _close(self, tutor: str) -> None:
        rec = self.active.get(tutor)
        if rec is None or not rec.is_active:
            return
        end = self.clock()
        closed = rec.model_copy(update={
            "is_active": False,
            "end_time": end,
            "total_paid_wei": (end - rec.start_time) * rec.rate_per_second_wei,
        })
        self.active[tutor] = closed
        self.history[rec.ledger_session_id] = closed

    async def active_session(self, tutor_address):
        self.active_reads += 1
        if self.fail_reads or self.active_reads <= self.failing_active_reads:
            raise ConnectionError("rpc unreachable")
        return self.active.get(tutor_address)

    async def session_history(self, ledger_session_id):
        if self.fail_reads:
            raise ConnectionError("rpc unreachable")
        if self.history_lag:
            return None
        return self.history.get(ledger_session_id)

    async def end_session(self, tutor_address):
        self.end_calls += 1
        if self.fail_end:
            raise ConnectionError("transaction rejected")
        self._close(tutor_address)
        if self.fail_after_end:
            raise TimeoutError("receipt not received")
        return LedgerReceipt(tx_hash="0x" + "ab" * 32, confirmed=True, block_number=42)

    async def tutor_info(self, address):
        self.tutor_calls += 1
        if self.fail_reads:
            raise ConnectionError("rpc unreachable")
        return self.tutors.get(address) or TutorInfo(
            address=address, name="Ana", languages=["spanish"], rate_per_second_wei=10_000,
            total_sessions=3, rating=4.5, is_registered=True,
        )

    async def student_info(self, address):
        if self.fail_reads:
            raise ConnectionError("rpc unreachable")
        return StudentInfo(address=address, name="Ben", total_sessions=1, is_registered=True)


@pytest_asyncio.fixture
async def redis_client():
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def registry(redis_client):
    return SessionRegistry(redis_client)


@pytest.fixture
def cache(redis_client):
    return ReadThroughCache(redis_client, jitter_sec=0)


@pytest.fixture
def ledger():
    return FakeLedger(clock=lambda: T0 + 125)


@pytest.fixture
def gateway(ledger, cache):
    return LedgerGateway(ledger, cache, allow_fallback=True, token_decimals=6)


@pytest.fixture
def terminator(registry, gateway):
    return SessionTerminator(
        registry,
        gateway,
        verify=PollConfig(attempts=3, interval=0),
        clock=lambda: T0 + 125,
    )
