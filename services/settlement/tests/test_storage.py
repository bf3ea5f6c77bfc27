"""Tests for the redis-backed session registry and registration cache."""

import pytest

from packages.schemas.session import SessionMapping

from conftest import STUDENT, T0, TUTOR


def _mapping(session_id: str = "s1") -> SessionMapping:
    return SessionMapping(
        session_id=session_id,
        student_address=STUDENT,
        tutor_address=TUTOR.upper().replace("0X", "0x"),
        language_id=3,
        start_time=T0,
    )


@pytest.mark.asyncio
async def test_put_get_normalizes_addresses(registry, redis_client) -> None:
    await registry.put(_mapping())
    got = await registry.get("s1")
    assert got is not None
    assert got.student_address == STUDENT
    assert got.tutor_address == TUTOR
    assert got.language_id == 3
    assert got.start_time == T0
    assert got.student_endpoint is None
    assert await redis_client.ttl("session:s1") > 0


@pytest.mark.asyncio
async def test_put_replaces_existing_fields(registry) -> None:
    first = _mapping().model_copy(update={"tutor_endpoint": "wss://media/1"})
    await registry.put(first)
    await registry.put(_mapping())
    got = await registry.get("s1")
    assert got.tutor_endpoint is None


@pytest.mark.asyncio
async def test_missing_and_unreadable_mappings_read_as_absent(registry, redis_client) -> None:
    assert await registry.get("nope") is None
    await redis_client.hset("session:broken", mapping={"sessionId": "broken"})
    assert await registry.get("broken") is None


@pytest.mark.asyncio
async def test_delete_is_idempotent(registry) -> None:
    await registry.put(_mapping())
    assert await registry.delete("s1") is True
    assert await registry.delete("s1") is False
    assert await registry.get("s1") is None


@pytest.mark.asyncio
async def test_create_stamps_start_time(registry) -> None:
    mapping = await registry.create("s2", STUDENT, TUTOR, 1)
    assert mapping.start_time > T0
    assert (await registry.get("s2")).start_time == mapping.start_time


@pytest.mark.asyncio
async def test_cache_guard_skips_write(cache) -> None:
    calls = []

    async def fetch():
        calls.append(1)
        return {"name": "placeholder", "mockData": True}

    for _ in range(2):
        data = await cache.get_or_fetch("registration", "k", fetch, should_cache=lambda d: not d["mockData"])
        assert data["name"] == "placeholder"
    assert len(calls) == 2
    assert await cache.get("registration", "k") is None


@pytest.mark.asyncio
async def test_cache_hit_and_namespace_flush(cache) -> None:
    async def fetch():
        return {"v": 1}

    await cache.get_or_fetch("registration", "a", fetch)
    await cache.get_or_fetch("registration", "b", fetch)
    await cache.set("other", "c", {"v": 2})
    assert await cache.get("registration", "a") == {"v": 1}

    assert await cache.flush("registration") == 2
    assert await cache.get("registration", "a") is None
    assert await cache.get("other", "c") == {"v": 2}


@pytest.mark.asyncio
async def test_cache_rejects_non_dict_fetch(cache) -> None:
    async def fetch():
        return ["not", "a", "dict"]

    with pytest.raises(ValueError):
        await cache.get_or_fetch("registration", "x", fetch)
