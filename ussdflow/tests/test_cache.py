"""
Tests for cache.py and the Redis read-through path of SqlFlowStore.

Redis is replaced by unittest.mock.AsyncMock; no server is needed.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ussdflow import cache
from ussdflow.engine.validator import parse_flow
from ussdflow.store import SqlFlowStore
from ussdflow.tests.conftest import balance_flow_payload


def _redis(store: dict | None = None) -> AsyncMock:
    """AsyncMock Redis backed by a plain dict for get / setex / delete."""
    data = {} if store is None else store
    client = AsyncMock()
    client.get.side_effect = lambda key: data.get(key)
    client.setex.side_effect = lambda key, ttl, value: data.__setitem__(key, value)
    client.delete.side_effect = lambda key: data.pop(key, None)
    client.data = data
    return client


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def test_key_formats() -> None:
    assert cache.make_flow_key("balance", 3) == "flow:balance:v3"
    assert cache.make_latest_key("balance") == "flow:balance:latest"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_flow_cache_round_trip() -> None:
    client = _redis()
    definition = {"id": "balance", "version": 1, "nodes": {}}

    await cache.set_flow_cache(client, "balance", 1, definition, ttl=60)

    client.setex.assert_awaited_once_with("flow:balance:v1", 60, json.dumps(definition))
    assert await cache.get_flow_cache(client, "balance", 1) == definition
    assert await cache.get_flow_cache(client, "balance", 2) is None


@pytest.mark.asyncio
async def test_latest_pointer_set_get_invalidate() -> None:
    client = _redis()

    await cache.set_latest_version(client, "balance", 4)
    assert await cache.get_latest_version(client, "balance") == 4

    await cache.invalidate_latest(client, "balance")
    assert await cache.get_latest_version(client, "balance") is None


@pytest.mark.asyncio
async def test_redis_errors_degrade_to_miss() -> None:
    client = AsyncMock()
    client.get.side_effect = RedisConnectionError("down")
    client.setex.side_effect = RedisConnectionError("down")
    client.delete.side_effect = RedisConnectionError("down")

    assert await cache.get_flow_cache(client, "balance", 1) is None
    assert await cache.get_latest_version(client, "balance") is None
    await cache.set_flow_cache(client, "balance", 1, {})
    await cache.set_latest_version(client, "balance", 1)
    await cache.invalidate_latest(client, "balance")


# ---------------------------------------------------------------------------
# SqlFlowStore + cache
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_flow_store_populates_and_uses_cache(sqlite_sessionmaker) -> None:
    async with sqlite_sessionmaker() as db:
        await SqlFlowStore(db).publish(parse_flow(balance_flow_payload()))
        await db.commit()

    client = _redis()
    async with sqlite_sessionmaker() as db:
        first = await SqlFlowStore(db, redis=client).get("balance")

    assert first.version == 1
    assert "flow:balance:v1" in client.data
    assert client.data["flow:balance:latest"] == "1"

    # Second read is served from Redis: no database needed
    served = await SqlFlowStore(AsyncMock(), redis=client).get("balance")
    assert served == first


@pytest.mark.asyncio
async def test_publish_invalidates_latest_pointer(sqlite_sessionmaker) -> None:
    client = _redis({"flow:balance:latest": "1"})
    async with sqlite_sessionmaker() as db:
        store = SqlFlowStore(db, redis=client)
        published = await store.publish(parse_flow(balance_flow_payload()))

    assert published.version == 1
    assert "flow:balance:latest" not in client.data
