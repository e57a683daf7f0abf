"""
cache.py - Redis caching layer for published flow definitions.

Namespace conventions:
  flow:{flow_id}:v{version}   -> FlowDefinition JSON      TTL settings.flow_cache_ttl_seconds
  flow:{flow_id}:latest       -> latest published version  TTL settings.flow_cache_ttl_seconds

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis (None when disabled)
  - Helper functions take the client as a param - no module-level global state
  - Versioned entries are immutable, so they are never invalidated; only the
    latest pointer is dropped when a new version is published
  - Redis is an accelerator, never the source of truth: every helper logs and
    degrades to a cache miss on RedisError so PostgreSQL still answers
"""
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ussdflow.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
FLOW_PREFIX = "flow"
LATEST_SUFFIX = "latest"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_flow_key(flow_id: str, version: int) -> str:
    """Build Redis key for one immutable flow version: flow:{flow_id}:v{version}"""
    return f"{FLOW_PREFIX}:{flow_id}:v{version}"


def make_latest_key(flow_id: str) -> str:
    return f"{FLOW_PREFIX}:{flow_id}:{LATEST_SUFFIX}"


# ---------------------------------------------------------------------------
# Pool factory - called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup - stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Flow definition helpers
# ---------------------------------------------------------------------------

async def get_flow_cache(
    client: aioredis.Redis, flow_id: str, version: int
) -> Optional[dict]:
    """
    Return the cached definition dict for (flow_id, version), or None on miss.
    """
    key = make_flow_key(flow_id, version)
    try:
        raw = await client.get(key)
    except RedisError as exc:
        logger.warning("Flow cache read failed key=%s: %s", key, exc)
        return None
    if raw is None:
        return None
    logger.debug("Flow cache hit key=%s", key)
    return json.loads(raw)


async def set_flow_cache(
    client: aioredis.Redis,
    flow_id: str,
    version: int,
    definition: dict,
    ttl: Optional[int] = None,
) -> None:
    key = make_flow_key(flow_id, version)
    ttl = ttl or settings.flow_cache_ttl_seconds
    try:
        await client.setex(key, ttl, json.dumps(definition))
    except RedisError as exc:
        logger.warning("Flow cache write failed key=%s: %s", key, exc)
        return
    logger.info("Flow definition cached key=%s ttl=%ds", key, ttl)


async def get_latest_version(client: aioredis.Redis, flow_id: str) -> Optional[int]:
    key = make_latest_key(flow_id)
    try:
        raw = await client.get(key)
    except RedisError as exc:
        logger.warning("Flow cache read failed key=%s: %s", key, exc)
        return None
    return int(raw) if raw is not None else None


async def set_latest_version(
    client: aioredis.Redis, flow_id: str, version: int, ttl: Optional[int] = None
) -> None:
    key = make_latest_key(flow_id)
    try:
        await client.setex(key, ttl or settings.flow_cache_ttl_seconds, str(version))
    except RedisError as exc:
        logger.warning("Flow cache write failed key=%s: %s", key, exc)


async def invalidate_latest(client: aioredis.Redis, flow_id: str) -> None:
    """Drop the latest pointer so the next lookup re-reads it from the database."""
    key = make_latest_key(flow_id)
    try:
        await client.delete(key)
    except RedisError as exc:
        logger.warning("Flow cache invalidate failed key=%s: %s", key, exc)
        return
    logger.info("Flow latest pointer invalidated flow_id=%s", flow_id)
