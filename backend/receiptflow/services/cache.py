"""Redis helpers for the two pieces of state that live outside the database.

- Team claim statistics: derived, non-authoritative, short TTL, dropped on
  every claim mutation of the team.
- Stripe webhook delivery markers: SET NX keys that let a redelivered event
  be acknowledged without being applied twice.

Every helper is best-effort: a missing or failing Redis never raises.  An
empty ``REDIS_URL`` disables both.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None

WEBHOOK_MARKER_TTL_SECONDS = 7 * 24 * 3600


async def get_redis():
    """Return a singleton async Redis client or None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    except (RedisError, ValueError) as e:  # pragma: no cover
        logger.warning("Redis unavailable: %s", e)
        _redis_client = None
    return _redis_client


def team_stats_cache_key(team_id: str) -> str:
    return f"claims:stats:{team_id}"


def webhook_marker_key(event_id: str) -> str:
    return f"stripe:webhook:{event_id}"


async def get_team_stats(team_id: str) -> Optional[Dict[str, Any]]:
    client = await get_redis()
    if not client:
        return None
    try:
        raw = await client.get(team_stats_cache_key(team_id))
        return json.loads(raw) if raw is not None else None
    except (RedisError, OSError, ValueError) as e:
        logger.debug("stats cache read failed team=%s: %s", team_id, e)
        return None


async def store_team_stats(team_id: str, stats: Dict[str, Any]) -> None:
    client = await get_redis()
    if not client:
        return
    try:
        await client.set(team_stats_cache_key(team_id), json.dumps(stats), ex=settings.STATS_CACHE_TTL_SECONDS)
    except (RedisError, OSError) as e:
        logger.debug("stats cache write failed team=%s: %s", team_id, e)


async def invalidate_team_stats(team_id: str) -> None:
    client = await get_redis()
    if not client:
        return
    try:
        await client.delete(team_stats_cache_key(team_id))
    except (RedisError, OSError) as e:
        logger.debug("stats cache invalidation failed team=%s: %s", team_id, e)


async def mark_webhook_delivery(event_id: str, ttl: int = WEBHOOK_MARKER_TTL_SECONDS) -> Optional[bool]:
    """True on the first delivery of ``event_id``, False on a redelivery.

    None means no marker could be written (no Redis); callers then rely on
    the idempotence of the event handlers.
    """
    client = await get_redis()
    if not client:
        return None
    try:
        return bool(await client.set(webhook_marker_key(event_id), "1", nx=True, ex=ttl))
    except (RedisError, OSError) as e:
        logger.debug("webhook marker failed id=%s: %s", event_id, e)
        return None


async def release_webhook_delivery(event_id: str) -> None:
    """Drop the marker so a redelivery of ``event_id`` is processed again."""
    client = await get_redis()
    if not client:
        return
    try:
        await client.delete(webhook_marker_key(event_id))
    except (RedisError, OSError) as e:
        logger.warning("webhook marker release failed id=%s: %s", event_id, e)
