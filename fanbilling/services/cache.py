from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable, List, Optional

import redis

from fanbilling.core.settings import S
from fanbilling.metrics import record_cache_failure

logger = logging.getLogger(__name__)

# Default TTL for primed read caches, in seconds.
TTL_MEDIUM = 120

ANALYTICS_SCOPES = ("earnings", "subscribers", "tiers", "all")

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    global _redis_client
    if _redis_client is None:
        if not S.redis_url:
            return None
        _redis_client = redis.Redis.from_url(
            S.redis_url,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
        )
    return _redis_client


# -----------------------------
# Keys
# -----------------------------

def key_subscription_detail(subscription_id: str) -> str:
    return f"sub:detail:{subscription_id}"


def key_fan_subscriptions(fan_id: str) -> str:
    return f"sub:fan:{fan_id}"


def key_fan_active(fan_id: str) -> str:
    return f"sub:fan:active:{fan_id}"


def key_fan_count(fan_id: str) -> str:
    return f"sub:fan:count:{fan_id}"


def key_artist_subscriptions(artist_id: str) -> str:
    return f"sub:artist:{artist_id}"


def key_artist_metrics(artist_id: str) -> str:
    return f"sub:artist:metrics:{artist_id}"


def key_artist_revenue(artist_id: str) -> str:
    return f"sub:artist:revenue:{artist_id}"


def key_tier(tier_id: str) -> str:
    return f"sub:tier:{tier_id}"


def key_tier_count(tier_id: str) -> str:
    return f"sub:tier:count:{tier_id}"


def key_tier_revenue(tier_id: str) -> str:
    return f"sub:tier:revenue:{tier_id}"


def key_billing_stats() -> str:
    return "sub:stats:billing"


def key_batch_lock(job: str) -> str:
    return f"lock:billing:{job}"


_ANALYTICS_PREFIXES = {
    "earnings": ("analytics:earnings:", "analytics:daily:"),
    "subscribers": ("analytics:subscribers:", "analytics:churn:", "analytics:activity:"),
    "tiers": ("analytics:tiers:",),
}


# -----------------------------
# Low-level, best-effort operations
# -----------------------------

def _delete(keys: Iterable[str], patterns: Iterable[str] = ()) -> int:
    client = get_redis_client()
    if client is None:
        return 0
    targets: List[str] = list(keys)
    try:
        for pattern in patterns:
            targets.extend(client.scan_iter(match=pattern, count=200))
        if not targets:
            return 0
        return int(client.delete(*targets))
    except redis.RedisError as exc:
        record_cache_failure("delete")
        logger.warning("Cache invalidation failed: %s", exc, extra={"keys": targets[:10]})
        return 0


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        record_cache_failure("get")
        logger.warning("Cache read failed for %s: %s", key, exc)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding undecodable cache entry %s", key)
        return None


def set_cached_json(key: str, value: Any, ttl: int = TTL_MEDIUM) -> None:
    client = get_redis_client()
    if client is None:
        return
    try:
        client.setex(key, ttl, json.dumps(value, default=str))
    except redis.RedisError as exc:
        record_cache_failure("set")
        logger.warning("Cache write failed for %s: %s", key, exc)


def acquire_batch_lock(job: str, ttl: Optional[int] = None) -> Optional[str]:
    """Take the per-job scheduler lock. Returns a token, ``""`` when no cache is configured,
    or None when another runner holds the lock."""
    client = get_redis_client()
    if client is None:
        return ""
    token = uuid.uuid4().hex
    try:
        ok = client.set(key_batch_lock(job), token, nx=True, ex=ttl or S.batch_lock_ttl_seconds)
    except redis.RedisError as exc:
        record_cache_failure("lock")
        logger.warning("Batch lock unavailable for %s, running unlocked: %s", job, exc)
        return ""
    return token if ok else None


def release_batch_lock(job: str, token: Optional[str]) -> None:
    if not token:
        return
    client = get_redis_client()
    if client is None:
        return
    try:
        if client.get(key_batch_lock(job)) == token:
            client.delete(key_batch_lock(job))
    except redis.RedisError as exc:
        record_cache_failure("lock")
        logger.warning("Batch lock release failed for %s: %s", job, exc)


# -----------------------------
# Invalidation API
# -----------------------------

def invalidate_fan_caches(fan_id: str) -> int:
    return _delete(
        [key_fan_subscriptions(fan_id), key_fan_active(fan_id), key_fan_count(fan_id)],
    )


def invalidate_artist_caches(artist_id: str) -> int:
    return _delete(
        [key_artist_subscriptions(artist_id), key_artist_metrics(artist_id), key_artist_revenue(artist_id), key_billing_stats()],
        ["sub:trending:*"],
    )


def invalidate_analytics_cache(artist_id: str, scope: str = "all") -> int:
    if scope not in ANALYTICS_SCOPES:
        raise ValueError(f"Unknown analytics scope: {scope}")
    scopes = _ANALYTICS_PREFIXES.keys() if scope == "all" else (scope,)
    patterns = [f"{prefix}{artist_id}*" for s in scopes for prefix in _ANALYTICS_PREFIXES[s]]
    return _delete([], patterns)


def invalidate_subscription_cache(
    subscription_id: str,
    fan_id: Optional[str] = None,
    artist_id: Optional[str] = None,
    tier_id: Optional[str] = None,
) -> int:
    keys = [key_subscription_detail(subscription_id)]
    if tier_id:
        keys.extend([key_tier(tier_id), key_tier_count(tier_id), key_tier_revenue(tier_id)])
    removed = _delete(keys)
    if fan_id:
        removed += invalidate_fan_caches(fan_id)
    if artist_id:
        removed += invalidate_artist_caches(artist_id)
        removed += invalidate_analytics_cache(artist_id, "all")
    return removed


def invalidate_after_change(sub: dict, *, extra_tier_ids: Iterable[str] = ()) -> None:
    """Post-commit hook: never raises, so a cache outage cannot fail a ledger write."""
    try:
        invalidate_subscription_cache(
            sub["subscription_id"],
            sub.get("fan_id"),
            sub.get("artist_id"),
            sub.get("tier_id"),
        )
        for tier_id in extra_tier_ids:
            _delete([key_tier(tier_id), key_tier_count(tier_id), key_tier_revenue(tier_id)])
    except Exception:
        record_cache_failure("invalidate")
        logger.exception("Cache invalidation raised", extra={"subscription_id": sub.get("subscription_id")})
