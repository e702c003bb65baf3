from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRedis
from fanbilling.main import app
from fanbilling.services import cache


def _fill(client: FakeRedis, *keys: str) -> None:
    for key in keys:
        client.store[key] = "1"


def test_subscription_invalidation_drops_every_dependent_key(fake_redis) -> None:
    _fill(
        fake_redis,
        "sub:detail:sub-1",
        "sub:fan:fan-1", "sub:fan:active:fan-1", "sub:fan:count:fan-1",
        "sub:artist:artist-1", "sub:artist:metrics:artist-1", "sub:artist:revenue:artist-1",
        "sub:tier:tier-1", "sub:tier:count:tier-1", "sub:tier:revenue:tier-1",
        "sub:stats:billing", "sub:trending:week",
        "analytics:earnings:artist-1:30d", "analytics:churn:artist-1", "analytics:tiers:artist-1",
        "sub:detail:sub-2", "analytics:earnings:artist-2:30d",
    )

    cache.invalidate_after_change({"subscription_id": "sub-1", "fan_id": "fan-1", "artist_id": "artist-1", "tier_id": "tier-1"})

    assert sorted(fake_redis.store) == ["analytics:earnings:artist-2:30d", "sub:detail:sub-2"]


def test_tier_change_also_drops_the_previous_tier(fake_redis) -> None:
    _fill(fake_redis, "sub:tier:tier-1", "sub:tier:count:tier-1", "sub:tier:tier-2")

    cache.invalidate_after_change({"subscription_id": "sub-1", "tier_id": "tier-2"}, extra_tier_ids=["tier-1"])

    assert fake_redis.store == {}


def test_analytics_scope(fake_redis) -> None:
    _fill(fake_redis, "analytics:earnings:artist-1", "analytics:daily:artist-1:2024", "analytics:tiers:artist-1")

    assert cache.invalidate_analytics_cache("artist-1", "earnings") == 2
    assert list(fake_redis.store) == ["analytics:tiers:artist-1"]
    with pytest.raises(ValueError):
        cache.invalidate_analytics_cache("artist-1", "weather")


def test_cache_outage_never_raises(monkeypatch) -> None:
    broken = FakeRedis(broken=True)
    monkeypatch.setattr(cache, "get_redis_client", lambda: broken)

    cache.invalidate_after_change({"subscription_id": "sub-1", "fan_id": "fan-1", "artist_id": "artist-1", "tier_id": "tier-1"})
    assert cache.get_cached_json("sub:stats:billing") is None
    cache.set_cached_json("sub:stats:billing", {"a": 1})
    assert cache.acquire_batch_lock("process-renewals") == ""


def test_no_cache_configured(monkeypatch) -> None:
    monkeypatch.setattr(cache, "get_redis_client", lambda: None)

    assert cache.invalidate_subscription_cache("sub-1", "fan-1", "artist-1", "tier-1") == 0
    assert cache.acquire_batch_lock("process-renewals") == ""


def test_json_round_trip_and_bad_entries(fake_redis) -> None:
    cache.set_cached_json("k", {"total": "10.00"})
    assert cache.get_cached_json("k") == {"total": "10.00"}

    fake_redis.store["bad"] = "{not json"
    assert cache.get_cached_json("bad") is None


def test_primed_entries_expire(fake_redis) -> None:
    cache.set_cached_json("default", {"a": 1})
    cache.set_cached_json("custom", {"a": 1}, ttl=45)

    assert fake_redis.ttls == {"default": cache.TTL_MEDIUM, "custom": 45}
    assert cache.TTL_MEDIUM == 120


def test_batch_lock_is_exclusive_and_owned(fake_redis) -> None:
    token = cache.acquire_batch_lock("process-renewals")

    assert token
    assert cache.acquire_batch_lock("process-renewals") is None

    cache.release_batch_lock("process-renewals", "someone-else")
    assert cache.acquire_batch_lock("process-renewals") is None

    cache.release_batch_lock("process-renewals", token)
    assert cache.acquire_batch_lock("process-renewals")


def test_billing_job_route_conflicts_while_locked(tables, fake_redis) -> None:
    client = TestClient(app)
    headers = {"x-user-sub": "artist-1", "x-user-role": "artist"}
    fake_redis.store[cache.key_batch_lock("send-reminders")] = "other-runner"

    resp = client.post("/api/billing/cycle", json={"action": "send-reminders"}, headers=headers)

    assert resp.status_code == 409
    assert resp.json() == {"error": "Billing job already running"}

    del fake_redis.store[cache.key_batch_lock("send-reminders")]
    resp = client.post("/api/billing/cycle", json={"action": "send-reminders"}, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"message": "Billing reminders sent", "count": 0}
    assert cache.key_batch_lock("send-reminders") not in fake_redis.store
