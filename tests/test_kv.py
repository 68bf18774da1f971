"""
Tests for the Redis-backed tiered cache.
"""

import json
from unittest.mock import Mock

import pytest
import redis

from utils.kv import (
    CACHE_TTL,
    TieredCache,
    flood_stages_key,
    history_key,
    metadata_key,
    stations_key,
    waterways_key,
)


class TestKeys:
    def test_key_shapes(self):
        assert stations_key("30.1,-98.0,30.5,-97.5", 8) == "usgs:30.1,-98.0,30.5,-97.5:8h"
        assert waterways_key("1.0,2.0,3.0,4.0") == "waterways:1.0,2.0,3.0,4.0"
        assert history_key("08158000", 24, "00065") == "gauge_historical:08158000:00065:24h"
        assert metadata_key("08158000") == "gauge_metadata:08158000"
        assert flood_stages_key("08158000") == "flood_stages:08158000"

    def test_ttl_table(self):
        assert CACHE_TTL["usgs_current"] == 900
        assert CACHE_TTL["historical_data"] == 3600
        assert CACHE_TTL["waterways"] == 86400
        assert CACHE_TTL["site_metadata"] == 86400
        assert CACHE_TTL["flood_stages"] == 604800


class TestTieredCache:
    def test_set_get_round_trip(self, cache, fake_redis):
        assert cache.set("k", {"a": [1, 2]}, 60) is True
        assert cache.get("k") == {"a": [1, 2]}
        assert fake_redis.ttls["k"] == 60

    def test_miss_is_none(self, cache):
        assert cache.get("absent") is None

    def test_get_many_single_round_trip(self, cache, fake_redis):
        cache.set("a", 1, 60)
        cache.set("b", 2, 60)
        fake_redis.calls.clear()
        assert cache.get_many(["a", "b", "c"]) == {"a": 1, "b": 2}
        assert [c[0] for c in fake_redis.calls] == ["mget"]

    def test_set_many_uses_ttl(self, cache, fake_redis):
        assert cache.set_many({"x": 1, "y": 2}, 120)
        assert fake_redis.ttls == {"x": 120, "y": 120}

    def test_invalid_json_is_a_miss(self, cache, fake_redis):
        fake_redis.data["bad"] = "{not json"
        assert cache.get("bad") is None
        assert cache.get_many(["bad"]) == {}

    def test_prefix(self, fake_redis):
        c = TieredCache(url="redis://unused", client=fake_redis, prefix="test:")
        c.set("k", 1, 10)
        assert "test:k" in fake_redis.data
        assert c.get("k") == 1

    def test_delete_pattern(self, cache, fake_redis):
        cache.set("usgs:a:8h", 1, 60)
        cache.set("usgs:b:8h", 1, 60)
        cache.set("waterways:a", 1, 60)
        assert cache.delete_pattern("usgs:*") == 2
        assert list(fake_redis.data) == ["waterways:a"]

    def test_clear_all_with_prefix_leaves_other_keys(self, fake_redis):
        fake_redis.data["other:k"] = json.dumps(1)
        c = TieredCache(url="redis://unused", client=fake_redis, prefix="test:")
        c.set("k", 1, 10)
        assert c.clear_all()
        assert list(fake_redis.data) == ["other:k"]

    def test_ping_and_key_count(self, cache):
        cache.set("k", 1, 10)
        assert cache.ping() is True
        assert cache.key_count() == 1


class TestCacheDegradation:
    """An unreachable store behaves like a cold cache and never raises."""

    @pytest.fixture
    def broken(self):
        client = Mock()
        err = redis.exceptions.ConnectionError("connection refused")
        for name in ("get", "setex", "mget", "pipeline", "scan_iter", "delete", "flushdb", "ping", "ttl", "dbsize"):
            getattr(client, name).side_effect = err
        return TieredCache(url="redis://unused", client=client)

    def test_reads_miss(self, broken):
        assert broken.get("k") is None
        assert broken.get_many(["a", "b"]) == {}

    def test_writes_report_failure(self, broken):
        assert broken.set("k", 1, 10) is False
        assert broken.set_many({"a": 1}, 10) is False

    def test_admin_calls_degrade(self, broken):
        assert broken.delete_pattern("*") == 0
        assert broken.delete(["a"]) == 0
        assert broken.ping() is False
        assert broken.key_count() is None
        assert broken.ttl("k") is None

    def test_no_url_disables_cache(self):
        c = TieredCache(url="")
        assert c.get("k") is None
        assert c.set("k", 1, 10) is False
        assert c.ping() is False
