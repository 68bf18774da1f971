"""
Shared fixtures: an in-memory Redis stand-in and service wiring.
"""

import fnmatch
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from utils.bbox import BoundingBox
from utils.kv import TieredCache
from utils.models import ReadingPoint, TimeSeries


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def setex(self, key, ttl, value):
        self.ops.append((key, ttl, value))
        return self

    def execute(self):
        results = []
        for key, ttl, value in self.ops:
            results.append(self.store.setex(key, ttl, value))
        self.ops = []
        return results


class FakeRedis:
    """The subset of redis.Redis the cache uses, backed by a dict."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.calls = []

    def get(self, key):
        self.calls.append(("get", key))
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.calls.append(("setex", key))
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def mget(self, keys):
        self.calls.append(("mget", tuple(keys)))
        return [self.data.get(k) for k in keys]

    def pipeline(self):
        return FakePipeline(self)

    def scan_iter(self, match="*", count=None):
        return [k for k in list(self.data) if fnmatch.fnmatchcase(k, match)]

    def delete(self, *keys):
        n = 0
        for k in keys:
            if k in self.data:
                del self.data[k]
                self.ttls.pop(k, None)
                n += 1
        return n

    def flushdb(self):
        self.data.clear()
        self.ttls.clear()
        return True

    def ping(self):
        return True

    def ttl(self, key):
        return self.ttls.get(key, -2)

    def dbsize(self):
        return len(self.data)


NOW = datetime(2025, 7, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return TieredCache(url="redis://unused", client=fake_redis)


@pytest.fixture
def austin_bbox():
    return BoundingBox(north=30.5, south=30.1, east=-97.5, west=-98.0)


@pytest.fixture
def texas_bbox():
    return BoundingBox(north=36.5, south=25.8, east=-93.5, west=-106.7)


def make_series(site_id, lat, lon, code="00065", values=((0, 5.0),), name=None):
    """TimeSeries with points at NOW + offset minutes."""
    base = int(NOW.timestamp() * 1000)
    return TimeSeries(
        site_id=site_id,
        site_name=name or f"Site {site_id}",
        latitude=lat,
        longitude=lon,
        parameter_code=code,
        unit="ft",
        points=[ReadingPoint(time=base + m * 60_000, value=v) for m, v in values],
    )


@pytest.fixture
def mock_usgs():
    client = Mock()
    client.fetch_bbox.return_value = []
    client.fetch_site_series.return_value = []
    return client
