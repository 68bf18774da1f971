"""
Tests for Overpass waterway parsing and the paced Overpass client.
"""

import threading
import time
from unittest.mock import Mock

import overpy
import pytest

from utils.bbox import BoundingBox
from utils.errors import UpstreamError, UpstreamTimeout
from utils.models import GeometryFeature
from utils.overpass_throttle import OverpassThrottle
from utils.waterways import (
    build_query,
    classify_kind,
    fetch_waterways,
    is_major,
    parse_waterways,
    stitch_rings,
)


def node(i, lat, lon):
    return {"type": "node", "id": i, "lat": lat, "lon": lon}


def way(i, nodes, **tags):
    return {"type": "way", "id": i, "nodes": nodes, "tags": tags}


def result(*elements):
    return overpy.Result.from_json({"elements": list(elements)})


class TestQuery:
    def test_bbox_order_and_recursion(self):
        q = build_query(BoundingBox(north=30.5, south=30.1, east=-97.5, west=-98.0))
        assert "(30.1,-98.0,30.5,-97.5)" in q
        assert "(._;>;);" in q
        assert '["name"~' not in q

    def test_name_filter_case_insensitive(self):
        q = build_query(BoundingBox(north=1, south=0, east=1, west=0), name_filter='Lake "Travis"')
        assert '["name"~"Lake \\"Travis\\"",i]' in q


class TestClassifyKind:
    @pytest.mark.parametrize(
        "tags,kind",
        [
            ({"waterway": "river"}, "river"),
            ({"waterway": "stream", "name": "Shoal Creek"}, "stream"),
            ({"waterway": "stream"}, None),
            ({"natural": "water", "name": "Lake Travis"}, "lake"),
            ({"natural": "water", "name": "Mansfield Dam Pool"}, "reservoir"),
            ({"landuse": "reservoir", "name": "Canyon"}, "reservoir"),
            ({"natural": "water"}, None),
        ],
    )
    def test_kinds(self, tags, kind):
        assert classify_kind(tags) == kind


class TestStitchRings:
    def test_joins_reversed_segments(self):
        a = [(0, 0), (0, 1)]
        b = [(1, 1), (0, 1)]  # reversed relative to a
        c = [(1, 1), (1, 0), (0, 0)]
        [ring] = stitch_rings([a, b, c])
        assert ring[0] == ring[-1]
        assert set(ring) == {(0, 0), (0, 1), (1, 1), (1, 0)}

    def test_disjoint_segments_stay_apart(self):
        rings = stitch_rings([[(0, 0), (0, 1)], [(5, 5), (5, 6)]])
        assert len(rings) == 2


class TestParseWaterways:
    def test_river_way(self):
        r = result(
            node(1, 30.0, -97.0), node(2, 30.1, -97.1), node(3, 30.2, -97.2),
            way(10, [1, 2, 3], waterway="river", name="Colorado River"),
        )
        [f] = parse_waterways(r)
        assert f.id == "way/10"
        assert f.kind == "river"
        assert f.coordinates == [(30.0, -97.0), (30.1, -97.1), (30.2, -97.2)]

    def test_lake_way_is_closed(self):
        r = result(
            node(1, 30.0, -97.0), node(2, 30.0, -97.1), node(3, 30.1, -97.1),
            way(11, [1, 2, 3], natural="water", name="Lake Travis"),
        )
        [f] = parse_waterways(r)
        assert f.kind == "lake"
        assert f.coordinates[0] == f.coordinates[-1]
        assert len(f.coordinates) == 4

    def test_relation_outer_ways_stitched(self):
        r = result(
            node(1, 30.0, -97.0), node(2, 30.0, -97.1), node(3, 30.1, -97.1), node(4, 30.1, -97.0),
            way(20, [1, 2, 3]),
            way(21, [3, 4, 1]),
            way(22, [2, 4]),
            {
                "type": "relation",
                "id": 99,
                "members": [
                    {"type": "way", "ref": 20, "role": "outer"},
                    {"type": "way", "ref": 21, "role": "outer"},
                    {"type": "way", "ref": 22, "role": "inner"},
                ],
                "tags": {"natural": "water", "name": "Lake Buchanan", "type": "multipolygon"},
            },
        )
        [f] = parse_waterways(r)
        assert f.id == "relation/99"
        assert f.kind == "lake"
        assert f.coordinates[0] == f.coordinates[-1]
        assert len(f.coordinates) == 5

    def test_way_and_relation_ids_do_not_collide(self):
        r = result(
            node(1, 30.0, -97.0), node(2, 30.1, -97.1),
            way(5, [1, 2], waterway="river", name="Pedernales River"),
            {
                "type": "relation", "id": 5,
                "members": [{"type": "way", "ref": 5, "role": "outer"}],
                "tags": {"natural": "water", "name": "Lake Travis"},
            },
        )
        ids = {f.id for f in parse_waterways(r, major_only=False)}
        assert ids == {"way/5", "relation/5"}

    def test_unrenderable_dropped(self):
        r = result(node(1, 30.0, -97.0), way(12, [1], waterway="river", name="Colorado River"))
        assert parse_waterways(r) == []

    def test_missing_nodes_skipped(self):
        r = result(node(1, 30.0, -97.0), way(13, [1, 404], waterway="river", name="Colorado River"))
        assert parse_waterways(r) == []

    def test_major_filter(self):
        r = result(
            node(1, 30.0, -97.0), node(2, 30.1, -97.1),
            way(14, [1, 2], waterway="stream", name="Little Bear Creek"),
            way(15, [1, 2], waterway="river", name="Blanco River"),
        )
        assert [f.id for f in parse_waterways(r)] == ["way/15"]
        assert len(parse_waterways(r, major_only=False)) == 2


class TestIsMajor:
    def test_known_water_body(self):
        f = GeometryFeature(id="w", name="Canyon Lake", kind="lake", coordinates=[(0, 0)] * 4)
        assert is_major(f)

    def test_small_unlisted_pond(self):
        f = GeometryFeature(id="w", name="Duck Pond", kind="lake", coordinates=[(0, 0)] * 4)
        assert not is_major(f)

    def test_long_polyline(self):
        f = GeometryFeature(id="w", name="Onion Creek", kind="stream", coordinates=[(0, 0)] * 11)
        assert is_major(f)


class TestOverpassThrottle:
    def make(self, *apis, **kwargs):
        it = iter(apis)
        kwargs.setdefault("sleep", Mock())
        return OverpassThrottle(
            mirrors=[f"https://mirror{i}.test/api" for i in range(len(apis))],
            hedge=len(apis),
            min_interval_s=0,
            api_factory=lambda url: next(it),
            **kwargs,
        )

    def test_first_success_wins(self):
        api = Mock()
        api.query.return_value = "result"
        assert self.make(api).query("q") == "result"

    def test_retries_then_succeeds(self):
        api = Mock()
        api.query.side_effect = [overpy.exception.OverpassTooManyRequests(), "result"]
        sleep = Mock()
        assert self.make(api, sleep=sleep, max_retries=3).query("q") == "result"
        assert api.query.call_count == 2
        sleep.assert_called_once()

    def test_bad_request_fails_fast(self):
        api = Mock()
        api.query.side_effect = overpy.exception.OverpassBadRequest("bad query")
        with pytest.raises(UpstreamError) as exc:
            self.make(api, max_retries=3).query("q")
        assert exc.value.status_code == 400
        assert api.query.call_count == 1

    def test_gateway_timeout_exhausts_to_upstream_timeout(self):
        api = Mock()
        api.query.side_effect = overpy.exception.OverpassGatewayTimeout()
        with pytest.raises(UpstreamTimeout):
            self.make(api, max_retries=2).query("q")
        assert api.query.call_count == 2

    def test_rate_limited_exhausts_to_429(self):
        api = Mock()
        api.query.side_effect = overpy.exception.OverpassTooManyRequests()
        with pytest.raises(UpstreamError) as exc:
            self.make(api, max_retries=2).query("q")
        assert exc.value.status_code == 429

    def test_fetch_waterways_parses(self):
        api = Mock()
        api.query.return_value = result(
            node(1, 30.0, -97.0), node(2, 30.1, -97.1),
            way(15, [1, 2], waterway="river", name="Blanco River"),
        )
        features = fetch_waterways(BoundingBox(north=30.5, south=30.0, east=-97.0, west=-97.5), self.make(api))
        assert [f.name for f in features] == ["Blanco River"]

    def test_mirrors_queried_concurrently(self):
        b_started = threading.Event()
        release = threading.Event()

        def slow_b(q):
            b_started.set()
            release.wait(5)
            return "b"

        a, b = Mock(), Mock()
        a.query.side_effect = lambda q: "a" if b_started.wait(2) else "serialised"
        b.query.side_effect = slow_b
        try:
            start = time.monotonic()
            assert self.make(a, b).query("q") == "a"
            # returned without joining the slower mirror
            assert time.monotonic() - start < 2
        finally:
            release.set()

    def test_hung_mirror_fails_attempt_within_timeout(self):
        release = threading.Event()
        api = Mock()
        api.query.side_effect = lambda q: release.wait(5)
        try:
            start = time.monotonic()
            with pytest.raises(UpstreamTimeout):
                self.make(api, max_retries=1, timeout_s=0.1).query("q")
            assert time.monotonic() - start < 2
        finally:
            release.set()

    def test_timeout_triggers_retry(self):
        release = threading.Event()
        calls = []

        def query(q):
            calls.append(q)
            if len(calls) == 1:
                release.wait(5)
                return "late"
            return "result"

        api = Mock()
        api.query.side_effect = query
        sleep = Mock()
        try:
            assert self.make(api, max_retries=2, timeout_s=0.1, sleep=sleep).query("q") == "result"
            assert len(calls) == 2
            sleep.assert_called_once()
        finally:
            release.set()

    def test_attempts_are_paced(self):
        api = Mock()
        api.query.return_value = "result"
        sleep = Mock()
        throttle = OverpassThrottle(
            mirrors=["https://mirror.test/api"], hedge=1, min_interval_s=30,
            api_factory=lambda url: api, sleep=sleep,
        )
        throttle.query("q")
        sleep.assert_not_called()
        throttle.query("q")
        [call] = sleep.call_args_list
        assert 25 < call.args[0] <= 30
