"""
Tests for grid decomposition and the grid fetch coordinator.
"""

from unittest.mock import Mock

import pytest

from utils.bbox import BoundingBox, within_provider_limits
from utils.errors import UpstreamError, UpstreamTimeout
from utils.grid_fetch import FetchStatus, GridFetchCoordinator, decompose
from utils.models import Station


def station(site_id, lat=30.0, lon=-98.0, name=None):
    return Station(id=site_id, name=name or site_id, latitude=lat, longitude=lon)


def coordinator(fetch_cell, **kwargs):
    kwargs.setdefault("sleep", Mock())
    return GridFetchCoordinator(
        fetch_cell=fetch_cell,
        identity=lambda s: s.id,
        is_cell_valid=kwargs.pop("is_cell_valid", within_provider_limits),
        **kwargs,
    )


class TestDecompose:
    def test_cell_count_and_order(self, texas_bbox):
        cells = decompose(texas_bbox, 6, 6)
        assert len(cells) == 36
        assert (cells[0].row, cells[0].col) == (0, 0)
        assert (cells[1].row, cells[1].col) == (0, 1)
        assert cells[0].bbox.south == texas_bbox.south
        assert cells[0].bbox.west == texas_bbox.west

    def test_cells_cover_box(self, texas_bbox):
        cells = decompose(texas_bbox, 6, 6)
        assert min(c.bbox.south for c in cells) == texas_bbox.south
        assert max(c.bbox.north for c in cells) == texas_bbox.north
        assert min(c.bbox.west for c in cells) == texas_bbox.west
        assert max(c.bbox.east for c in cells) == texas_bbox.east

    def test_adjacent_cells_share_edges(self, texas_bbox):
        cells = {(c.row, c.col): c.bbox for c in decompose(texas_bbox, 6, 6)}
        for r in range(6):
            for c in range(5):
                assert cells[(r, c)].east == cells[(r, c + 1)].west
        for r in range(5):
            for c in range(6):
                assert cells[(r, c)].north == cells[(r + 1, c)].south

    def test_rounded_to_seven_places(self):
        b = BoundingBox(north=1.0, south=0.0, east=1.0, west=0.0)
        for cell in decompose(b, 3, 3):
            for v in (cell.bbox.north, cell.bbox.south, cell.bbox.east, cell.bbox.west):
                assert round(v, 7) == v

    def test_texas_cells_are_legal(self, texas_bbox):
        assert all(within_provider_limits(c.bbox) for c in decompose(texas_bbox, 6, 6))

    def test_rejects_empty_grid(self, texas_bbox):
        with pytest.raises(ValueError):
            decompose(texas_bbox, 0, 6)


class TestGridFetchCoordinator:
    def test_small_box_single_fetch(self, austin_bbox):
        fetch = Mock(return_value=[station("a")])
        result = coordinator(fetch).fetch(austin_bbox)
        assert fetch.call_count == 1
        assert result.status == FetchStatus.OK
        assert result.cells_total == 1
        assert [s.id for s in result.entities] == ["a"]

    def test_params_forwarded_to_every_cell(self, texas_bbox):
        fetch = Mock(return_value=[])
        coordinator(fetch, rows=2, cols=2, is_cell_valid=lambda b: b.width < 10).fetch(texas_bbox, hours=24)
        assert fetch.call_count == 4
        assert all(c.kwargs == {"hours": 24} for c in fetch.call_args_list)

    def test_dedup_first_wins(self, texas_bbox):
        calls = {"n": 0}

        def fetch(bbox):
            calls["n"] += 1
            if calls["n"] == 1:
                return [station("dup", name="first"), station("a")]
            if calls["n"] == 2:
                return [station("dup", name="second"), station("b")]
            return []

        result = coordinator(fetch).fetch(texas_bbox)
        ids = [s.id for s in result.entities]
        assert ids == ["dup", "a", "b"]
        assert result.entities[0].name == "first"

    def test_partial_failure_texas(self, texas_bbox):
        """34 of 36 cells succeed; 2 time out on every attempt."""
        failing = {5, 20}
        attempts = {}

        def fetch(bbox):
            idx = order.index(bbox)
            attempts[idx] = attempts.get(idx, 0) + 1
            if idx in failing:
                raise UpstreamTimeout("timed out")
            return [station(f"s{idx}"), station("shared")]

        order = [c.bbox for c in decompose(texas_bbox, 6, 6)]
        sleep = Mock()
        result = coordinator(fetch, sleep=sleep).fetch(texas_bbox)

        assert result.status == FetchStatus.PARTIAL
        assert result.cells_total == 36
        assert result.cells_attempted == 36
        assert result.cells_failed == 2
        assert result.cells_succeeded == 34
        assert attempts[5] == 3 and attempts[20] == 3
        assert all(attempts[i] == 1 for i in range(36) if i not in failing)
        ids = {s.id for s in result.entities}
        assert ids == {f"s{i}" for i in range(36) if i not in failing} | {"shared"}
        assert len(result.entities) == 35

    def test_pacing_between_cells(self, texas_bbox):
        sleep = Mock()
        coordinator(Mock(return_value=[]), sleep=sleep, pacing_s=0.5).fetch(texas_bbox)
        pacing = [c for c in sleep.call_args_list if c.args[0] == 0.5]
        assert len(pacing) == 35

    def test_all_failed_is_error(self, texas_bbox):
        fetch = Mock(side_effect=UpstreamError("down", status_code=503))
        result = coordinator(fetch, max_attempts=1).fetch(texas_bbox)
        assert result.status == FetchStatus.ERROR
        assert result.entities == []
        assert result.cells_failed == 36

    def test_empty_but_healthy_is_no_data(self, austin_bbox):
        result = coordinator(Mock(return_value=[])).fetch(austin_bbox)
        assert result.status == FetchStatus.NO_DATA

    def test_no_valid_cells_is_no_data(self, texas_bbox):
        fetch = Mock()
        result = coordinator(fetch, is_cell_valid=lambda b: False).fetch(texas_bbox)
        assert result.status == FetchStatus.NO_DATA
        assert result.cells_skipped == 36
        fetch.assert_not_called()

    def test_bad_request_is_not_retried(self, austin_bbox):
        fetch = Mock(side_effect=UpstreamError("bad", status_code=400))
        result = coordinator(fetch).fetch(austin_bbox)
        assert fetch.call_count == 1
        assert result.status == FetchStatus.ERROR

    def test_summary(self, austin_bbox):
        result = coordinator(Mock(return_value=[station("a")])).fetch(austin_bbox)
        assert result.summary() == {
            "status": "ok",
            "cells_total": 1,
            "cells_attempted": 1,
            "cells_skipped": 0,
            "cells_failed": 0,
        }
