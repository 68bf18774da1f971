"""
Grid decomposition for queries larger than an upstream's area limit.

A box the provider would refuse is split into a fixed ``rows x cols`` grid.
Cell edges are linearly interpolated across the full box (the last row and
column land exactly on the original north/east edges), clamped to the
coordinate domain and rounded to the provider's 7-decimal precision.
Cells that still fail the provider's validity predicate are skipped.

Cells are fetched one after another with a short pacing delay between
them, each with a bounded retry budget.  A cell that exhausts its budget
is counted as failed and the rest carry on: a partial map is more useful
than none.  Entities are merged into a dict keyed by provider identity
under a first-wins policy, so an entity seen in two overlapping cells is
attributed to the first cell that produced it.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Hashable, List, TypeVar

from .bbox import PROVIDER_PRECISION, BoundingBox
from .errors import UpstreamError
from .retry import retry_call

logger = logging.getLogger(__name__)

GRID_ROWS = int(os.getenv("GRID_ROWS", "6"))
GRID_COLS = int(os.getenv("GRID_COLS", "6"))
GRID_MAX_ATTEMPTS = int(os.getenv("GRID_MAX_ATTEMPTS", "3"))
GRID_RETRY_DELAY_S = float(os.getenv("GRID_RETRY_DELAY_S", "1.0"))
GRID_PACING_S = float(os.getenv("GRID_PACING_S", "0.5"))

# Overlapping cells must not reorder results, so the first cell to report
# an identity owns it.  Later duplicates are dropped.
FIRST_WINS = True

T = TypeVar("T")


class FetchStatus:
    OK = "ok"
    PARTIAL = "partial"
    NO_DATA = "no_data"
    ERROR = "error"


@dataclass
class GridCell:
    row: int
    col: int
    bbox: BoundingBox


@dataclass
class GridFetchResult(Generic[T]):
    entities: List[T] = field(default_factory=list)
    status: str = FetchStatus.NO_DATA
    cells_total: int = 0
    cells_attempted: int = 0
    cells_skipped: int = 0
    cells_failed: int = 0

    @property
    def cells_succeeded(self) -> int:
        return self.cells_attempted - self.cells_failed

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "cells_total": self.cells_total,
            "cells_attempted": self.cells_attempted,
            "cells_skipped": self.cells_skipped,
            "cells_failed": self.cells_failed,
        }


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def decompose(bbox: BoundingBox, rows: int = GRID_ROWS, cols: int = GRID_COLS) -> List[GridCell]:
    """Split ``bbox`` into ``rows * cols`` cells, row-major from the south-west."""
    if rows < 1 or cols < 1:
        raise ValueError("grid needs at least one row and one column")

    def lat_at(i: int) -> float:
        if i == rows:
            return bbox.north
        return bbox.south + (bbox.north - bbox.south) * i / rows

    def lon_at(j: int) -> float:
        if j == cols:
            return bbox.east
        return bbox.west + (bbox.east - bbox.west) * j / cols

    p = PROVIDER_PRECISION
    cells = []
    for row in range(rows):
        for col in range(cols):
            cells.append(
                GridCell(
                    row=row,
                    col=col,
                    bbox=BoundingBox(
                        south=round(_clamp(lat_at(row), -90.0, 90.0), p),
                        north=round(_clamp(lat_at(row + 1), -90.0, 90.0), p),
                        west=round(_clamp(lon_at(col), -180.0, 180.0), p),
                        east=round(_clamp(lon_at(col + 1), -180.0, 180.0), p),
                    ),
                )
            )
    return cells


class GridFetchCoordinator(Generic[T]):
    """
    Fetch entities for an arbitrarily large box from a size-limited provider.

    Parameters
    ----------
    fetch_cell : callable
        ``fetch_cell(bbox, **params) -> list`` of entities for one
        provider-legal box; ``params`` are whatever was passed to
        :meth:`fetch`.
        Raises ``UpstreamError``/``UpstreamTimeout`` on failure.
    identity : callable
        ``identity(entity) -> hashable`` provider-assigned id used for dedup.
    is_cell_valid : callable
        The provider's own area-validity predicate.
    rows, cols : int
        Grid size used when the box is too large for one query.
    max_attempts, retry_delay_s : int, float
        Per-cell retry budget and fixed delay between attempts.
    pacing_s : float
        Delay between consecutive cells regardless of outcome.
    sleep : callable
        Injected for tests.
    """

    def __init__(
        self,
        fetch_cell: Callable[..., List[T]],
        identity: Callable[[T], Hashable],
        is_cell_valid: Callable[[BoundingBox], bool],
        *,
        rows: int = GRID_ROWS,
        cols: int = GRID_COLS,
        max_attempts: int = GRID_MAX_ATTEMPTS,
        retry_delay_s: float = GRID_RETRY_DELAY_S,
        pacing_s: float = GRID_PACING_S,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "grid",
    ):
        self.fetch_cell = fetch_cell
        self.identity = identity
        self.is_cell_valid = is_cell_valid
        self.rows = rows
        self.cols = cols
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s
        self.pacing_s = pacing_s
        self.sleep = sleep
        self.name = name

    def plan(self, bbox: BoundingBox) -> List[GridCell]:
        """One cell for a legal box, otherwise the full grid."""
        if self.is_cell_valid(bbox):
            return [GridCell(row=0, col=0, bbox=bbox.rounded())]
        return decompose(bbox, self.rows, self.cols)

    def _fetch_with_retry(self, cell: GridCell, params: Dict[str, Any]) -> List[T]:
        b = cell.bbox
        label = f"[{self.name}] cell row {cell.row} col {cell.col} (W{b.west} S{b.south} E{b.east} N{b.north})"
        return retry_call(
            lambda: self.fetch_cell(b, **params),
            max_attempts=self.max_attempts,
            delay_s=self.retry_delay_s,
            sleep=self.sleep,
            label=label,
        )

    def fetch(self, bbox: BoundingBox, **params: Any) -> GridFetchResult[T]:
        cells = self.plan(bbox)
        result: GridFetchResult[T] = GridFetchResult(cells_total=len(cells))
        seen: Dict[Hashable, T] = {}
        fetched_total = 0

        if len(cells) > 1:
            logger.info("[%s] splitting bbox into %d cells (%dx%d)", self.name, len(cells), self.rows, self.cols)

        for i, cell in enumerate(cells):
            if not self.is_cell_valid(cell.bbox):
                b = cell.bbox
                logger.warning(
                    "[%s] skipping invalid cell row %d col %d: W%s S%s E%s N%s",
                    self.name, cell.row, cell.col, b.west, b.south, b.east, b.north,
                )
                result.cells_skipped += 1
                continue

            result.cells_attempted += 1
            try:
                items = self._fetch_with_retry(cell, params)
            except UpstreamError:
                result.cells_failed += 1
                items = []

            new_count = 0
            for item in items:
                key = self.identity(item)
                if key in seen:
                    if FIRST_WINS:
                        continue
                else:
                    new_count += 1
                seen[key] = item
            fetched_total += len(items)
            if items:
                logger.debug(
                    "[%s] cell row %d col %d: %d entities, %d new",
                    self.name, cell.row, cell.col, len(items), new_count,
                )

            if i < len(cells) - 1 and self.pacing_s > 0:
                self.sleep(self.pacing_s)

        result.entities = list(seen.values())
        result.status = self._status(result)
        logger.info(
            "[%s] %d unique of %d fetched; cells attempted=%d skipped=%d failed=%d status=%s",
            self.name, len(result.entities), fetched_total, result.cells_attempted,
            result.cells_skipped, result.cells_failed, result.status,
        )
        return result

    @staticmethod
    def _status(result: GridFetchResult) -> str:
        if result.cells_attempted == 0:
            return FetchStatus.NO_DATA
        if result.cells_failed == result.cells_attempted:
            return FetchStatus.ERROR
        if result.cells_failed > 0:
            return FetchStatus.PARTIAL
        return FetchStatus.OK if result.entities else FetchStatus.NO_DATA
