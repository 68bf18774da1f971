"""
Exceptions raised by the water data layer.
"""

from __future__ import annotations

from typing import Optional


class WaterDataError(Exception):
    """Base exception for water data errors."""

    pass


class ValidationError(WaterDataError):
    """Malformed bounding box or request parameter."""

    pass


class UpstreamError(WaterDataError):
    """Upstream provider returned a non-2xx status or a malformed body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def permanent(self) -> bool:
        # 4xx other than 429 will not succeed on retry
        return self.status_code is not None and 400 <= self.status_code < 500 and self.status_code != 429


class UpstreamTimeout(UpstreamError):
    """Upstream provider did not answer within the request timeout."""

    pass


class CacheUnavailable(WaterDataError):
    """The cache store cannot be reached. Never surfaced to callers."""

    pass
