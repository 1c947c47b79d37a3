"""Exception hierarchy for the fetch pipeline.

Only two of these ever reach a caller of the orchestrator: ``AuthInvalid``
(bad credentials, never retried) and ``NoDataAvailable`` (every tier came
back empty). ``TransientNetworkError`` is absorbed by the fallback chain and
``StoreUnavailable`` is converted to an empty result at every read site.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "NewsdeskError",
    "ConfigError",
    "GatewayError",
    "AuthInvalid",
    "TransientNetworkError",
    "StoreUnavailable",
    "NoDataAvailable",
]


class NewsdeskError(RuntimeError):
    """Base exception for newsdesk failures."""


class ConfigError(NewsdeskError):
    """Raised when config.yaml cannot be parsed into settings."""


class GatewayError(NewsdeskError):
    """Base for failures reported by a network gateway."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AuthInvalid(GatewayError):
    """Credentials were rejected. Terminal: surfaced immediately, never retried."""


class TransientNetworkError(GatewayError):
    """Network, timeout, rate-limit or server error. Absorbed by the fallback chain."""


class StoreUnavailable(NewsdeskError):
    """The persistent store is not open or the engine refused the operation."""


class NoDataAvailable(NewsdeskError):
    """Every fallback tier was exhausted without producing a record."""

    def __init__(self, source: str, page_num: int) -> None:
        super().__init__(f"No articles available for {source!r} page {page_num} (offline and no cache)")
        self.source = source
        self.page_num = page_num
