"""Immutable request context and the caller-side single-flight table."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from newsdesk.connectors.base import GatewayRequest, RequestKind, SearchFilters

logger = logging.getLogger(__name__)

LATEST_SOURCE = "latest"
CATEGORY_PREFIX = "category:"

T = TypeVar("T")


@dataclass(frozen=True)
class RequestSpec:
    """Everything one fetch needs. Threaded through calls instead of session globals."""

    kind: RequestKind = RequestKind.LISTING
    page_num: int = 1
    page_size: int = 12
    online: bool = True
    category: Optional[str] = None
    query: Optional[str] = None
    language: str = "en"
    filters: SearchFilters = field(default_factory=SearchFilters)

    def __post_init__(self) -> None:
        if self.page_num < 1:
            raise ValueError(f"page_num must be >= 1, got {self.page_num}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        if self.kind is RequestKind.CATEGORY and not self.category:
            raise ValueError("category requests need a category")
        if self.kind is RequestKind.SEARCH and not (self.query or "").strip():
            raise ValueError("search requests need a query")

    @classmethod
    def listing(cls, page_num: int = 1, **kwargs: Any) -> RequestSpec:
        return cls(kind=RequestKind.LISTING, page_num=page_num, **kwargs)

    @classmethod
    def for_category(cls, category: str, page_num: int = 1, **kwargs: Any) -> RequestSpec:
        return cls(kind=RequestKind.CATEGORY, category=category, page_num=page_num, **kwargs)

    @classmethod
    def search(cls, query: str, page_num: int = 1, **kwargs: Any) -> RequestSpec:
        return cls(kind=RequestKind.SEARCH, query=query, page_num=page_num, **kwargs)

    @classmethod
    def for_source(cls, source: str, page_num: int = 1, **kwargs: Any) -> RequestSpec:
        """Inverse of ``source``: "latest" or "category:<name>"."""
        if source.startswith(CATEGORY_PREFIX):
            return cls.for_category(source[len(CATEGORY_PREFIX):], page_num, **kwargs)
        return cls.listing(page_num, **kwargs)

    @property
    def source(self) -> str:
        """Page-cache source key."""
        if self.kind is RequestKind.CATEGORY:
            return f"{CATEGORY_PREFIX}{self.category}"
        if self.kind is RequestKind.SEARCH:
            return f"search:{(self.query or '').strip().lower()}"
        return LATEST_SOURCE

    @property
    def offset(self) -> int:
        return (self.page_num - 1) * self.page_size

    def with_page(self, page_num: int) -> RequestSpec:
        return replace(self, page_num=page_num)

    def signature(self) -> str:
        """Dedup key: page, category, language, query and sorted non-empty filters."""
        parts = [
            f"page:{self.page_num}",
            f"category:{self.category or LATEST_SOURCE}",
            f"language:{self.language}",
            f"query:{self.query or ''}",
        ]
        filters: Dict[str, str] = self.filters.as_dict()
        parts.extend(f"{k}:{filters[k]}" for k in sorted(filters))
        return "|".join(parts)

    def to_gateway_request(self) -> GatewayRequest:
        return GatewayRequest(
            kind=self.kind,
            page_num=self.page_num,
            page_size=self.page_size,
            language=self.language,
            category=self.category,
            query=self.query,
            filters=self.filters,
        )


class SingleFlight:
    """Share one in-flight task between callers issuing the same request signature.

    The orchestrator does not enforce this; callers that may fire duplicate
    requests (scroll handlers, refresh buttons) wrap their calls with it.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight request %s", key)
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
