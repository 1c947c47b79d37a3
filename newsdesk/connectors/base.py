"""Network gateway interface: request/response shapes shared by all gateways."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from newsdesk.storage.models import Article, OutboxAction


class RequestKind(str, Enum):
    LISTING = "listing"
    CATEGORY = "category"
    SEARCH = "search"


@dataclass(frozen=True)
class SearchFilters:
    """Optional narrowing filters. Dates are passed through as YYYY-MM-DD strings."""

    start_date: Optional[str] = None
    end_date: Optional[str] = None
    domain: Optional[str] = None
    category: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        """Non-empty filters only."""
        return {
            k: v
            for k, v in (
                ("start_date", self.start_date),
                ("end_date", self.end_date),
                ("domain", self.domain),
                ("category", self.category),
            )
            if v
        }


@dataclass(frozen=True)
class GatewayRequest:
    kind: RequestKind
    page_num: int = 1
    page_size: int = 12
    language: str = "en"
    category: Optional[str] = None
    query: Optional[str] = None
    filters: SearchFilters = field(default_factory=SearchFilters)


@dataclass
class GatewayResponse:
    records: List["Article"] = field(default_factory=list)
    total_results: Optional[int] = None
    has_more: Optional[bool] = None


class NetworkGateway(ABC):
    """Abstract base for remote listing/search sources.

    Implementations must normalize every failure into either
    ``AuthInvalid`` (rejected credentials) or ``TransientNetworkError``
    (anything worth falling back from).
    """

    @abstractmethod
    async def fetch(self, request: GatewayRequest) -> GatewayResponse:
        """Run a listing, category or search request."""
        ...

    @abstractmethod
    async def submit_action(self, action: "OutboxAction") -> None:
        """Deliver one outbox action's remote side effect. Raises on failure."""
        ...
