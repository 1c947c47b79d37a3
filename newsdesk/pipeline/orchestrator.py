"""Tiered fetch orchestrator.

Decides per request whether to answer from the page cache, the network, the
saved-for-offline articles or the merged page cache, and writes network
results back into the store. Search requests run their own chain because
search results are keyed by query, not by page.

Listing/category:  cache (offline only) -> network -> offline -> merged-cache
Search:            search-cache -> search-network -> search-offline -> search-empty
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from newsdesk.connectors.base import GatewayResponse, NetworkGateway, RequestKind
from newsdesk.errors import NoDataAvailable, TransientNetworkError
from newsdesk.pipeline.request import RequestSpec
from newsdesk.storage.db import ArticleStore
from newsdesk.storage.models import Article, PageOrigin

logger = logging.getLogger(__name__)


class Provenance(str, Enum):
    NETWORK = "network"
    CACHE = "cache"
    OFFLINE = "offline"
    MERGED_CACHE = "merged-cache"
    SEARCH_CACHE = "search-cache"
    SEARCH_NETWORK = "search-network"
    SEARCH_OFFLINE = "search-offline"
    SEARCH_EMPTY = "search-empty"

    @property
    def is_live(self) -> bool:
        return self in (Provenance.NETWORK, Provenance.SEARCH_NETWORK)


@dataclass
class FetchResult:
    """What the result consumer renders against."""

    records: List[Article] = field(default_factory=list)
    provenance: Provenance = Provenance.NETWORK
    page_num: int = 1
    is_cached: bool = False
    total_results: Optional[int] = None
    has_more: Optional[bool] = None

    @property
    def record_ids(self) -> List[str]:
        return [r.id for r in self.records]


class FetchOrchestrator:
    """Answer listing, category and search requests from the first tier that has data.

    Usage:
        orchestrator = FetchOrchestrator(store, gateway)
        result = await orchestrator.fetch_articles(RequestSpec.for_category("world"))
    """

    def __init__(self, store: ArticleStore, gateway: Optional[NetworkGateway] = None):
        self.store = store
        self.gateway = gateway

    async def fetch_articles(
        self,
        spec: RequestSpec,
        network_only: bool = False,
        origin: Union[PageOrigin, str] = PageOrigin.AUTO,
    ) -> FetchResult:
        """Fetch one page.

        With ``network_only`` the cache tiers are skipped and failures are
        raised instead of falling back; bulk downloads use this so that only
        fresh pages are persisted under ``origin``.

        Raises:
            AuthInvalid: the gateway rejected the credentials.
            NoDataAvailable: every tier was empty (listing/category only).
        """
        logger.info(
            "Fetching %s page %d (online=%s%s)",
            spec.source, spec.page_num, spec.online,
            ", network only" if network_only else "",
        )
        if network_only:
            return await self._fetch_network_only(spec, origin)
        if spec.kind is RequestKind.SEARCH:
            return await self._handle_search(spec)
        return await self._handle_listing(spec, origin)

    # --- Listing / category ---

    async def _handle_listing(self, spec: RequestSpec, origin: Union[PageOrigin, str]) -> FetchResult:
        source = spec.source

        # Step 1: page cache, only when offline
        if not spec.online:
            cached = await self.store.get_page(source, spec.page_num)
            if cached:
                logger.info("Using cached page %d for %s (%d articles)", spec.page_num, source, len(cached))
                return FetchResult(cached, Provenance.CACHE, spec.page_num, is_cached=True)

        # Step 2: network
        if spec.online and self.gateway is not None:
            response = await self._call_gateway(spec)
            if response is not None and response.records:
                if not await self.store.put_page(source, spec.page_num, response.records, origin):
                    logger.warning("Failed to cache page %d for %s", spec.page_num, source)
                logger.info("Fetched %d articles from network", len(response.records))
                return FetchResult(
                    response.records,
                    Provenance.NETWORK,
                    spec.page_num,
                    is_cached=False,
                    total_results=response.total_results,
                    has_more=response.has_more,
                )

        # Step 3: articles saved for offline reading
        offline = await self.store.get_offline_articles(limit=spec.page_size, offset=spec.offset)
        if offline:
            logger.info("Using offline fallback (%d articles)", len(offline))
            return FetchResult(offline, Provenance.OFFLINE, spec.page_num, is_cached=True)

        # Step 4: every cached page for this source, in page order
        pages = await self.store.get_cached_pages(source)
        merged = [a for page in pages for a in page.articles]
        if merged:
            logger.info("Using %d merged cached pages (%d articles)", len(pages), len(merged))
            return FetchResult(merged, Provenance.MERGED_CACHE, spec.page_num, is_cached=True)

        logger.warning("No data for %s page %d", source, spec.page_num)
        raise NoDataAvailable(source, spec.page_num)

    # --- Search ---

    async def _handle_search(self, spec: RequestSpec) -> FetchResult:
        query = (spec.query or "").strip()
        filters = spec.filters.as_dict()

        # Step 1: search cache
        cached = await self.store.get_search_cache(query, filters, spec.page_num)
        if cached:
            return FetchResult(
                cached, Provenance.SEARCH_CACHE, spec.page_num,
                is_cached=True, total_results=len(cached),
            )

        # Step 2: network search
        if spec.online and self.gateway is not None:
            response = await self._call_gateway(spec)
            if response is not None and response.records:
                if not await self.store.put_search_cache(query, filters, response.records, spec.page_num):
                    logger.warning("Failed to cache search results for %r", query)
                logger.info("Search found %d articles from network", len(response.records))
                return FetchResult(
                    response.records,
                    Provenance.SEARCH_NETWORK,
                    spec.page_num,
                    is_cached=False,
                    total_results=response.total_results,
                    has_more=response.has_more,
                )

        # Step 3: saved-for-offline articles
        offline = await self.store.search_offline(
            query,
            category=spec.filters.category,
            offset=spec.offset,
            limit=spec.page_size,
        )
        if offline:
            logger.info("Offline search found %d articles for %r", len(offline), query)
            return FetchResult(
                offline, Provenance.SEARCH_OFFLINE, spec.page_num,
                is_cached=True, total_results=len(offline),
            )

        logger.info("No search results for %r", query)
        return FetchResult([], Provenance.SEARCH_EMPTY, spec.page_num, is_cached=False, total_results=0)

    # --- Network ---

    async def _call_gateway(self, spec: RequestSpec) -> Optional[GatewayResponse]:
        """Gateway call with transient failures absorbed. AuthInvalid propagates."""
        assert self.gateway is not None
        try:
            return await self.gateway.fetch(spec.to_gateway_request())
        except TransientNetworkError as e:
            logger.warning("Network fetch failed for %s page %d: %s", spec.source, spec.page_num, e)
            return None

    async def _fetch_network_only(self, spec: RequestSpec, origin: Union[PageOrigin, str]) -> FetchResult:
        if self.gateway is None:
            raise TransientNetworkError("No gateway configured")
        response = await self.gateway.fetch(spec.to_gateway_request())
        if not response.records:
            raise NoDataAvailable(spec.source, spec.page_num)

        if spec.kind is RequestKind.SEARCH:
            await self.store.put_search_cache(
                (spec.query or "").strip(), spec.filters.as_dict(), response.records, spec.page_num
            )
            provenance = Provenance.SEARCH_NETWORK
        else:
            if not await self.store.put_page(spec.source, spec.page_num, response.records, origin):
                logger.warning("Failed to cache page %d for %s", spec.page_num, spec.source)
            provenance = Provenance.NETWORK

        return FetchResult(
            response.records,
            provenance,
            spec.page_num,
            is_cached=False,
            total_results=response.total_results,
            has_more=response.has_more,
        )
