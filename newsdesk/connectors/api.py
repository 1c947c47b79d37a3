"""Currents-style news API gateway: GET listing/search with retry, normalized to Articles."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from newsdesk.connectors.base import (
    GatewayRequest,
    GatewayResponse,
    NetworkGateway,
    RequestKind,
)
from newsdesk.errors import AuthInvalid, TransientNetworkError
from newsdesk.storage.models import Article

if TYPE_CHECKING:
    from newsdesk.config import ApiSettings
    from newsdesk.storage.models import OutboxAction

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "newsdesk/0.1 (+offline reader)"
LATEST_SOURCE = "latest"


class RetryableStatus(Exception):
    """429 or 5xx; retried before being reported as a transient error."""

    def __init__(self, status: int, reason: str = "") -> None:
        super().__init__(f"HTTP {status} {reason}".strip())
        self.status = status


_RETRYABLE = (aiohttp.ClientError, asyncio.TimeoutError, OSError, RetryableStatus)


def check_status(status: int, reason: str = "") -> None:
    """Map an HTTP status to the gateway error taxonomy. 2xx/3xx pass."""
    if status in (401, 403):
        raise AuthInvalid(f"Invalid API key ({status})", status=status)
    if status == 429 or status >= 500:
        raise RetryableStatus(status, reason)
    if status >= 400:
        raise TransientNetworkError(f"API error: {status} {reason}".strip(), status=status)


class CurrentsGateway(NetworkGateway):
    """Fetch latest/category/search pages from a Currents-compatible REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        language: str = "en",
        timeout_seconds: float = 30.0,
        min_request_interval: float = 0.1,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.language = language
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.min_request_interval = min_request_interval
        self.headers = {"Accept": "application/json", "User-Agent": user_agent}
        self._last_request = 0.0
        self._throttle_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, api: "ApiSettings") -> CurrentsGateway:
        return cls(
            api.base_url,
            api.api_key,
            language=api.language,
            timeout_seconds=api.timeout_seconds,
            min_request_interval=api.min_request_interval,
        )

    def build_request(self, request: GatewayRequest) -> Tuple[str, Dict[str, Any]]:
        """Return (url, query params) for a listing, category or search request."""
        params: Dict[str, Any] = {
            "language": request.language or self.language,
            "page": request.page_num,
            "page_size": request.page_size,
            "apiKey": self.api_key,
        }
        filters = request.filters

        if request.kind is RequestKind.SEARCH:
            url = f"{self.base_url}/search"
            params["keywords"] = (request.query or "").strip()
            if filters.category:
                params["category"] = filters.category
        else:
            url = f"{self.base_url}/latest-news"
            if request.category and request.category != LATEST_SOURCE:
                params["category"] = request.category

        # The API only honours a complete date range
        if filters.start_date and filters.end_date:
            params["start_date"] = filters.start_date
            params["end_date"] = filters.end_date
        if filters.domain:
            params["domain"] = filters.domain
        return url, params

    async def fetch(self, request: GatewayRequest) -> GatewayResponse:
        if not self.api_key:
            raise AuthInvalid("API key not configured")
        if request.kind is RequestKind.SEARCH and not (request.query or "").strip():
            raise ValueError("Search query is required")

        url, params = self.build_request(request)
        logger.debug("Gateway %s request page %d", request.kind.value, request.page_num)
        try:
            data = await self._request_json("GET", url, params=params)
        except _RETRYABLE as e:
            raise TransientNetworkError(f"{request.kind.value} request failed: {e}") from e
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError on a garbled body
            raise TransientNetworkError("Invalid API response format") from e
        return self._normalize_response(data)

    async def submit_action(self, action: "OutboxAction") -> None:
        if not self.api_key:
            raise AuthInvalid("API key not configured")
        body = {"id": action.id, "type": action.type, "payload": action.payload}
        try:
            await self._request_json(
                "POST", f"{self.base_url}/actions", params={"apiKey": self.api_key}, json_body=body
            )
        except _RETRYABLE as e:
            raise TransientNetworkError(f"action #{action.id} failed: {e}") from e

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _request_json(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        await self._throttle()
        async with aiohttp.ClientSession(timeout=self.timeout, headers=self.headers) as session:
            async with session.request(method, url, params=params, json=json_body) as resp:
                check_status(resp.status, resp.reason or "")
                if resp.content_type != "application/json":
                    return {}
                return await resp.json()

    async def _throttle(self) -> None:
        """Keep at least ``min_request_interval`` seconds between requests."""
        async with self._throttle_lock:
            wait = self.min_request_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    def _normalize_response(self, data: Any) -> GatewayResponse:
        if not isinstance(data, dict):
            raise TransientNetworkError("Invalid API response format")
        records: List[Article] = []
        for entry in data.get("news") or []:
            if not isinstance(entry, dict):
                continue
            article = Article.from_api(entry)
            if article:
                records.append(article)
        total = data.get("totalResults") or data.get("total")
        try:
            total_results = int(total) if total is not None else None
        except (TypeError, ValueError) as e:
            raise TransientNetworkError(f"Invalid totalResults {total!r}") from e
        has_more = data.get("hasMore")
        return GatewayResponse(
            records=records,
            total_results=total_results,
            has_more=bool(has_more) if has_more is not None else None,
        )
