"""Tests for the Currents API gateway: request building, status mapping, normalization."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from newsdesk.config import ApiSettings
from newsdesk.connectors.api import CurrentsGateway, RetryableStatus, check_status
from newsdesk.connectors.base import GatewayRequest, RequestKind, SearchFilters
from newsdesk.errors import AuthInvalid, TransientNetworkError
from newsdesk.storage.models import OutboxAction


@pytest.fixture
def gateway():
    return CurrentsGateway("https://api.example.com/v1/", "secret", min_request_interval=0)


SAMPLE_RESPONSE = {
    "status": "ok",
    "news": [
        {
            "id": "a1",
            "title": "First",
            "description": "One",
            "url": "https://example.com/1",
            "author": "Ann",
            "image": "None",
            "language": "en",
            "category": ["world"],
            "published": "2024-02-01 08:00:00 +0000",
        },
        {"title": "no url or id"},
        "garbage",
        {"id": "a2", "title": "Second", "url": "https://example.com/2", "category": "tech"},
    ],
    "totalResults": 40,
    "hasMore": True,
}


class TestBuildRequest:
    def test_latest(self, gateway):
        url, params = gateway.build_request(GatewayRequest(RequestKind.LISTING, page_num=2))
        assert url == "https://api.example.com/v1/latest-news"
        assert params == {"language": "en", "page": 2, "page_size": 12, "apiKey": "secret"}

    def test_category(self, gateway):
        _, params = gateway.build_request(GatewayRequest(RequestKind.CATEGORY, category="world"))
        assert params["category"] == "world"

    def test_latest_category_is_dropped(self, gateway):
        _, params = gateway.build_request(GatewayRequest(RequestKind.CATEGORY, category="latest"))
        assert "category" not in params

    def test_search_with_filters(self, gateway):
        url, params = gateway.build_request(GatewayRequest(
            RequestKind.SEARCH,
            query="  climate ",
            filters=SearchFilters(
                start_date="2024-01-01", end_date="2024-01-31", domain="bbc.co.uk", category="science"
            ),
        ))
        assert url.endswith("/search")
        assert params["keywords"] == "climate"
        assert params["category"] == "science"
        assert params["start_date"] == "2024-01-01"
        assert params["end_date"] == "2024-01-31"
        assert params["domain"] == "bbc.co.uk"

    def test_half_date_range_is_dropped(self, gateway):
        _, params = gateway.build_request(GatewayRequest(
            RequestKind.SEARCH, query="x", filters=SearchFilters(start_date="2024-01-01")
        ))
        assert "start_date" not in params
        assert "end_date" not in params

    def test_from_settings(self):
        gw = CurrentsGateway.from_settings(ApiSettings(api_key="k", language="ja"))
        _, params = gw.build_request(GatewayRequest(RequestKind.LISTING, language=""))
        assert params["language"] == "ja"
        assert params["apiKey"] == "k"


class TestCheckStatus:
    @pytest.mark.parametrize("status", [200, 204, 304])
    def test_ok(self, status):
        check_status(status)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth(self, status):
        with pytest.raises(AuthInvalid) as exc:
            check_status(status)
        assert exc.value.status == status

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable(self, status):
        with pytest.raises(RetryableStatus):
            check_status(status)

    def test_other_client_errors_are_transient(self):
        with pytest.raises(TransientNetworkError) as exc:
            check_status(404, "Not Found")
        assert exc.value.status == 404


class TestFetch:
    @pytest.mark.asyncio
    async def test_normalizes_response(self, gateway):
        with patch.object(gateway, "_request_json", AsyncMock(return_value=SAMPLE_RESPONSE)) as mock:
            response = await gateway.fetch(GatewayRequest(RequestKind.LISTING))

        assert [a.id for a in response.records] == ["a1", "a2"]
        assert response.records[0].image is None
        assert response.records[1].category == ["tech"]
        assert response.total_results == 40
        assert response.has_more is True
        method, url = mock.call_args.args
        assert method == "GET"
        assert url.endswith("/latest-news")

    @pytest.mark.asyncio
    async def test_missing_key_is_auth_invalid(self):
        gw = CurrentsGateway("https://api.example.com", "")
        with pytest.raises(AuthInvalid):
            await gw.fetch(GatewayRequest(RequestKind.LISTING))

    @pytest.mark.asyncio
    async def test_blank_search_rejected(self, gateway):
        with pytest.raises(ValueError):
            await gateway.fetch(GatewayRequest(RequestKind.SEARCH, query=" "))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        aiohttp.ClientConnectionError("refused"),
        asyncio.TimeoutError(),
        RetryableStatus(503, "Service Unavailable"),
    ])
    async def test_network_errors_become_transient(self, gateway, error):
        with patch.object(gateway, "_request_json", AsyncMock(side_effect=error)):
            with pytest.raises(TransientNetworkError):
                await gateway.fetch(GatewayRequest(RequestKind.LISTING))

    @pytest.mark.asyncio
    async def test_auth_error_passes_through(self, gateway):
        with patch.object(gateway, "_request_json", AsyncMock(side_effect=AuthInvalid("nope", status=401))):
            with pytest.raises(AuthInvalid):
                await gateway.fetch(GatewayRequest(RequestKind.LISTING))

    @pytest.mark.asyncio
    async def test_invalid_payload(self, gateway):
        with patch.object(gateway, "_request_json", AsyncMock(return_value=["not", "a", "dict"])):
            with pytest.raises(TransientNetworkError):
                await gateway.fetch(GatewayRequest(RequestKind.LISTING))

    @pytest.mark.asyncio
    async def test_empty_news(self, gateway):
        with patch.object(gateway, "_request_json", AsyncMock(return_value={"news": []})):
            response = await gateway.fetch(GatewayRequest(RequestKind.LISTING))
        assert response.records == []
        assert response.total_results is None
        assert response.has_more is None


class TestSubmitAction:
    @pytest.mark.asyncio
    async def test_posts_action(self, gateway):
        action = OutboxAction(id=5, type="bookmark", payload={"article_id": "a1"})
        with patch.object(gateway, "_request_json", AsyncMock(return_value={})) as mock:
            await gateway.submit_action(action)

        method, url = mock.call_args.args
        assert method == "POST"
        assert url == "https://api.example.com/v1/actions"
        assert mock.call_args.kwargs["json_body"] == {
            "id": 5, "type": "bookmark", "payload": {"article_id": "a1"},
        }

    @pytest.mark.asyncio
    async def test_failure_is_transient(self, gateway):
        action = OutboxAction(id=5, type="bookmark", payload={})
        with patch.object(gateway, "_request_json", AsyncMock(side_effect=OSError("reset"))):
            with pytest.raises(TransientNetworkError):
                await gateway.submit_action(action)


class TestMalformedResponses:
    @pytest.mark.asyncio
    async def test_undecodable_body_is_transient(self, gateway):
        error = json.JSONDecodeError("Expecting property name enclosed in double quotes", "{not json", 1)
        with patch.object(gateway, "_request_json", AsyncMock(side_effect=error)):
            with pytest.raises(TransientNetworkError, match="Invalid API response format"):
                await gateway.fetch(GatewayRequest(RequestKind.LISTING))

    @pytest.mark.asyncio
    async def test_non_numeric_total_is_transient(self, gateway):
        payload = {"news": [], "totalResults": "lots"}
        with patch.object(gateway, "_request_json", AsyncMock(return_value=payload)):
            with pytest.raises(TransientNetworkError):
                await gateway.fetch(GatewayRequest(RequestKind.LISTING))
