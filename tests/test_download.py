"""Tests for automatic and manual bulk downloads."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Set

import pytest

from newsdesk.config import DownloadSettings
from newsdesk.connectors.base import GatewayRequest, GatewayResponse, NetworkGateway
from newsdesk.errors import AuthInvalid, TransientNetworkError
from newsdesk.pipeline.advisor import ConnectionQuality, PermissiveAdvisor, StaticAdvisor
from newsdesk.pipeline.download import (
    CancellationToken,
    DownloadController,
    DownloadProgress,
    DownloadStatus,
)
from newsdesk.pipeline.orchestrator import FetchOrchestrator
from newsdesk.storage.db import (
    AUTO_DOWNLOAD_SESSION_KEY,
    LAST_AUTO_DOWNLOAD_KEY,
    ArticleStore,
)
from newsdesk.storage.models import Article, PageOrigin


def make_page(page_num: int, size: int = 12) -> List[Article]:
    articles = []
    for i in range(size):
        url = f"https://example.com/p{page_num}/{i}"
        articles.append(Article(
            id=Article.make_id(url),
            title=f"Page {page_num} article {i}",
            url=url,
            published_at=datetime(2024, 1, 1) + timedelta(minutes=page_num * 100 + i),
        ))
    return articles


class PagedGateway(NetworkGateway):
    """Serves a fresh 12-article page per page number, failing on ``fail_pages``."""

    def __init__(self, fail_pages: Set[int] = frozenset(), auth_fail: bool = False):
        self.fail_pages = set(fail_pages)
        self.auth_fail = auth_fail
        self.calls: List[GatewayRequest] = []

    async def fetch(self, request: GatewayRequest) -> GatewayResponse:
        self.calls.append(request)
        if self.auth_fail:
            raise AuthInvalid("bad key", status=401)
        if request.page_num in self.fail_pages:
            raise TransientNetworkError("timeout")
        return GatewayResponse(records=make_page(request.page_num))

    async def submit_action(self, action) -> None:
        pass


@pytest.fixture
async def store(tmp_path):
    s = ArticleStore(str(tmp_path / "test.db"))
    await s.initialize()
    yield s
    await s.close()


def make_controller(store, gateway, advisor=None, session_id="session-1", **settings):
    return DownloadController(
        FetchOrchestrator(store, gateway),
        advisor=advisor or PermissiveAdvisor(),
        settings=DownloadSettings(**settings),
        session_id=session_id,
    )


class TestDownloadPage:
    @pytest.mark.asyncio
    async def test_persists_page_and_marks_offline(self, store):
        controller = make_controller(store, PagedGateway())
        result = await controller.download_page(1, "category:world", PageOrigin.MANUAL)

        assert len(result.records) == 12
        pages = await store.get_cached_pages("category:world")
        assert pages[0].origin is PageOrigin.MANUAL
        offline = await store.get_offline_articles()
        assert len(offline) == 12

    @pytest.mark.asyncio
    async def test_uses_category_in_request(self, store):
        gateway = PagedGateway()
        await make_controller(store, gateway).download_page(2, "category:tech")
        assert gateway.calls[0].category == "tech"
        assert gateway.calls[0].page_num == 2


class TestAutoDownload:
    @pytest.mark.asyncio
    async def test_storage_above_ceiling_blocks(self, store):
        gateway = PagedGateway()
        controller = make_controller(store, gateway, StaticAdvisor(online=True, storage_percent=85.0))

        summary = await controller.auto_download()
        assert summary.status is DownloadStatus.SKIPPED
        assert gateway.calls == []
        assert await store.get_setting(AUTO_DOWNLOAD_SESSION_KEY) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("advisor", [
        StaticAdvisor(online=False),
        StaticAdvisor(quality=ConnectionQuality.CELLULAR),
        StaticAdvisor(quality=ConnectionQuality.SLOW),
        StaticAdvisor(power=False),
    ])
    async def test_gates(self, store, advisor):
        gateway = PagedGateway()
        summary = await make_controller(store, gateway, advisor).auto_download()
        assert summary.status is DownloadStatus.SKIPPED
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_signals_do_not_block(self, store):
        gateway = PagedGateway()
        summary = await make_controller(store, gateway, PermissiveAdvisor()).auto_download()

        assert summary.status is DownloadStatus.SUCCESS
        assert [c.page_num for c in gateway.calls] == [1, 2]
        pages = await store.get_cached_pages("latest")
        assert [p.origin for p in pages] == [PageOrigin.AUTO, PageOrigin.AUTO]
        assert await store.get_setting(AUTO_DOWNLOAD_SESSION_KEY) == "session-1"
        assert await store.get_setting(LAST_AUTO_DOWNLOAD_KEY) is not None

    @pytest.mark.asyncio
    async def test_runs_once_per_session(self, store):
        gateway = PagedGateway()
        controller = make_controller(store, gateway, StaticAdvisor(online=True, storage_percent=10.0))
        await controller.auto_download()
        second = await controller.auto_download()

        assert second.status is DownloadStatus.SKIPPED
        assert len(gateway.calls) == 2

        next_session = make_controller(store, gateway, session_id="session-2")
        assert (await next_session.auto_download()).status is DownloadStatus.SUCCESS
        assert len(gateway.calls) == 4

    @pytest.mark.asyncio
    async def test_failures_are_silent(self, store):
        summary = await make_controller(store, PagedGateway(auth_fail=True)).auto_download()
        assert summary.status is DownloadStatus.FAILURE
        assert summary.failed_pages == [1, 2]


class TestManualDownload:
    @pytest.mark.asyncio
    async def test_declined_makes_no_calls(self, store):
        gateway = PagedGateway()
        seen = []

        def confirm(estimate):
            seen.append(estimate)
            return False

        summary = await make_controller(store, gateway).manual_download(3, confirm)
        assert summary.status is DownloadStatus.DECLINED
        assert gateway.calls == []
        assert seen[0].articles == 36
        assert seen[0].size_bytes == 36 * 2048

    @pytest.mark.asyncio
    async def test_progress_is_reported_per_page(self, store):
        progress: List[DownloadProgress] = []
        summary = await make_controller(store, PagedGateway()).manual_download(
            3, lambda est: True, on_progress=progress.append
        )

        assert summary.status is DownloadStatus.SUCCESS
        assert summary.downloaded_pages == 3
        assert summary.articles == 36
        assert [p.downloaded_pages for p in progress] == [1, 2, 3]
        assert [p.size_bytes for p in progress] == [12 * 2048, 24 * 2048, 36 * 2048]
        assert progress[-1].fraction == 1.0

    @pytest.mark.asyncio
    async def test_async_confirm(self, store):
        async def confirm(estimate):
            return True

        summary = await make_controller(store, PagedGateway()).manual_download(1, confirm)
        assert summary.status is DownloadStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_partial(self, store):
        summary = await make_controller(store, PagedGateway(fail_pages={2})).manual_download(
            3, lambda est: True
        )
        assert summary.status is DownloadStatus.PARTIAL
        assert summary.failed_pages == [2]
        assert summary.downloaded_pages == 2

    @pytest.mark.asyncio
    async def test_failure(self, store):
        summary = await make_controller(store, PagedGateway(fail_pages={1, 2})).manual_download(
            2, lambda est: True
        )
        assert summary.status is DownloadStatus.FAILURE

    @pytest.mark.asyncio
    async def test_cancel_between_pages(self, store):
        gateway = PagedGateway()
        token = CancellationToken()

        def on_progress(p: DownloadProgress):
            if p.downloaded_pages == 2:
                token.cancel()

        summary = await make_controller(store, gateway).manual_download(
            5, lambda est: True, on_progress=on_progress, token=token
        )
        assert summary.status is DownloadStatus.CANCELLED
        assert summary.downloaded_pages == 2
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_auth_invalid_surfaces(self, store):
        with pytest.raises(AuthInvalid):
            await make_controller(store, PagedGateway(auth_fail=True)).manual_download(
                2, lambda est: True
            )

    @pytest.mark.asyncio
    async def test_page_count_bounds(self, store):
        controller = make_controller(store, PagedGateway(), manual_max_pages=3)
        with pytest.raises(ValueError):
            await controller.manual_download(0, lambda est: True)
        with pytest.raises(ValueError):
            await controller.manual_download(4, lambda est: True)


class TestCancellationToken:
    def test_cancel_and_reset(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        token.cancel()
        assert token.is_cancelled()
        token.reset()
        assert not token.is_cancelled()
