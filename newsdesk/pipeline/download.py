"""Bulk page downloads for offline reading.

Two entry points share ``download_page``:

- ``auto_download``: once per session, a couple of pages, only when the
  resource advisor sees no reason not to. Never raises.
- ``manual_download``: user-confirmed, sequential, reports progress and can be
  cancelled between pages.
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from newsdesk.config import DownloadSettings
from newsdesk.errors import AuthInvalid
from newsdesk.pipeline.advisor import PermissiveAdvisor, ResourceAdvisor
from newsdesk.pipeline.orchestrator import FetchOrchestrator, FetchResult
from newsdesk.pipeline.request import LATEST_SOURCE, RequestSpec
from newsdesk.storage.db import AUTO_DOWNLOAD_SESSION_KEY, LAST_AUTO_DOWNLOAD_KEY
from newsdesk.storage.models import PageOrigin, SizeEstimate, estimate_size

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked between pages.

    Examples:
        >>> token = CancellationToken()
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def reset(self) -> None:
        self._cancelled.clear()


class DownloadStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    SKIPPED = "skipped"


@dataclass
class DownloadProgress:
    page_num: int
    downloaded_pages: int
    total_pages: int
    articles: int
    size_bytes: int

    @property
    def fraction(self) -> float:
        return self.downloaded_pages / self.total_pages if self.total_pages else 0.0


@dataclass
class DownloadSummary:
    status: DownloadStatus
    requested_pages: int = 0
    downloaded_pages: int = 0
    failed_pages: List[int] = field(default_factory=list)
    articles: int = 0
    size_bytes: int = 0
    estimate: Optional[SizeEstimate] = None
    reason: str = ""
    duration_seconds: float = 0.0


ProgressCallback = Callable[[DownloadProgress], Any]
ConfirmCallback = Callable[[SizeEstimate], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DownloadController:
    """Downloads pages through the orchestrator's network-only path and marks them for offline use.

    Usage:
        controller = DownloadController(orchestrator, advisor=SystemAdvisor(store, online=True))
        await controller.auto_download()
        summary = await controller.manual_download(5, confirm=lambda est: True)
    """

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        advisor: Optional[ResourceAdvisor] = None,
        settings: Optional[DownloadSettings] = None,
        session_id: Optional[str] = None,
        page_size: int = 12,
        language: str = "en",
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.advisor = advisor or PermissiveAdvisor()
        self.settings = settings or DownloadSettings()
        self.session_id = session_id or uuid.uuid4().hex
        self.page_size = page_size
        self.language = language

    async def download_page(
        self,
        page_num: int,
        source: str = LATEST_SOURCE,
        origin: Union[PageOrigin, str] = PageOrigin.MANUAL,
    ) -> FetchResult:
        """Fetch one page from the network, cache it under ``origin`` and save its articles offline.

        Raises whatever the network-only fetch raises.
        """
        spec = RequestSpec.for_source(
            source, page_num, page_size=self.page_size, language=self.language
        )
        result = await self.orchestrator.fetch_articles(spec, network_only=True, origin=origin)
        saved = await self.store.save_articles(result.records, saved_offline=True)
        if saved < len(result.records):
            logger.warning(
                "Saved %d of %d articles from %s page %d", saved, len(result.records), source, page_num
            )
        return result

    # --- Automatic ---

    async def auto_download(self) -> DownloadSummary:
        """Download the first few pages of the latest feed if conditions allow."""
        if await self.store.get_setting(AUTO_DOWNLOAD_SESSION_KEY) == self.session_id:
            logger.info("Auto-download already ran this session")
            return DownloadSummary(DownloadStatus.SKIPPED, reason="already ran this session")

        reason = await self._gate_reason()
        if reason:
            logger.info("Skipping auto-download: %s", reason)
            return DownloadSummary(DownloadStatus.SKIPPED, reason=reason)

        await self.store.set_setting(AUTO_DOWNLOAD_SESSION_KEY, self.session_id)
        await self.store.set_setting(LAST_AUTO_DOWNLOAD_KEY, datetime.utcnow().isoformat())

        pages = list(range(1, self.settings.auto_pages + 1))
        summary = DownloadSummary(DownloadStatus.SUCCESS, requested_pages=len(pages))
        start = time.monotonic()
        for page_num in pages:
            try:
                result = await self.download_page(page_num, LATEST_SOURCE, PageOrigin.AUTO)
            except Exception as e:
                logger.warning("Auto-download of page %d failed: %s", page_num, e)
                summary.failed_pages.append(page_num)
                continue
            summary.downloaded_pages += 1
            summary.articles += len(result.records)
            summary.size_bytes += estimate_size(result.records)

        summary.status = self._final_status(summary, cancelled=False)
        summary.duration_seconds = time.monotonic() - start
        logger.info(
            "Auto-download %s: %d/%d pages, %d articles",
            summary.status.value, summary.downloaded_pages, summary.requested_pages, summary.articles,
        )
        return summary

    async def _gate_reason(self) -> str:
        """Empty string when every known signal allows a background download."""
        if await self.advisor.is_online() is False:
            return "offline"
        quality = await self.advisor.connection_quality()
        if quality is not None and quality.is_weak:
            return f"weak connection ({quality.value})"
        if await self.advisor.power_ok() is False:
            return "low power"
        usage = await self.advisor.storage_usage_percent()
        if usage is not None and usage >= self.settings.storage_ceiling_percent:
            return f"storage at {usage:.0f}%"
        return ""

    # --- Manual ---

    def estimate(self, page_count: int) -> SizeEstimate:
        return self.store.estimate_download_size(page_count, self.page_size)

    async def manual_download(
        self,
        page_count: int,
        confirm: ConfirmCallback,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
        source: str = LATEST_SOURCE,
    ) -> DownloadSummary:
        """Download pages ``1..page_count`` after the user accepts the size estimate.

        ``confirm`` and ``on_progress`` may be plain or async callables.

        Raises:
            ValueError: page_count outside 1..manual_max_pages.
            AuthInvalid: the gateway rejected the credentials.
        """
        if not 1 <= page_count <= self.settings.manual_max_pages:
            raise ValueError(
                f"page_count must be between 1 and {self.settings.manual_max_pages}, got {page_count}"
            )

        estimate = self.estimate(page_count)
        if not await _maybe_await(confirm(estimate)):
            logger.info("Manual download of %d pages declined (%s)", page_count, estimate.size_text)
            return DownloadSummary(
                DownloadStatus.DECLINED, requested_pages=page_count, estimate=estimate
            )

        logger.info("Downloading %d pages of %s (~%s)", page_count, source, estimate.size_text)
        summary = DownloadSummary(
            DownloadStatus.SUCCESS, requested_pages=page_count, estimate=estimate
        )
        start = time.monotonic()
        cancelled = False

        for page_num in range(1, page_count + 1):
            if token is not None and token.is_cancelled():
                logger.info("Manual download cancelled before page %d", page_num)
                cancelled = True
                break
            try:
                result = await self.download_page(page_num, source, PageOrigin.MANUAL)
            except AuthInvalid:
                raise
            except Exception as e:
                logger.warning("Failed to download page %d: %s", page_num, e)
                summary.failed_pages.append(page_num)
                continue

            summary.downloaded_pages += 1
            summary.articles += len(result.records)
            summary.size_bytes += estimate_size(result.records)
            if on_progress is not None:
                await _maybe_await(on_progress(DownloadProgress(
                    page_num=page_num,
                    downloaded_pages=summary.downloaded_pages,
                    total_pages=page_count,
                    articles=summary.articles,
                    size_bytes=summary.size_bytes,
                )))

        summary.status = self._final_status(summary, cancelled)
        summary.duration_seconds = time.monotonic() - start
        logger.info(
            "Manual download %s: %d/%d pages, %d articles",
            summary.status.value, summary.downloaded_pages, page_count, summary.articles,
        )
        return summary

    @staticmethod
    def _final_status(summary: DownloadSummary, cancelled: bool) -> DownloadStatus:
        if cancelled:
            return DownloadStatus.CANCELLED
        if not summary.failed_pages:
            return DownloadStatus.SUCCESS
        if summary.downloaded_pages:
            return DownloadStatus.PARTIAL
        return DownloadStatus.FAILURE
