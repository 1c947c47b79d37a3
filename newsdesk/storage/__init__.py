"""Storage layer - SQLite (WAL mode) article store, page/search caches and outbox."""

from newsdesk.storage.db import ArticleStore, search_cache_key
from newsdesk.storage.models import (
    ActionStatus,
    Article,
    OutboxAction,
    PageCacheEntry,
    PageOrigin,
    SizeEstimate,
    StorageStats,
)

__all__ = [
    "ArticleStore",
    "search_cache_key",
    "ActionStatus",
    "Article",
    "OutboxAction",
    "PageCacheEntry",
    "PageOrigin",
    "SizeEstimate",
    "StorageStats",
]
