"""Durable article store on SQLite (WAL mode) via aiosqlite.

Every public operation is failure-tolerant: when the store is not open or the
engine raises, reads return an empty result and writes return ``False`` (or
``None`` where an id is expected). Callers treat that as a cache miss.

Lookups over boolean/status columns (``saved_offline``, ``read``, outbox
``status``) always retrieve the full collection and filter in memory. The
collections are bounded to a few thousand rows, and the scan keeps the
results independent of how the engine treats boolean index ranges.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

import aiosqlite

from newsdesk.errors import StoreUnavailable
from newsdesk.storage.migrations import apply_migrations
from newsdesk.storage.models import (
    AVG_ARTICLE_BYTES,
    ActionStatus,
    Article,
    OutboxAction,
    PageCacheEntry,
    PageOrigin,
    SearchCacheEntry,
    SizeEstimate,
    StorageEstimate,
    StorageStats,
    estimate_size,
)

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024
DEFAULT_SEARCH_TTL_SECONDS = 30 * 60
DEFAULT_MAX_SEARCH_ENTRIES = 200
DEFAULT_QUERY_LIMIT = 100
READ_THRESHOLD_PERCENT = 90.0

AUTO_DOWNLOAD_SESSION_KEY = "auto_download_session"
LAST_AUTO_DOWNLOAD_KEY = "last_auto_download"

Predicate = Callable[[Article], bool]
T = TypeVar("T")

_STORE_ERRORS = (StoreUnavailable, sqlite3.Error, ValueError)


def _guarded(default: Callable[[], Any]):
    """Turn store failures into ``default()`` instead of an exception."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except _STORE_ERRORS as e:
                logger.warning("Store operation %s failed: %s", func.__name__, e)
                return default()
        return wrapper

    return decorator


def search_cache_key(query: str, filters: Optional[Mapping[str, Any]] = None, page_num: int = 1) -> str:
    """SHA-256 over the canonical (query, sorted non-empty filters, page) tuple."""
    pairs = sorted((str(k), str(v)) for k, v in (filters or {}).items() if v)
    canonical = json.dumps(
        [query.strip().lower(), pairs, page_num],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ArticleStore:
    """Async SQLite store for articles, page cache, search cache, outbox and settings.

    Usage:
        store = ArticleStore("data/newsdesk.db")
        await store.initialize()
        # ... use store ...
        await store.close()
    """

    def __init__(
        self,
        db_path: str,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        search_ttl_seconds: float = DEFAULT_SEARCH_TTL_SECONDS,
        max_search_entries: int = DEFAULT_MAX_SEARCH_ENTRIES,
        clock: Callable[[], float] = time.time,
        cache_size_mb: int = 16,
    ):
        self.db_path = db_path
        self.quota_bytes = quota_bytes
        self.search_ttl_seconds = search_ttl_seconds
        self.max_search_entries = max_search_entries
        self.cache_size_mb = cache_size_mb
        self._clock = clock
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, storage: Any) -> ArticleStore:
        return cls(
            storage.db_path,
            quota_bytes=int(storage.quota_mb * 1024 * 1024),
            search_ttl_seconds=storage.search_ttl_minutes * 60,
            max_search_entries=storage.max_search_entries,
        )

    @property
    def available(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> bool:
        """Apply migrations and open the connection. Returns False if the store stays unavailable."""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            apply_migrations(self.db_path)

            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row

            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute(f"PRAGMA cache_size=-{self.cache_size_mb * 1000}")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA temp_store=MEMORY")
        except (OSError, sqlite3.Error) as e:
            logger.warning("Article store unavailable (%s): %s", self.db_path, e)
            self._conn = None
            return False

        logger.info("Article store initialized: %s", self.db_path)
        return True

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailable(f"Article store {self.db_path} is not open")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and begin a transaction."""
        conn = self._require()
        async with self._write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    def _now(self) -> datetime:
        return datetime.utcnow()

    # --- Articles ---

    @_guarded(lambda: False)
    async def save_article(self, article: Article, saved_offline: bool = False) -> bool:
        """Upsert an article and stamp ``saved_at``. Idempotent on id."""
        if not article or not article.id:
            return False
        article.saved_offline = saved_offline
        article.saved_at = self._now()
        async with self._transaction() as conn:
            await conn.execute(_UPSERT_ARTICLE, article.to_row())
        logger.debug("Article saved: %s saved_offline=%s", article.id, saved_offline)
        return True

    @_guarded(lambda: 0)
    async def save_articles(self, articles: List[Article], saved_offline: bool = False) -> int:
        """Batch upsert. Returns the number of articles written."""
        rows = []
        now = self._now()
        for article in articles:
            if not article.id:
                continue
            article.saved_offline = saved_offline
            article.saved_at = now
            rows.append(article.to_row())
        if not rows:
            return 0
        async with self._transaction() as conn:
            await conn.executemany(_UPSERT_ARTICLE, rows)
        logger.info("Saved %d articles (saved_offline=%s)", len(rows), saved_offline)
        return len(rows)

    @_guarded(lambda: None)
    async def get_article(self, article_id: str) -> Optional[Article]:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,))
        row = await cursor.fetchone()
        return Article.from_row(dict(row)) if row else None

    @_guarded(lambda: False)
    async def delete_article(self, article_id: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
        return cursor.rowcount > 0

    @_guarded(lambda: False)
    async def mark_read(self, article_id: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE articles SET read = 1, last_read_at = ? WHERE id = ?",
                (self._now().isoformat(), article_id),
            )
        return cursor.rowcount > 0

    @_guarded(lambda: False)
    async def update_reading_progress(self, article_id: str, progress: float) -> bool:
        """Record how far (0-100 percent) an article has been read.

        Past ``READ_THRESHOLD_PERCENT`` the article is also marked read.
        """
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be between 0 and 100, got {progress}")
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO progress (article_id, progress, last_read) VALUES (?, ?, ?)
                   ON CONFLICT(article_id) DO UPDATE SET
                       progress = excluded.progress, last_read = excluded.last_read""",
                (article_id, float(progress), self._now().isoformat()),
            )
        if progress > READ_THRESHOLD_PERCENT:
            await self.mark_read(article_id)
        return True

    @_guarded(lambda: None)
    async def get_reading_progress(self, article_id: str) -> Optional[float]:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT progress FROM progress WHERE article_id = ?", (article_id,)
        )
        row = await cursor.fetchone()
        return row["progress"] if row else None

    async def _all_articles(self) -> List[Article]:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT * FROM articles ORDER BY published_at DESC, id ASC"
        )
        rows = await cursor.fetchall()
        return [Article.from_row(dict(r)) for r in rows]

    @_guarded(list)
    async def query_by_predicate(
        self,
        predicate: Predicate,
        offset: int = 0,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Article]:
        """Return ``filter(all, predicate)[offset:offset + limit]``."""
        offset = max(offset, 0)
        matched = [a for a in await self._all_articles() if predicate(a)]
        return matched[offset : offset + max(limit, 0)]

    async def get_offline_articles(self, limit: int = DEFAULT_QUERY_LIMIT, offset: int = 0) -> List[Article]:
        articles = await self.query_by_predicate(lambda a: a.saved_offline, offset, limit)
        logger.debug("Found %d offline articles at offset %d", len(articles), offset)
        return articles

    async def search_offline(
        self,
        query: str,
        category: Optional[str] = None,
        offset: int = 0,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Article]:
        """Substring search over title/description of articles saved for offline."""

        def matches(a: Article) -> bool:
            if not a.saved_offline:
                return False
            if query and not a.matches_text(query):
                return False
            if category and not a.has_category(category):
                return False
            return True

        return await self.query_by_predicate(matches, offset, limit)

    @_guarded(lambda: 0)
    async def purge_older_than(self, days: int) -> int:
        """Delete articles saved before the cutoff unless saved for offline or bookmarked."""
        cutoff = (self._now() - timedelta(days=days)).isoformat()
        conn = self._require()
        cursor = await conn.execute(
            "SELECT id, saved_offline FROM articles WHERE saved_at IS NOT NULL AND saved_at < ?",
            (cutoff,),
        )
        candidates = [r["id"] for r in await cursor.fetchall() if not r["saved_offline"]]
        if not candidates:
            return 0

        cursor = await conn.execute("SELECT article_id FROM bookmarks")
        bookmarked = {r["article_id"] for r in await cursor.fetchall()}
        to_delete = [(aid,) for aid in candidates if aid not in bookmarked]

        async with self._transaction() as conn:
            await conn.executemany("DELETE FROM articles WHERE id = ?", to_delete)
        logger.info("Purged %d articles older than %d days", len(to_delete), days)
        return len(to_delete)

    # --- Page cache ---

    @_guarded(list)
    async def get_page(self, source: str, page_num: int) -> List[Article]:
        entry = await self._get_page_entry(source, page_num)
        if entry is None:
            return []
        logger.debug("Retrieved cached page %d for source %r", page_num, source)
        return entry.articles

    async def _get_page_entry(self, source: str, page_num: int) -> Optional[PageCacheEntry]:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT * FROM pages WHERE source = ? AND page_num = ?", (source, page_num)
        )
        row = await cursor.fetchone()
        return PageCacheEntry.from_row(dict(row)) if row else None

    @_guarded(lambda: False)
    async def put_page(
        self,
        source: str,
        page_num: int,
        articles: List[Article],
        origin: Union[PageOrigin, str] = PageOrigin.AUTO,
    ) -> bool:
        """Cache a page. Last write wins on (source, page_num); empty pages are refused."""
        if not articles:
            return False
        entry = PageCacheEntry(
            source=source,
            page_num=page_num,
            articles=list(articles),
            origin=PageOrigin(origin),
            size_bytes=estimate_size(articles),
            cached_at=self._now(),
        )
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT OR REPLACE INTO pages
                   (source, page_num, articles, origin, size_bytes, cached_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                entry.to_row(),
            )
        logger.info(
            "Cached %d articles for page %d (source: %s, origin: %s, %d bytes)",
            len(articles), page_num, source, entry.origin.value, entry.size_bytes,
        )
        return True

    @_guarded(list)
    async def get_cached_pages(self, source: str) -> List[PageCacheEntry]:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT * FROM pages WHERE source = ? ORDER BY page_num", (source,)
        )
        return [PageCacheEntry.from_row(dict(r)) for r in await cursor.fetchall()]

    @_guarded(lambda: 0)
    async def clear_pages(self, source: Optional[str] = None) -> int:
        async with self._transaction() as conn:
            if source is None:
                cursor = await conn.execute("DELETE FROM pages")
            else:
                cursor = await conn.execute("DELETE FROM pages WHERE source = ?", (source,))
        logger.info("Cleared %d cached pages (source: %s)", cursor.rowcount, source or "all")
        return cursor.rowcount

    # --- Search cache ---

    @_guarded(lambda: None)
    async def get_search_cache(
        self,
        query: str,
        filters: Optional[Mapping[str, Any]] = None,
        page_num: int = 1,
    ) -> Optional[List[Article]]:
        """Return cached results, or None on miss. Expired entries are deleted."""
        if not query or not query.strip():
            return None
        key = search_cache_key(query, filters, page_num)
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM search_cache WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if row is None:
            return None

        entry = SearchCacheEntry.from_row(dict(row))
        if entry.is_expired(self._clock()):
            async with self._transaction() as conn:
                await conn.execute("DELETE FROM search_cache WHERE key = ?", (key,))
            logger.debug("Search cache expired for %r", query)
            return None

        logger.info("Using cached search results for %r (%d results)", query, len(entry.results))
        return entry.results

    @_guarded(lambda: False)
    async def put_search_cache(
        self,
        query: str,
        filters: Optional[Mapping[str, Any]],
        results: List[Article],
        page_num: int = 1,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        if not query or not query.strip() or results is None:
            return False
        ttl = self.search_ttl_seconds if ttl_seconds is None else ttl_seconds
        key = search_cache_key(query, filters, page_num)
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT OR REPLACE INTO search_cache
                   (key, query, filters, results, created_at, ttl_seconds)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    key,
                    query,
                    json.dumps(dict(filters or {})),
                    json.dumps([a.to_dict() for a in results]),
                    self._clock(),
                    ttl,
                ),
            )
            await conn.execute(
                """DELETE FROM search_cache WHERE key NOT IN (
                       SELECT key FROM search_cache ORDER BY created_at DESC LIMIT ?)""",
                (self.max_search_entries,),
            )
        logger.info("Cached %d search results for %r", len(results), query)
        return True

    @_guarded(lambda: 0)
    async def evict_expired_searches(self) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM search_cache WHERE ? - created_at >= ttl_seconds",
                (self._clock(),),
            )
        return cursor.rowcount

    # --- Outbox ---

    @_guarded(lambda: None)
    async def enqueue_action(self, action_type: str, payload: Dict[str, Any]) -> Optional[int]:
        """Append a pending action. Returns its id."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO outbox (type, payload, status, created_at) VALUES (?, ?, ?, ?)",
                (action_type, json.dumps(payload), ActionStatus.PENDING.value, self._now().isoformat()),
            )
        logger.info("Action queued: %s (#%s)", action_type, cursor.lastrowid)
        return cursor.lastrowid

    @_guarded(list)
    async def list_actions(self) -> List[OutboxAction]:
        conn = self._require()
        cursor = await conn.execute("SELECT * FROM outbox ORDER BY id")
        return [OutboxAction.from_row(dict(r)) for r in await cursor.fetchall()]

    async def list_pending(self) -> List[OutboxAction]:
        """Snapshot of pending actions in enqueue order."""
        return [a for a in await self.list_actions() if a.status is ActionStatus.PENDING]

    @_guarded(lambda: False)
    async def set_status(self, action_id: int, status: Union[ActionStatus, str]) -> bool:
        """Move a pending action to completed or failed. Other transitions are refused."""
        status = ActionStatus(status)
        if status is ActionStatus.PENDING:
            logger.warning("Refusing to reset action #%s to pending", action_id)
            return False
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE outbox SET status = ? WHERE id = ? AND status = ?",
                (status.value, action_id, ActionStatus.PENDING.value),
            )
        return cursor.rowcount > 0

    # --- Bookmarks ---

    @_guarded(lambda: None)
    async def toggle_bookmark(self, article: Article) -> Optional[bool]:
        """Add or remove a bookmark. Returns the new bookmarked state."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM bookmarks WHERE article_id = ?", (article.id,)
            )
            if cursor.rowcount:
                return False
            await conn.execute(
                "INSERT INTO bookmarks (article_id, article, added_at) VALUES (?, ?, ?)",
                (article.id, json.dumps(article.to_dict()), self._now().isoformat()),
            )
        return True

    @_guarded(lambda: False)
    async def is_bookmarked(self, article_id: str) -> bool:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT 1 FROM bookmarks WHERE article_id = ?", (article_id,)
        )
        return await cursor.fetchone() is not None

    @_guarded(list)
    async def get_bookmarks(self) -> List[Article]:
        conn = self._require()
        cursor = await conn.execute("SELECT article FROM bookmarks ORDER BY added_at DESC")
        return [Article.from_dict(json.loads(r["article"])) for r in await cursor.fetchall()]

    # --- Settings ---

    async def get_setting(self, key: str, default: Any = None) -> Any:
        try:
            conn = self._require()
            cursor = await conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except _STORE_ERRORS as e:
            logger.warning("Store operation get_setting failed: %s", e)
            return default
        if row is None or row["value"] is None:
            return default
        return json.loads(row["value"])

    @_guarded(lambda: False)
    async def set_setting(self, key: str, value: Any) -> bool:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value=excluded.value, updated_at=excluded.updated_at""",
                (key, json.dumps(value), self._now().isoformat()),
            )
        return True

    @_guarded(lambda: False)
    async def delete_setting(self, key: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        return cursor.rowcount > 0

    # --- Accounting ---

    @_guarded(StorageEstimate)
    async def estimate_usage(self) -> StorageEstimate:
        conn = self._require()
        cursor = await conn.execute(
            "SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()"
        )
        row = await cursor.fetchone()
        return StorageEstimate(usage_bytes=row[0] if row else 0, quota_bytes=self.quota_bytes)

    @staticmethod
    def estimate_download_size(page_count: int, page_size: int = 12) -> SizeEstimate:
        articles = max(page_count, 0) * page_size
        return SizeEstimate(articles=articles, size_bytes=articles * AVG_ARTICLE_BYTES)

    async def compute_stats(self) -> StorageStats:
        """Aggregate counts. A failing sub-count is logged and reported as 0."""
        stats = StorageStats(quota_bytes=self.quota_bytes)

        articles = await self._safe_count("articles", self._all_articles, [])
        stats.total_articles = len(articles)
        stats.offline_articles = sum(1 for a in articles if a.saved_offline)
        stats.read_articles = sum(1 for a in articles if a.read)
        stats.bookmarked_articles = await self._safe_count(
            "bookmarks", lambda: self._scalar("SELECT COUNT(*) FROM bookmarks"), 0
        )
        stats.pending_actions = len(await self.list_pending())
        stats.cached_pages = await self._safe_count(
            "pages", lambda: self._scalar("SELECT COUNT(*) FROM pages"), 0
        )
        stats.usage_bytes = (await self.estimate_usage()).usage_bytes

        logger.debug(
            "Storage stats: total=%d, offline=%d, read=%d, bookmarks=%d",
            stats.total_articles, stats.offline_articles, stats.read_articles,
            stats.bookmarked_articles,
        )
        return stats

    async def _scalar(self, sql: str) -> int:
        conn = self._require()
        cursor = await conn.execute(sql)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def _safe_count(self, name: str, fn: Callable[[], Any], default: T) -> T:
        try:
            return await fn()
        except _STORE_ERRORS as e:
            logger.warning("Stats count %s failed: %s", name, e)
            return default

    # --- Maintenance ---

    @_guarded(lambda: False)
    async def clear_all(self) -> bool:
        async with self._transaction() as conn:
            for table in (
                "articles", "pages", "search_cache", "outbox", "settings", "bookmarks", "progress",
            ):
                await conn.execute(f"DELETE FROM {table}")
        logger.info("All stored data cleared")
        return True

    async def integrity_check(self) -> bool:
        try:
            row = await (await self._require().execute("PRAGMA integrity_check")).fetchone()
        except _STORE_ERRORS:
            return False
        return row is not None and row[0] == "ok"


_UPSERT_ARTICLE = """
    INSERT INTO articles
        (id, title, description, url, author, image, language, published_at,
         category, saved_offline, read, saved_at, last_read_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        title=excluded.title,
        description=excluded.description,
        url=excluded.url,
        author=excluded.author,
        image=excluded.image,
        language=excluded.language,
        published_at=excluded.published_at,
        category=excluded.category,
        saved_offline=excluded.saved_offline,
        read=MAX(articles.read, excluded.read),
        saved_at=excluded.saved_at
"""
