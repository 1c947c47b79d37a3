"""Data models for the newsdesk storage layer."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# Conservative per-article size used for cache accounting and download estimates
AVG_ARTICLE_BYTES = 2048


class ActionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PageOrigin(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass
class Article:
    """A single news article as stored and returned to the result consumer."""

    id: str
    title: str
    url: str
    description: str = ""
    author: Optional[str] = None
    image: Optional[str] = None
    language: Optional[str] = None
    published_at: Optional[datetime] = None
    category: List[str] = field(default_factory=list)
    saved_offline: bool = False
    read: bool = False
    saved_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None

    @staticmethod
    def make_id(url: str) -> str:
        """Deterministic id for payloads that arrive without one."""
        return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> Optional[Article]:
        """Normalize one entry of a gateway ``news`` list. Returns None without a url or id."""
        url = data.get("url") or ""
        article_id = data.get("id") or (url and cls.make_id(url))
        if not article_id:
            return None
        category = data.get("category") or []
        if isinstance(category, str):
            category = [category]
        image = data.get("image")
        if image in ("None", ""):
            image = None
        return cls(
            id=str(article_id),
            title=data.get("title") or "Untitled",
            url=url,
            description=data.get("description") or "",
            author=data.get("author"),
            image=image,
            language=data.get("language"),
            published_at=_parse_ts(data.get("published") or data.get("published_at")),
            category=[str(c) for c in category],
        )

    def matches_text(self, query: str) -> bool:
        q = query.lower()
        return q in (self.title or "").lower() or q in (self.description or "").lower()

    def has_category(self, category: str) -> bool:
        wanted = category.lower()
        return any(c.lower() == wanted for c in self.category)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.title,
            self.description,
            self.url,
            self.author,
            self.image,
            self.language,
            self.published_at.isoformat() if self.published_at else None,
            json.dumps(self.category),
            int(self.saved_offline),
            int(self.read),
            self.saved_at.isoformat() if self.saved_at else None,
            self.last_read_at.isoformat() if self.last_read_at else None,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Article:
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description") or "",
            url=row["url"],
            author=row.get("author"),
            image=row.get("image"),
            language=row.get("language"),
            published_at=_parse_ts(row.get("published_at")),
            category=_parse_json(row.get("category")) or [],
            saved_offline=bool(row.get("saved_offline", 0)),
            read=bool(row.get("read", 0)),
            saved_at=_parse_ts(row.get("saved_at")),
            last_read_at=_parse_ts(row.get("last_read_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict used for page and search cache snapshots."""
        d = asdict(self)
        for key in ("published_at", "saved_at", "last_read_at"):
            d[key] = d[key].isoformat() if d[key] else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Article:
        return cls(
            id=d["id"],
            title=d.get("title") or "Untitled",
            url=d.get("url") or "",
            description=d.get("description") or "",
            author=d.get("author"),
            image=d.get("image"),
            language=d.get("language"),
            published_at=_parse_ts(d.get("published_at")),
            category=list(d.get("category") or []),
            saved_offline=bool(d.get("saved_offline", False)),
            read=bool(d.get("read", False)),
            saved_at=_parse_ts(d.get("saved_at")),
            last_read_at=_parse_ts(d.get("last_read_at")),
        )


@dataclass
class PageCacheEntry:
    """One cached listing page, keyed by (source, page_num)."""

    source: str
    page_num: int
    articles: List[Article]
    origin: PageOrigin = PageOrigin.AUTO
    size_bytes: int = 0
    cached_at: Optional[datetime] = None

    @property
    def article_ids(self) -> List[str]:
        return [a.id for a in self.articles]

    def to_row(self) -> tuple:
        return (
            self.source,
            self.page_num,
            json.dumps([a.to_dict() for a in self.articles]),
            self.origin.value,
            self.size_bytes,
            self.cached_at.isoformat() if self.cached_at else None,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> PageCacheEntry:
        return cls(
            source=row["source"],
            page_num=row["page_num"],
            articles=[Article.from_dict(d) for d in (_parse_json(row.get("articles")) or [])],
            origin=PageOrigin(row.get("origin") or "auto"),
            size_bytes=row.get("size_bytes") or 0,
            cached_at=_parse_ts(row.get("cached_at")),
        )


@dataclass
class SearchCacheEntry:
    """Cached search results. ``created_at`` and ``ttl_seconds`` are epoch seconds."""

    key: str
    query: str
    filters: Dict[str, Any]
    results: List[Article]
    created_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        # An entry exactly ttl old is already dead
        return now - self.created_at >= self.ttl_seconds

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> SearchCacheEntry:
        return cls(
            key=row["key"],
            query=row["query"],
            filters=_parse_json(row.get("filters")) or {},
            results=[Article.from_dict(d) for d in (_parse_json(row.get("results")) or [])],
            created_at=row["created_at"],
            ttl_seconds=row["ttl_seconds"],
        )


@dataclass
class OutboxAction:
    """A locally-originated mutation awaiting remote confirmation."""

    id: int
    type: str
    payload: Dict[str, Any]
    status: ActionStatus = ActionStatus.PENDING
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> OutboxAction:
        return cls(
            id=row["id"],
            type=row["type"],
            payload=_parse_json(row.get("payload")) or {},
            status=ActionStatus(row["status"]),
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class StorageEstimate:
    usage_bytes: int = 0
    quota_bytes: int = 0

    @property
    def percentage(self) -> float:
        if not self.quota_bytes:
            return 0.0
        return self.usage_bytes / self.quota_bytes * 100


@dataclass
class SizeEstimate:
    """Expected footprint of a bulk download, shown before the user confirms."""

    articles: int
    size_bytes: int

    @property
    def size_text(self) -> str:
        mb = self.size_bytes / (1024 * 1024)
        if mb > 1:
            return f"{mb:.1f} MB"
        return f"{self.size_bytes / 1024:.0f} KB"


@dataclass
class StorageStats:
    """Aggregate counts, recomputed on demand. Missing counts default to 0."""

    total_articles: int = 0
    offline_articles: int = 0
    read_articles: int = 0
    bookmarked_articles: int = 0
    pending_actions: int = 0
    cached_pages: int = 0
    usage_bytes: int = 0
    quota_bytes: int = 0

    @property
    def usage_percent(self) -> float:
        return StorageEstimate(self.usage_bytes, self.quota_bytes).percentage


def estimate_size(articles: List[Article]) -> int:
    return len(articles) * AVG_ARTICLE_BYTES


# --- Helpers ---

def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        return parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None


def _parse_json(val: Any) -> Any:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if isinstance(val, (dict, list)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None
