"""Version-controlled schema migrations for the newsdesk store."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

# Each migration is (version, description, list_of_sql_statements)
MigrationStep = Tuple[int, str, List[str]]

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"


def _get_migrations() -> List[MigrationStep]:
    """Return ordered list of migrations."""
    return [
        (
            1,
            "Initial schema: articles, pages, search_cache, outbox, settings",
            [SCHEMA_SQL_PATH.read_text(encoding="utf-8")],
        ),
        (
            2,
            "Add bookmarks and articles.last_read_at",
            [
                "ALTER TABLE articles ADD COLUMN last_read_at TEXT;",
                """CREATE TABLE IF NOT EXISTS bookmarks (
                       article_id TEXT PRIMARY KEY,
                       article TEXT NOT NULL,
                       added_at TEXT NOT NULL
                   );""",
            ],
        ),
        (
            3,
            "Add progress table for per-article reading progress",
            [
                """CREATE TABLE IF NOT EXISTS progress (
                       article_id TEXT PRIMARY KEY,
                       progress REAL NOT NULL,
                       last_read TEXT NOT NULL
                   );""",
            ],
        ),
    ]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Get the current schema version, or 0 if no schema exists."""
    try:
        row = conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        return row[0] if row and row[0] is not None else 0
    except sqlite3.OperationalError:
        return 0


def apply_migrations(db_path: str) -> int:
    """Apply all pending migrations. Returns the final schema version."""
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL")

    current = get_current_version(conn)
    applied = 0

    try:
        for version, description, statements in _get_migrations():
            if version <= current:
                continue

            logger.info("Applying migration v%d: %s", version, description)
            try:
                for sql in statements:
                    conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
                conn.commit()
                applied += 1
            except Exception:
                conn.rollback()
                logger.exception("Migration v%d failed", version)
                raise

        final = get_current_version(conn)
    finally:
        conn.close()

    if applied:
        logger.info("Applied %d migration(s). Schema at v%d", applied, final)
    else:
        logger.debug("Schema up to date at v%d", final)

    return final


def reset_database(db_path: str) -> int:
    """Drop every table, data included, and rebuild the schema at the latest version.

    Returns the schema version after the rebuild.
    """
    conn = sqlite3.connect(db_path)
    try:
        names = [
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            )
        ]
        for name in names:
            conn.execute(f'DROP TABLE IF EXISTS "{name}"')
        conn.commit()
    finally:
        conn.close()

    logger.warning("Dropped %d table(s) from %s", len(names), db_path)
    return apply_migrations(db_path)
