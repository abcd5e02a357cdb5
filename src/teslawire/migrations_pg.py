from __future__ import annotations

import logging
from typing import Callable

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("teslawire.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    conn.commit()
    for version, migration in _get_migrations():
        if version in applied:
            continue
        conn.execute("BEGIN")
        migration(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=%s", version)


def _migrate_articles(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id BIGSERIAL PRIMARY KEY,
            natural_key TEXT NOT NULL UNIQUE,
            slug TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            title_key TEXT NOT NULL,
            summary TEXT NOT NULL,
            body_html TEXT NOT NULL,
            canonical_url TEXT NOT NULL,
            image_url TEXT NULL,
            published_at TEXT NOT NULL,
            source_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            title_translated TEXT NOT NULL,
            summary_translated TEXT NOT NULL,
            body_plain_text TEXT NOT NULL,
            body_html_translated TEXT NOT NULL,
            hero_image_ref TEXT NULL,
            content_image_refs_json TEXT NOT NULL,
            is_published INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_title_key ON articles(title_key)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_published_at ON articles(published_at)")


def _migrate_sync_runs(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id BIGSERIAL PRIMARY KEY,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            success INTEGER NOT NULL,
            imported INTEGER NOT NULL,
            failed INTEGER NOT NULL,
            skipped INTEGER NOT NULL,
            summary_json TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_started_at ON sync_runs(started_at)")


def _get_migrations() -> list[tuple[str, Callable]]:
    return [
        ("pg_articles_001", _migrate_articles),
        ("pg_sync_runs_002", _migrate_sync_runs),
    ]
