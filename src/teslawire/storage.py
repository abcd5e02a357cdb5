from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any

from .errors import DuplicateDetected, PersistenceError
from .models import EnrichedArticle, RunSummary
from .utils import json_dumps, normalize_guid, normalize_title, utc_now_iso

_ARTICLE_COLUMNS = (
    "natural_key",
    "slug",
    "title",
    "title_key",
    "summary",
    "body_html",
    "canonical_url",
    "image_url",
    "published_at",
    "source_id",
    "source_name",
    "title_translated",
    "summary_translated",
    "body_plain_text",
    "body_html_translated",
    "hero_image_ref",
    "content_image_refs_json",
    "is_published",
    "created_at",
    "updated_at",
)


def _is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc).upper()
    return getattr(exc, "sqlstate", None) == "23505"


def _rows_to_dicts(cursor, rows) -> list[dict[str, Any]]:
    columns = [column[0] for column in cursor.description or []]
    return [dict(zip(columns, row)) for row in rows]


def _article_from_row(row: dict[str, Any]) -> dict[str, Any]:
    article = dict(row)
    article["content_image_refs"] = json.loads(article.pop("content_image_refs_json") or "[]")
    article["is_published"] = bool(article["is_published"])
    article.pop("title_key", None)
    return article


class ArticleStore:
    """Content store access: point existence checks and single-article creates.

    The connection is shared across threads; a statement and its commit or
    rollback run under one lock.
    """

    def __init__(self, conn) -> None:
        self.conn = conn
        self._lock = threading.RLock()

    def _exists(self, sql: str, params: tuple) -> bool:
        try:
            with self._lock:
                cursor = self.conn.execute(sql, params)
                return cursor.fetchone() is not None
        except Exception as exc:
            raise PersistenceError("store_read_failed", str(exc)) from exc

    def exists_natural_key(self, natural_key: str) -> bool:
        return self._exists(
            "SELECT 1 FROM articles WHERE natural_key = ? LIMIT 1", (normalize_guid(natural_key),)
        )

    def exists_title(self, title: str) -> bool:
        return self._exists(
            "SELECT 1 FROM articles WHERE title_key = ? LIMIT 1", (normalize_title(title),)
        )

    def exists_published_at(self, published_at: str) -> bool:
        return self._exists("SELECT 1 FROM articles WHERE published_at = ? LIMIT 1", (published_at,))

    def slug_exists(self, slug: str) -> bool:
        return self._exists("SELECT 1 FROM articles WHERE slug = ? LIMIT 1", (slug,))

    def unique_slug(self, base: str) -> str:
        if not self.slug_exists(base):
            return base
        suffix = 2
        while self.slug_exists(f"{base}-{suffix}"):
            suffix += 1
        return f"{base}-{suffix}"

    def create_article(self, article: EnrichedArticle) -> int:
        now = utc_now_iso()
        values = (
            article.natural_key,
            article.slug,
            article.title,
            normalize_title(article.title),
            article.summary,
            article.body_html,
            article.canonical_url,
            article.image_url,
            article.published_at,
            article.source_id,
            article.source_name,
            article.title_translated,
            article.summary_translated,
            article.body_plain_text,
            article.body_html_translated,
            article.hero_image_ref,
            json_dumps(list(article.content_image_refs)),
            1 if article.is_published else 0,
            now,
            now,
        )
        placeholders = ", ".join("?" for _ in _ARTICLE_COLUMNS)
        sql = f"INSERT INTO articles ({', '.join(_ARTICLE_COLUMNS)}) VALUES ({placeholders})"
        postgres = getattr(self.conn, "backend", "sqlite") == "postgres"
        if postgres:
            sql += " RETURNING id"
        with self._lock:
            try:
                cursor = self.conn.execute(sql, values)
                article_id = cursor.fetchone()[0] if postgres else cursor.lastrowid
                self.conn.commit()
            except Exception as exc:
                self.conn.rollback()
                if _is_unique_violation(exc):
                    raise DuplicateDetected("already_stored", article.natural_key) from exc
                raise PersistenceError("store_write_failed", str(exc)) from exc
        return int(article_id)

    def get_article_by_slug(self, slug: str) -> dict[str, Any] | None:
        with self._lock:
            cursor = self.conn.execute("SELECT * FROM articles WHERE slug = ?", (slug,))
            rows = _rows_to_dicts(cursor, cursor.fetchall())
        return _article_from_row(rows[0]) if rows else None

    def list_recent_articles(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT * FROM articles ORDER BY published_at DESC LIMIT ?", (limit,)
            )
            rows = _rows_to_dicts(cursor, cursor.fetchall())
        return [_article_from_row(row) for row in rows]

    def count_articles(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()
        return int(row[0]) if row else 0

    def record_sync_run(self, summary: RunSummary) -> None:
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO sync_runs
                        (started_at, finished_at, success, imported, failed, skipped, summary_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        summary.started_at,
                        summary.finished_at,
                        1 if summary.success else 0,
                        summary.imported,
                        summary.failed,
                        summary.skipped,
                        json_dumps(summary.to_dict()),
                    ),
                )
                self.conn.commit()
            except Exception as exc:
                self.conn.rollback()
                raise PersistenceError("store_write_failed", str(exc)) from exc

    def last_sync_run(self) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT summary_json FROM sync_runs ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        return json.loads(row[0])
