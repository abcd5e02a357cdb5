import threading

import pytest

from teslawire.errors import DuplicateDetected
from teslawire.models import EnrichedArticle, RunSummary


def _article(**overrides):
    values = {
        "natural_key": "https://example.com/post",
        "source_name": "Example Feed",
        "source_id": "feed",
        "title": "Tesla ships FSD v14",
        "summary": "Short teaser.",
        "body_html": "<p>Body</p>",
        "canonical_url": "https://example.com/post/",
        "image_url": "https://cdn.example.com/hero.jpg",
        "published_at": "2025-11-21T10:00:00.000Z",
        "slug": "tesla-ships-fsd-v14",
        "title_translated": "ar:Tesla ships FSD v14",
        "summary_translated": "ar:Short teaser.",
        "body_plain_text": "Body",
        "body_html_translated": "<p>ar body</p>",
        "hero_image_ref": "image-abc-1200x800-jpg",
        "content_image_refs": ("image-def-1200x800-jpg",),
    }
    values.update(overrides)
    return EnrichedArticle(**values)


def test_existence_checks_use_normalized_keys(store):
    store.create_article(_article())
    assert store.exists_natural_key("https://Example.com/post/?utm_source=x")
    assert store.exists_title("  TESLA ships   fsd v14 ")
    assert store.exists_published_at("2025-11-21T10:00:00.000Z")
    assert not store.exists_natural_key("https://example.com/other")
    assert not store.exists_title("Another title")
    assert not store.exists_published_at("2025-11-21T10:00:01.000Z")


def test_unique_slug_appends_counter(store):
    assert store.unique_slug("tesla-ships-fsd-v14") == "tesla-ships-fsd-v14"
    store.create_article(_article())
    assert store.unique_slug("tesla-ships-fsd-v14") == "tesla-ships-fsd-v14-2"
    store.create_article(
        _article(
            natural_key="https://example.com/b",
            title="B",
            slug="tesla-ships-fsd-v14-2",
            published_at="2025-11-21T11:00:00.000Z",
        )
    )
    assert store.unique_slug("tesla-ships-fsd-v14") == "tesla-ships-fsd-v14-3"


def test_second_create_with_same_natural_key_is_a_duplicate(store):
    store.create_article(_article())
    with pytest.raises(DuplicateDetected):
        store.create_article(_article(slug="other-slug"))
    assert store.count_articles() == 1


def test_article_round_trip_by_slug(store):
    store.create_article(_article())
    stored = store.get_article_by_slug("tesla-ships-fsd-v14")
    assert stored["content_image_refs"] == ["image-def-1200x800-jpg"]
    assert stored["is_published"] is True
    assert "title_key" not in stored
    assert store.get_article_by_slug("missing") is None
    assert [row["slug"] for row in store.list_recent_articles()] == ["tesla-ships-fsd-v14"]


def test_sync_runs_are_recorded(store):
    assert store.last_sync_run() is None
    summary = RunSummary(
        success=True,
        started_at="2025-11-21T10:00:00.000Z",
        finished_at="2025-11-21T10:01:00.000Z",
        fetched=3,
        imported=1,
        failed=1,
        skipped=1,
        duplicates=1,
        too_old=0,
        remaining=0,
        errors=["A: boom"],
        message="imported 1, failed 1, skipped 1",
    )
    store.record_sync_run(summary)
    last = store.last_sync_run()
    assert last["imported"] == 1
    assert last["errors"] == ["A: boom"]


class _InterleavingConn:
    """Starts a competing create while the first article's insert is pending."""

    def __init__(self, conn, competitor):
        self._conn = conn
        self._competitor = competitor
        self.thread = None

    def execute(self, sql, params=()):
        if self.thread is None and sql.startswith("INSERT INTO articles"):
            self.thread = threading.Thread(target=self._competitor)
            self.thread.start()
            cursor = self._conn.execute(sql, params)
            self.thread.join(timeout=0.2)
            return cursor
        return self._conn.execute(sql, params)

    def __getattr__(self, name):
        return getattr(self._conn, name)


def test_failed_concurrent_create_does_not_discard_pending_insert(store):
    outcomes = []

    def _competitor():
        try:
            store.create_article(_article(slug="other-slug"))
        except DuplicateDetected:
            outcomes.append("duplicate")

    store.conn = _InterleavingConn(store.conn, _competitor)
    store.create_article(_article())
    store.conn.thread.join(timeout=5)
    assert outcomes == ["duplicate"]
    assert store.count_articles() == 1
