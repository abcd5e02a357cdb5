import pytest

from teslawire.adapters import build_adapter
from teslawire.enrichment import EnrichmentEngine
from teslawire.images import ImageUploader
from teslawire.models import ArticleState
from teslawire.scraper import ArticleScraper
from teslawire.sync import SyncOrchestrator

from conftest import GOOD_ARTICLE_HTML, FakeAssetStore, FakeChatClient, FakeFetcher, rss_feed, rss_item

FEED_URL = "https://example.com/feed"


def _orchestrator(config, store, responses, chat=None):
    fetcher = FakeFetcher(responses)
    asset_store = FakeAssetStore()
    orchestrator = SyncOrchestrator(
        config=config,
        adapters=[build_adapter(source, fetcher) for source in config.enabled_sources()],
        store=store,
        scraper=ArticleScraper(fetcher, config.scraper),
        uploader=ImageUploader(fetcher, asset_store, config.images, sleep=lambda _: None),
        asset_store=asset_store,
        engine=EnrichmentEngine(chat or FakeChatClient(), config.llm, config.enrichment, config.app),
        sleep=lambda _: None,
    )
    return orchestrator


def _reasons(summary):
    return [outcome.reason for outcome in summary.outcomes if outcome.state == ArticleState.SKIPPED]


def test_new_articles_are_imported_once(config, store):
    responses = {
        FEED_URL: rss_feed(
            rss_item("a", "Model Y refresh arrives"),
            rss_item("b", "Cybertruck update", pub_date="Fri, 21 Nov 2025 12:00:00 +0000"),
        )
    }
    first = _orchestrator(config, store, responses).run()
    assert first.success is True
    assert first.imported == 2
    assert first.message == "imported 2, failed 0, skipped 0"
    assert store.count_articles() == 2

    chat = FakeChatClient()
    second = _orchestrator(config, store, responses, chat=chat).run()
    assert second.imported == 0
    assert second.skipped == 2
    assert second.duplicates == 2
    assert _reasons(second) == ["duplicate:natural_key", "duplicate:natural_key"]
    assert chat.calls == []
    assert store.count_articles() == 2


def test_stored_articles_never_reach_create(config, store, monkeypatch):
    responses = {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}
    _orchestrator(config, store, responses).run()

    def _no_create(article):
        raise AssertionError("create_article called for a stored article")

    monkeypatch.setattr(store, "create_article", _no_create)
    summary = _orchestrator(config, store, responses).run()
    assert summary.imported == 0
    assert summary.failed == 0


def test_same_instant_different_title_is_a_duplicate(config, store):
    responses = {
        FEED_URL: rss_feed(
            rss_item("a", "First headline"),
            rss_item("b", "Completely different headline"),
        )
    }
    summary = _orchestrator(config, store, responses).run()
    assert summary.imported == 1
    assert _reasons(summary) == ["duplicate:batch_published_at"]


def test_same_title_from_second_source_is_skipped_against_store(make_config, store):
    config = make_config(sync={"dedup_keys": ["natural_key", "title"]})
    _orchestrator(config, store, {FEED_URL: rss_feed(rss_item("a", "Model Y refresh"))}).run()
    summary = _orchestrator(
        config,
        store,
        {FEED_URL: rss_feed(rss_item("elsewhere", "model y  REFRESH", pub_date="Sat, 22 Nov 2025 08:00:00 +0000"))},
    ).run()
    assert _reasons(summary) == ["duplicate:title"]


def test_articles_older_than_floor_are_dropped(config, store):
    responses = {FEED_URL: rss_feed(rss_item("old", "Old news", pub_date="Sat, 01 Nov 2025 10:00:00 +0000"))}
    summary = _orchestrator(config, store, responses).run()
    assert summary.too_old == 1
    assert summary.imported == 0
    assert store.count_articles() == 0


def test_rejected_generation_fails_article_without_persisting(config, store):
    chat = FakeChatClient(article_html="<p>Too short</p><h2>One</h2>")
    responses = {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}
    summary = _orchestrator(config, store, responses, chat=chat).run()
    assert summary.success is True
    assert summary.failed == 1
    assert summary.outcomes[0].state == ArticleState.FAILED
    assert summary.outcomes[0].reason == "too_few_paragraphs"
    assert summary.errors and summary.errors[0].startswith("Model Y refresh arrives:")
    assert store.count_articles() == 0


def test_existence_is_rechecked_before_write(config, store, monkeypatch):
    calls = []

    def _exists(natural_key):
        calls.append(natural_key)
        return len(calls) > 1

    monkeypatch.setattr(store, "exists_natural_key", _exists)
    responses = {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}
    summary = _orchestrator(config, store, responses).run()
    assert _reasons(summary) == ["duplicate:on_write"]
    assert store.count_articles() == 0


def test_per_run_cap_processes_newest_first(make_config, store):
    config = make_config(sync={"max_articles_per_run": 1})
    responses = {
        FEED_URL: rss_feed(
            rss_item("a", "Older", pub_date="Fri, 21 Nov 2025 08:00:00 +0000"),
            rss_item("b", "Newest", pub_date="Fri, 21 Nov 2025 12:00:00 +0000"),
            rss_item("c", "Middle", pub_date="Fri, 21 Nov 2025 10:00:00 +0000"),
        )
    }
    summary = _orchestrator(config, store, responses).run()
    assert summary.imported == 1
    assert summary.remaining == 2
    assert store.get_article_by_slug("newest") is not None


def test_failing_source_is_reported_and_run_continues(make_config, store):
    config = make_config(
        sources=[
            {"id": "down", "name": "Down", "url": "https://down.example.com/feed"},
            {"id": "feed", "name": "Example Feed", "url": FEED_URL},
        ]
    )
    responses = {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}
    summary = _orchestrator(config, store, responses).run()
    assert summary.success is True
    assert summary.imported == 1
    assert summary.errors[0].startswith("source down:")


def test_images_are_uploaded_and_body_urls_rewritten(config, store):
    hero = "https://cdn.example.com/hero.jpg"
    inline = "https://cdn.example.com/inline.jpg"
    body = f'<p>Body text about the update.</p><img src="{hero}" width="1200" height="800"><img src="{inline}">'
    chat = FakeChatClient(article_html=GOOD_ARTICLE_HTML + f'<img src="{inline}" alt="">')
    responses = {
        FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives", body=body)),
        hero: (b"hero-bytes", "image/jpeg"),
        inline: (b"inline-bytes", "image/jpeg"),
    }
    summary = _orchestrator(config, store, responses, chat=chat).run()
    assert summary.imported == 1
    stored = store.get_article_by_slug("model-y-refresh-arrives")
    assert inline not in stored["body_html_translated"]
    assert "https://cdn.test/image-" in stored["body_html_translated"]
    assert stored["hero_image_ref"].startswith("image-")
    assert len(stored["content_image_refs"]) == 1
    assert stored["content_image_refs"][0] != stored["hero_image_ref"]
    assert stored["title_translated"] == "ar:Model Y refresh arrives"
    assert inline in chat.calls[-1][2]


def test_run_records_summary(config, store):
    _orchestrator(config, store, {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}).run()
    assert store.last_sync_run()["imported"] == 1


PARAGRAPH = "Tesla has started delivering the refreshed Model Y to customers in several markets. "


def test_scraped_page_feeds_prompt_images_and_hero(make_config, store):
    config = make_config(
        sync={"scrape_enabled": True},
        sources=[{"id": "feed", "name": "Teslarati", "kind": "rss", "url": FEED_URL, "family": "teslarati"}],
    )
    hero = "https://cdn.example.com/hero.jpg"
    inline = "https://cdn.example.com/inline.jpg"
    page = (
        f'<html><body><div class="featured-image"><img src="{hero}"></div>'
        f"<article><p>{PARAGRAPH * 2}</p><img src='{inline}'></article></body></html>"
    )
    chat = FakeChatClient()
    responses = {
        FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives")),
        "https://example.com/a/": page,
        hero: (b"hero-bytes", "image/jpeg"),
        inline: (b"inline-bytes", "image/jpeg"),
    }
    summary = _orchestrator(config, store, responses, chat=chat).run()
    assert summary.imported == 1
    stored = store.get_article_by_slug("model-y-refresh-arrives")
    assert "Tesla has started delivering" in stored["body_plain_text"]
    assert inline in stored["body_html"]
    assert hero not in stored["body_html"]
    assert stored["hero_image_ref"].startswith("image-")
    prompt = chat.calls[-1][2]
    assert "Tesla has started delivering" in prompt
    assert inline in prompt


@pytest.mark.parametrize(
    "page",
    [None, "<html><body><p>Subscribe to our newsletter.</p></body></html>"],
    ids=["unreachable", "short"],
)
def test_failed_scrape_falls_back_to_feed_body(make_config, store, page):
    config = make_config(sync={"scrape_enabled": True})
    responses = {FEED_URL: rss_feed(rss_item("a", "Model Y refresh arrives"))}
    if page is not None:
        responses["https://example.com/a/"] = page
    chat = FakeChatClient()
    summary = _orchestrator(config, store, responses, chat=chat).run()
    assert summary.imported == 1
    assert summary.failed == 0
    stored = store.get_article_by_slug("model-y-refresh-arrives")
    assert stored["body_plain_text"] == "Body text about the update."
    assert "Body text about the update." in chat.calls[-1][2]
