from __future__ import annotations

import hashlib

import pytest

from teslawire.config import build_config
from teslawire.db import connect_db
from teslawire.errors import FetchError
from teslawire.http import FetchResult
from teslawire.storage import ArticleStore

GOOD_ARTICLE_HTML = (
    "<p>First paragraph about the new update.</p>"
    "<p>Second paragraph with details.</p>"
    "<h2>What changed</h2>"
    "<p>Third paragraph.</p>"
    "<p>Fourth paragraph.</p>"
    "<h2>Availability</h2>"
    "<p>Fifth paragraph.</p>"
    "<p>Sixth paragraph.</p>"
)


def rss_feed(*items: str) -> tuple[str, str]:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        f"<channel><title>Example</title>{''.join(items)}</channel></rss>",
        "application/rss+xml",
    )


def rss_item(
    slug: str,
    title: str,
    pub_date: str = "Fri, 21 Nov 2025 10:00:00 +0000",
    body: str = "<p>Body text about the update.</p>",
) -> str:
    return (
        f"<item><title>{title}</title><link>https://example.com/{slug}/</link>"
        f"<pubDate>{pub_date}</pubDate><description>Teaser</description>"
        f"<content:encoded><![CDATA[{body}]]></content:encoded></item>"
    )


class FakeFetcher:
    """Serves canned responses by URL; anything unknown is a 404."""

    def __init__(self, responses: dict | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, dict | None]] = []

    def get(self, url, *, accept=None, headers=None, timeout=None):
        self.calls.append((url, headers))
        value = self.responses.get(url)
        if value is None:
            raise FetchError(url, "HTTP 404 Not Found", 404)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, tuple):
            content, content_type = value
        else:
            content, content_type = value, "text/html; charset=utf-8"
        if isinstance(content, str):
            content = content.encode("utf-8")
        return FetchResult(url=url, status=200, content=content, content_type=content_type)


class FakeChatClient:
    def __init__(self, article_html: str = GOOD_ARTICLE_HTML, fail: Exception | None = None) -> None:
        self.article_html = article_html
        self.fail = fail
        self.calls: list[tuple[str, str, str]] = []

    def complete(self, model, system, user, *, max_tokens=None, temperature=None):
        self.calls.append((model, system, user))
        if self.fail is not None:
            raise self.fail
        if "translator" in system:
            return f"ar:{user}"
        return self.article_html

    @property
    def translation_calls(self) -> int:
        return sum(1 for _, system, _ in self.calls if "translator" in system)


class FakeAssetStore:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []

    def upload(self, data, *, content_type, filename):
        digest = hashlib.sha1(data).hexdigest()[:12]
        self.uploads.append((filename, content_type))
        return f"image-{digest}-1200x800-jpg"

    def url_for(self, asset_ref, width=None, height=None):
        return f"https://cdn.test/{asset_ref}?w={width}&h={height}"


@pytest.fixture
def make_config(tmp_path):
    def _make(**sections):
        overrides = {
            "paths": {
                "data_dir": str(tmp_path),
                "state_db": str(tmp_path / "state.sqlite3"),
                "assets_dir": str(tmp_path / "assets"),
            },
            "http": {"max_retries": 0, "backoff_seconds": 0.0},
            "sync": {"article_delay_seconds": 0.0, "scrape_enabled": False},
            "images": {"upload_delay_seconds": 0.0},
            "sources": [
                {
                    "id": "feed",
                    "name": "Example Feed",
                    "kind": "rss",
                    "url": "https://example.com/feed",
                    "family": "default",
                }
            ],
        }
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(overrides.get(key), dict):
                overrides[key] = {**overrides[key], **value}
            else:
                overrides[key] = value
        return build_config(overrides)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def store(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    yield ArticleStore(conn)
    conn.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "TW_CONFIG_PATH",
        "TW_DATA_DIR",
        "TW_DB_URL",
        "TW_SYNC_SECRET",
        "TW_LLM_API_KEY",
        "TW_SANITY_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
