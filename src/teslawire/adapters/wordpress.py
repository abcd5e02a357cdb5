from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import jsonschema

from ..cache import TTLCache
from ..config import SourceConfig
from ..errors import FetchError, ParseError, SourceFetchError
from ..http import JSON_ACCEPT, Fetcher
from ..images import collect_images, is_usable_image_url
from ..models import RawArticle
from ..utils import log_event, parse_published_at, strip_html, truncate
from .base import dedupe_by_natural_key, keyword_match
from .rss import clean_summary

EXCERPT_LIMIT = 300
EMBEDDED_SIZE_ORDER = ("large", "medium_large", "full")

_RENDERED = {
    "type": "object",
    "properties": {"rendered": {"type": "string"}},
    "required": ["rendered"],
}

POST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "link", "title"],
    "properties": {
        "id": {"type": "integer"},
        "link": {"type": "string", "minLength": 1},
        "date": {"type": ["string", "null"]},
        "date_gmt": {"type": ["string", "null"]},
        "guid": _RENDERED,
        "title": _RENDERED,
        "excerpt": _RENDERED,
        "content": _RENDERED,
        "featured_media": {"type": "integer", "minimum": 0},
        "_embedded": {"type": "object"},
    },
}

PAYLOAD_SCHEMA: dict[str, Any] = {"type": "array", "items": {"type": "object"}}


def _rendered(post: dict[str, Any], field: str) -> str:
    value = post.get(field) or {}
    if not isinstance(value, dict):
        return ""
    return value.get("rendered") or ""


def embedded_featured_image(post: dict[str, Any]) -> str | None:
    media_list = (post.get("_embedded") or {}).get("wp:featuredmedia") or []
    if not media_list or not isinstance(media_list[0], dict):
        return None
    media = media_list[0]
    sizes = (media.get("media_details") or {}).get("sizes") or {}
    for size in EMBEDDED_SIZE_ORDER:
        url = (sizes.get(size) or {}).get("source_url")
        if url and is_usable_image_url(url):
            return url
    url = media.get("source_url")
    if url and is_usable_image_url(url):
        return url
    return None


class WordPressAdapter:
    """Reads ``/wp/v2/posts`` with embedded featured media.

    Featured image resolution falls back from the embedded media sizes to a
    direct media lookup by ID (cached), then to the first usable image of
    the rendered content, then of the excerpt.
    """

    def __init__(
        self,
        source: SourceConfig,
        fetcher: Fetcher,
        media_cache: TTLCache[str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.fetcher = fetcher
        self.media_cache = media_cache or TTLCache(ttl_seconds=86400, max_entries=512)
        self.logger = logger or logging.getLogger("teslawire.adapters.wordpress")

    @property
    def api_root(self) -> str:
        url = self.source.url.split("?", 1)[0].rstrip("/")
        if url.endswith("/posts"):
            return url[: -len("/posts")]
        return url

    def posts_url(self) -> str:
        separator = "&" if "?" in self.source.url else "?"
        query = urlencode({"per_page": self.source.per_page, "_embed": "wp:featuredmedia"})
        return f"{self.source.url}{separator}{query}"

    def fetch(self) -> list[RawArticle]:
        try:
            response = self.fetcher.get(self.posts_url(), accept=JSON_ACCEPT)
            payload = response.json()
        except FetchError as exc:
            raise SourceFetchError("source_unreachable", str(exc)) from exc
        try:
            jsonschema.validate(payload, PAYLOAD_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ParseError("payload_invalid", exc.message) from exc

        articles: list[RawArticle] = []
        for post in payload:
            try:
                article = self.parse_post(post)
            except ParseError as exc:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "wp_post_dropped",
                    source_id=self.source.id,
                    reason=exc.reason,
                    detail=exc.detail,
                )
                continue
            if article is not None:
                articles.append(article)
        return dedupe_by_natural_key(articles)

    def parse_post(self, post: dict[str, Any]) -> RawArticle | None:
        try:
            jsonschema.validate(post, POST_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ParseError("post_invalid", f"id={post.get('id')} {exc.message}") from exc
        title = strip_html(_rendered(post, "title"))
        if not title:
            raise ParseError("missing_title", str(post.get("id")))
        published_at = parse_published_at(post.get("date_gmt") or post.get("date"))
        if published_at is None:
            raise ParseError("unparseable_date", f"id={post.get('id')}")
        excerpt_html = _rendered(post, "excerpt")
        content_html = _rendered(post, "content")
        summary = truncate(clean_summary(excerpt_html), EXCERPT_LIMIT)
        if not keyword_match(self.source, title, summary, strip_html(content_html)):
            log_event(self.logger, logging.DEBUG, "wp_post_filtered", source_id=self.source.id, post_id=post["id"])
            return None
        link = post["link"]
        return RawArticle(
            natural_id=link,
            source_name=self.source.name,
            source_id=self.source.id,
            family=self.source.family,
            title=title,
            summary=summary,
            body_html=content_html,
            canonical_url=link,
            image_url=self.featured_image(post, content_html, excerpt_html),
            published_at=published_at,
        )

    def featured_image(self, post: dict[str, Any], content_html: str, excerpt_html: str) -> str | None:
        url = embedded_featured_image(post)
        if url:
            return url
        media_id = post.get("featured_media") or 0
        if media_id:
            url = self.lookup_media(int(media_id))
            if url:
                return url
        link = post.get("link")
        for html in (content_html, excerpt_html):
            images = collect_images(html, link) if html else []
            if images:
                return images[0]
        return None

    def lookup_media(self, media_id: int) -> str | None:
        key = (self.api_root, media_id)
        cached = self.media_cache.get(key)
        if cached is not None:
            return cached or None
        url = f"{self.api_root}/media/{media_id}?_fields=source_url,media_details"
        try:
            media = self.fetcher.get(url, accept=JSON_ACCEPT).json()
        except FetchError as exc:
            log_event(self.logger, logging.WARNING, "wp_media_lookup_failed", media_id=media_id, error=str(exc))
            return None
        resolved = embedded_featured_image({"_embedded": {"wp:featuredmedia": [media]}}) if isinstance(media, dict) else None
        self.media_cache.set(key, resolved or "")
        return resolved
