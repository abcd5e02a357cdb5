from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit

import feedparser

from ..config import SourceConfig
from ..errors import FetchError, ParseError, SourceFetchError
from ..http import FEED_ACCEPT, Fetcher
from ..images import is_usable_image_url, pick_hero_image, resolve_image_url
from ..models import RawArticle
from ..utils import log_event, parse_published_at, strip_html
from .base import dedupe_by_natural_key, keyword_match

_APPEARED_FIRST_RE = re.compile(r"\s*The post .*? appeared first on .*?$", re.IGNORECASE | re.DOTALL)


def clean_summary(description: str) -> str:
    return _APPEARED_FIRST_RE.sub("", strip_html(description or "")).strip()


def _entry_body(entry: Any) -> str:
    content = entry.get("content") or []
    for item in content:
        value = item.get("value") if isinstance(item, dict) else None
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def _media_image(entry: Any, base_url: str | None) -> str | None:
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            medium = (media.get("medium") or "").lower()
            media_type = (media.get("type") or "").lower()
            if medium and medium != "image":
                continue
            if media_type and not media_type.startswith("image/"):
                continue
            url = resolve_image_url(media.get("url"), base_url)
            if url and is_usable_image_url(url):
                return url
    return None


def _enclosure_image(entry: Any, base_url: str | None) -> str | None:
    candidates = list(entry.get("enclosures") or [])
    candidates.extend(link for link in entry.get("links") or [] if link.get("rel") == "enclosure")
    for enclosure in candidates:
        if not (enclosure.get("type") or "").lower().startswith("image/"):
            continue
        url = resolve_image_url(enclosure.get("href") or enclosure.get("url"), base_url)
        if url and is_usable_image_url(url):
            return url
    return None


def entry_natural_id(guid: str, link: str) -> str:
    """Prefer the GUID, unless it only identifies the post through its query.

    WordPress feeds emit GUIDs like ``https://site/?p=123``; with the query
    stripped during normalization every item of the feed would share one key.
    """
    if not guid:
        return link
    split = urlsplit(guid)
    if link and split.scheme and split.netloc and split.query and split.path in ("", "/"):
        return link
    return guid


def lead_image(entry: Any, body_html: str, base_url: str | None) -> str | None:
    return (
        _media_image(entry, base_url)
        or (pick_hero_image(body_html, base_url) if body_html else None)
        or _enclosure_image(entry, base_url)
    )


class RssAdapter:
    def __init__(self, source: SourceConfig, fetcher: Fetcher, logger: logging.Logger | None = None) -> None:
        self.source = source
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("teslawire.adapters.rss")

    def fetch(self) -> list[RawArticle]:
        try:
            response = self.fetcher.get(self.source.url, accept=FEED_ACCEPT)
        except FetchError as exc:
            raise SourceFetchError("source_unreachable", str(exc)) from exc
        parsed = feedparser.parse(response.content)
        entries = parsed.entries or []
        if parsed.bozo:
            if not entries:
                raise ParseError("feed_unparseable", str(parsed.bozo_exception))
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                source_id=self.source.id,
                error=str(parsed.bozo_exception),
            )
        articles: list[RawArticle] = []
        for entry in entries:
            try:
                article = self.parse_entry(entry)
            except ParseError as exc:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "feed_item_dropped",
                    source_id=self.source.id,
                    reason=exc.reason,
                    detail=exc.detail,
                )
                continue
            if article is not None:
                articles.append(article)
        return dedupe_by_natural_key(articles)

    def parse_entry(self, entry: Any) -> RawArticle | None:
        """Build a ``RawArticle`` or return ``None`` when the keyword filter rejects it."""
        title = strip_html(entry.get("title") or "")
        link = (entry.get("link") or "").strip()
        guid = (entry.get("id") or "").strip()
        if not title:
            raise ParseError("missing_title", link or guid)
        if not link and not guid:
            raise ParseError("missing_link", title)
        raw_date = entry.get("published") or entry.get("updated")
        published_at = parse_published_at(raw_date)
        if published_at is None:
            raise ParseError("unparseable_date", f"{link or guid} date={raw_date!r}")
        description = entry.get("summary") or entry.get("description") or ""
        summary = clean_summary(description)
        body_html = _entry_body(entry)
        if not keyword_match(self.source, title, summary, strip_html(body_html)):
            log_event(self.logger, logging.DEBUG, "feed_item_filtered", source_id=self.source.id, link=link)
            return None
        canonical_url = link or guid
        return RawArticle(
            natural_id=entry_natural_id(guid, link),
            source_name=self.source.name,
            source_id=self.source.id,
            family=self.source.family,
            title=title,
            summary=summary,
            body_html=body_html,
            canonical_url=canonical_url,
            image_url=lead_image(entry, body_html, canonical_url),
            published_at=published_at,
        )
