from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from bs4 import BeautifulSoup, Tag

from .cache import TTLCache
from .config import ReferralConfig, ScraperConfig
from .errors import FetchError, ScrapeError
from .http import HTML_ACCEPT, Fetcher
from .images import pick_hero_image
from .models import ScrapeResult
from .sanitize import get_family, html_to_text, marker, sanitize
from .utils import log_event

_CONTAINER_TOKENS = ("content", "article", "post")


@dataclass(frozen=True)
class Strategy:
    name: str
    locate: Callable[[BeautifulSoup, ScraperConfig], Tag | None]


def _article(soup: BeautifulSoup, config: ScraperConfig) -> Tag | None:
    return soup.find("article")


def _container(soup: BeautifulSoup, config: ScraperConfig) -> Tag | None:
    for div in soup.find_all("div"):
        label = marker(div).lower()
        if not any(token in label for token in _CONTAINER_TOKENS):
            continue
        if len(div.get_text(" ", strip=True)) > config.min_container_chars:
            return div
    return None


def _main(soup: BeautifulSoup, config: ScraperConfig) -> Tag | None:
    return soup.find("main")


def _body(soup: BeautifulSoup, config: ScraperConfig) -> Tag | None:
    body = soup.find("body") or soup
    for tag in body.find_all(["nav", "header", "footer", "aside", "script", "style"]):
        tag.decompose()
    return body


STRATEGIES = (
    Strategy("article", _article),
    Strategy("container", _container),
    Strategy("main", _main),
    Strategy("body", _body),
)


class ArticleScraper:
    """Fetches an article page and extracts its main content.

    Locator strategies run in order; the first fragment whose text reaches
    ``min_content_chars`` wins. ``scrape`` never raises: a ``ScrapeError``
    becomes a result with ``success=False`` and the caller falls back to the
    feed body.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: ScraperConfig,
        cache: TTLCache[ScrapeResult] | None = None,
        referral: ReferralConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.cache = cache or TTLCache(config.cache_ttl_seconds, config.cache_max_entries)
        self.referral_url = referral.replacement_url if referral else ""
        self.logger = logger or logging.getLogger("teslawire.scraper")

    def scrape(self, url: str, family: str | None = None, *, strip_links: bool = False) -> ScrapeResult:
        key = (url, family or "default", strip_links)
        cached = self.cache.get(key)
        if cached is not None:
            log_event(self.logger, logging.DEBUG, "scrape_cache_hit", url=url)
            return cached
        try:
            result = self._scrape(url, family, strip_links)
        except ScrapeError as exc:
            log_event(
                self.logger, logging.WARNING, "scrape_failed", url=url, reason=exc.reason, detail=exc.detail
            )
            return ScrapeResult(url=url, success=False, plain_text="", cleaned_html="", error=str(exc))
        self.cache.set(key, result)
        return result

    def _scrape(self, url: str, family: str | None, strip_links: bool) -> ScrapeResult:
        headers = {"Referer": self.config.referer} if self.config.referer else None
        try:
            response = self.fetcher.get(url, accept=HTML_ACCEPT, headers=headers)
        except FetchError as exc:
            raise ScrapeError("page_unreachable", str(exc)) from exc

        soup = BeautifulSoup(response.text(), "html.parser")
        profile = get_family(family)
        hero = pick_hero_image(soup, url) if profile.extract_hero else None

        for strategy in STRATEGIES:
            fragment = strategy.locate(soup, self.config)
            if fragment is None:
                continue
            cleaned = sanitize(
                str(fragment),
                profile.name,
                strip_links=strip_links,
                base_url=url,
                hero_image_url=hero,
                referral_url=self.referral_url,
            )
            text = html_to_text(cleaned)
            if len(text) < self.config.min_content_chars:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "scrape_strategy_short",
                    url=url,
                    strategy=strategy.name,
                    chars=len(text),
                )
                continue
            log_event(
                self.logger,
                logging.INFO,
                "scrape_ok",
                url=url,
                strategy=strategy.name,
                chars=len(text),
                hero=bool(hero),
            )
            return ScrapeResult(
                url=url,
                success=True,
                plain_text=text,
                cleaned_html=cleaned,
                hero_image_url=hero,
                strategy=strategy.name,
            )

        raise ScrapeError("content_too_short")
