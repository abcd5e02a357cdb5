from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

from .adapters import SourceAdapter, build_adapter, fetch_all_sources
from .assets import build_asset_store
from .cache import TTLCache
from .config import Config
from .enrichment import EnrichmentEngine
from .errors import DuplicateDetected, EnrichmentRejected, PipelineError
from .http import Fetcher
from .images import ImageUploader, collect_images, rewrite_image_urls
from .llm import ChatClient
from .models import (
    ArticleOutcome,
    ArticleState,
    EnrichedArticle,
    RawArticle,
    RunSummary,
    SourceReport,
)
from .sanitize import extract_plain_text, sanitize
from .scraper import ArticleScraper
from .storage import ArticleStore
from .utils import log_event, slugify, utc_now_iso


@dataclass
class PipelineCaches:
    """Process-lifetime caches shared by consecutive runs."""

    scrape: TTLCache | None = None
    translation: TTLCache | None = None
    media: TTLCache | None = None

    @classmethod
    def from_config(cls, config: Config) -> "PipelineCaches":
        return cls(
            scrape=TTLCache(config.scraper.cache_ttl_seconds, config.scraper.cache_max_entries),
            translation=TTLCache(config.enrichment.cache_ttl_seconds, config.enrichment.cache_max_entries),
            media=TTLCache(86400, 512),
        )


class SyncOrchestrator:
    """Runs one sync batch: fetch, dedupe, floor, store check, per-article stages.

    Articles are processed one after another. A stage failure finishes only
    that article; the run always ends with a ``RunSummary``.
    """

    def __init__(
        self,
        config: Config,
        adapters: list[SourceAdapter],
        store: ArticleStore,
        scraper: ArticleScraper,
        uploader: ImageUploader,
        asset_store,
        engine: EnrichmentEngine,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.adapters = adapters
        self.store = store
        self.scraper = scraper
        self.uploader = uploader
        self.asset_store = asset_store
        self.engine = engine
        self.logger = logger or logging.getLogger("teslawire.sync")
        self._sleep = sleep

    def run(self) -> RunSummary:
        started_at = utc_now_iso()
        outcomes: list[ArticleOutcome] = []
        reports: list[SourceReport] = []
        fetched = 0
        remaining = 0
        fatal: str | None = None
        log_event(self.logger, logging.INFO, "sync_started", sources=len(self.adapters))
        try:
            articles, reports = fetch_all_sources(self.adapters, logger=self.logger)
            fetched = len(articles)
            candidates, skipped = self._select(articles)
            outcomes.extend(skipped)
            cap = self.config.sync.max_articles_per_run
            batch = candidates[:cap]
            remaining = len(candidates) - len(batch)
            for index, article in enumerate(batch):
                if index:
                    self._sleep(self.config.sync.article_delay_seconds)
                outcomes.append(self.process_article(article))
        except Exception as exc:  # noqa: BLE001
            fatal = str(exc)
            log_event(self.logger, logging.ERROR, "sync_aborted", error=fatal)

        summary = self._summarize(started_at, fetched, remaining, outcomes, reports, fatal)
        try:
            self.store.record_sync_run(summary)
        except PipelineError as exc:
            log_event(self.logger, logging.ERROR, "sync_run_record_failed", error=str(exc))
        log_event(
            self.logger,
            logging.INFO,
            "sync_finished",
            success=summary.success,
            fetched=summary.fetched,
            imported=summary.imported,
            failed=summary.failed,
            skipped=summary.skipped,
            remaining=summary.remaining,
        )
        return summary

    def _select(self, articles: list[RawArticle]) -> tuple[list[RawArticle], list[ArticleOutcome]]:
        keys = set(self.config.sync.dedup_keys)
        floor = self.config.sync.min_published_at
        skipped: list[ArticleOutcome] = []
        seen_keys: set[str] = set()
        seen_titles: set[str] = set()
        seen_instants: set[str] = set()
        candidates: list[RawArticle] = []

        for article in articles:
            reason = None
            if article.natural_key in seen_keys:
                reason = "duplicate:batch_natural_key"
            elif "title" in keys and article.title_key in seen_titles:
                reason = "duplicate:batch_title"
            elif "published_at" in keys and article.published_key in seen_instants:
                reason = "duplicate:batch_published_at"
            if reason:
                skipped.append(self._skip(article, reason))
                continue
            seen_keys.add(article.natural_key)
            seen_titles.add(article.title_key)
            seen_instants.add(article.published_key)

            if floor is not None and article.published_at < floor:
                skipped.append(self._skip(article, "too_old"))
                continue
            stored = self._stored_match(article)
            if stored:
                skipped.append(self._skip(article, f"duplicate:{stored}"))
                continue
            self._transition(article, ArticleState.DEDUPED)
            candidates.append(article)

        candidates.sort(key=lambda item: item.published_at, reverse=True)
        return candidates, skipped

    def _stored_match(self, article: RawArticle) -> str | None:
        keys = self.config.sync.dedup_keys
        if "natural_key" in keys and self.store.exists_natural_key(article.natural_key):
            return "natural_key"
        if "title" in keys and self.store.exists_title(article.title):
            return "title"
        if "published_at" in keys and self.store.exists_published_at(article.published_key):
            return "published_at"
        return None

    def _transition(self, article: RawArticle, state: ArticleState, **fields: object) -> None:
        log_event(
            self.logger,
            logging.DEBUG if state not in (ArticleState.PERSISTED, ArticleState.FAILED) else logging.INFO,
            "article_state",
            natural_key=article.natural_key,
            state=state.value,
            **fields,
        )

    def _skip(self, article: RawArticle, reason: str) -> ArticleOutcome:
        log_event(
            self.logger,
            logging.INFO,
            "article_skipped",
            natural_key=article.natural_key,
            reason=reason,
        )
        return ArticleOutcome(
            natural_key=article.natural_key,
            title=article.title,
            source_name=article.source_name,
            state=ArticleState.SKIPPED,
            reason=reason,
        )

    def process_article(self, article: RawArticle) -> ArticleOutcome:
        try:
            enriched = self._enrich(article)
            if self._stored_match(article):
                return self._skip(article, "duplicate:on_write")
            enriched = _with_slug(enriched, self.store.unique_slug(enriched.slug))
            self.store.create_article(enriched)
        except DuplicateDetected as exc:
            return self._skip(article, f"duplicate:{exc.reason}")
        except PipelineError as exc:
            return self._fail(article, exc.reason, str(exc))
        except Exception as exc:  # noqa: BLE001
            return self._fail(article, "unexpected", str(exc))
        self._transition(article, ArticleState.PERSISTED, slug=enriched.slug)
        return ArticleOutcome(
            natural_key=article.natural_key,
            title=article.title,
            source_name=article.source_name,
            state=ArticleState.PERSISTED,
            slug=enriched.slug,
        )

    def _fail(self, article: RawArticle, reason: str, error: str) -> ArticleOutcome:
        log_event(
            self.logger,
            logging.WARNING,
            "article_failed",
            natural_key=article.natural_key,
            reason=reason,
            error=error,
        )
        return ArticleOutcome(
            natural_key=article.natural_key,
            title=article.title,
            source_name=article.source_name,
            state=ArticleState.FAILED,
            reason=reason,
            error=error,
        )

    def _source_for(self, article: RawArticle):
        for adapter in self.adapters:
            if adapter.source.id == article.source_id:
                return adapter.source
        return None

    def _enrich(self, article: RawArticle) -> EnrichedArticle:
        source = self._source_for(article)
        strip_links = bool(source and source.strip_links)
        referral = self.config.referral.replacement_url
        attribution = self.config.enrichment.attribution_terms

        cleaned_html = ""
        hero_url = None
        if self.config.sync.scrape_enabled and article.canonical_url:
            result = self.scraper.scrape(article.canonical_url, article.family, strip_links=strip_links)
            if result.success:
                cleaned_html = result.cleaned_html
                hero_url = result.hero_image_url
            else:
                log_event(
                    self.logger,
                    logging.INFO,
                    "scrape_fallback",
                    natural_key=article.natural_key,
                    error=result.error,
                )
        self._transition(article, ArticleState.SCRAPED, scraped=bool(cleaned_html))

        if not cleaned_html:
            cleaned_html = sanitize(
                article.body_html,
                article.family,
                strip_links=strip_links,
                base_url=article.canonical_url,
                hero_image_url=article.image_url,
                referral_url=referral,
            )
        full_text = extract_plain_text(cleaned_html, attribution) or article.summary
        self._transition(article, ArticleState.SANITIZED, chars=len(full_text))
        if not full_text.strip():
            raise EnrichmentRejected("no_source_text", article.canonical_url)

        hero_url = hero_url or article.image_url
        limit = self.config.images.max_images_per_article
        content_images = collect_images(cleaned_html, article.canonical_url)[:limit]
        wanted = ([hero_url] if hero_url else []) + [url for url in content_images if url != hero_url]
        asset_map = self.uploader.upload(wanted)
        self._transition(article, ArticleState.IMAGES_UPLOADED, images=len(asset_map))

        title_translated = self.engine.translate(article.title)
        summary_translated = self.engine.translate(article.summary) if article.summary else ""
        generated = self.engine.generate_article_html(
            article.title, article.summary, full_text, content_images
        )
        body = rewrite_image_urls(generated, asset_map, self._content_url)
        self._transition(article, ArticleState.ENRICHED)

        content_refs = tuple(
            ref for url, ref in asset_map.items() if url != hero_url and self._content_url(ref) in body
        )
        return EnrichedArticle(
            natural_key=article.natural_key,
            source_name=article.source_name,
            source_id=article.source_id,
            title=article.title,
            summary=article.summary,
            body_html=cleaned_html,
            canonical_url=article.canonical_url,
            image_url=article.image_url,
            published_at=article.published_key,
            slug=slugify(article.title),
            title_translated=title_translated,
            summary_translated=summary_translated,
            body_plain_text=full_text,
            body_html_translated=body,
            hero_image_ref=asset_map.get(hero_url) if hero_url else None,
            content_image_refs=content_refs,
        )

    def _content_url(self, asset_ref: str) -> str:
        images = self.config.images
        return self.asset_store.url_for(asset_ref, width=images.cdn_width, height=images.cdn_height)

    def _summarize(
        self,
        started_at: str,
        fetched: int,
        remaining: int,
        outcomes: list[ArticleOutcome],
        reports: list[SourceReport],
        fatal: str | None,
    ) -> RunSummary:
        imported = sum(1 for item in outcomes if item.state == ArticleState.PERSISTED)
        failed = [item for item in outcomes if item.state == ArticleState.FAILED]
        skipped = [item for item in outcomes if item.state == ArticleState.SKIPPED]
        duplicates = sum(1 for item in skipped if (item.reason or "").startswith("duplicate"))
        too_old = sum(1 for item in skipped if item.reason == "too_old")

        errors: list[str] = []
        if fatal:
            errors.append(f"run aborted: {fatal}")
        errors.extend(
            f"source {report.source_id}: {report.error}" for report in reports if report.error
        )
        errors.extend(f"{item.title}: {item.error}" for item in failed)
        errors = errors[: self.config.sync.max_errors_in_summary]

        if fatal:
            message = f"sync aborted: {fatal}"
        else:
            message = f"imported {imported}, failed {len(failed)}, skipped {len(skipped)}"
        return RunSummary(
            success=fatal is None,
            started_at=started_at,
            finished_at=utc_now_iso(),
            fetched=fetched,
            imported=imported,
            failed=len(failed),
            skipped=len(skipped),
            duplicates=duplicates,
            too_old=too_old,
            remaining=remaining,
            errors=errors,
            outcomes=outcomes,
            sources=reports,
            message=message,
        )


def _with_slug(article: EnrichedArticle, slug: str) -> EnrichedArticle:
    if article.slug == slug:
        return article
    return replace(article, slug=slug)


def build_orchestrator(
    config: Config,
    store: ArticleStore,
    caches: PipelineCaches | None = None,
    logger: logging.Logger | None = None,
) -> SyncOrchestrator:
    caches = caches or PipelineCaches.from_config(config)
    fetcher = Fetcher(config.http)
    adapters = [
        build_adapter(source, fetcher, media_cache=caches.media)
        for source in config.enabled_sources()
    ]
    asset_store = build_asset_store(config.assets, config.paths.assets_dir)
    return SyncOrchestrator(
        config=config,
        adapters=adapters,
        store=store,
        scraper=ArticleScraper(fetcher, config.scraper, cache=caches.scrape, referral=config.referral),
        uploader=ImageUploader(fetcher, asset_store, config.images),
        asset_store=asset_store,
        engine=EnrichmentEngine(
            ChatClient(config.llm),
            config.llm,
            config.enrichment,
            config.app,
            cache=caches.translation,
        ),
        logger=logger,
    )
