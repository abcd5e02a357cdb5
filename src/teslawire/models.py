from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .utils import format_instant, normalize_guid, normalize_title


@dataclass(frozen=True)
class RawArticle:
    natural_id: str
    source_name: str
    source_id: str
    family: str
    title: str
    summary: str
    body_html: str
    canonical_url: str
    image_url: str | None
    published_at: datetime

    @property
    def natural_key(self) -> str:
        return normalize_guid(self.natural_id or self.canonical_url)

    @property
    def title_key(self) -> str:
        return normalize_title(self.title)

    @property
    def published_key(self) -> str:
        return format_instant(self.published_at)


@dataclass(frozen=True)
class ScrapeResult:
    url: str
    success: bool
    plain_text: str
    cleaned_html: str
    hero_image_url: str | None = None
    strategy: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class EnrichedArticle:
    natural_key: str
    source_name: str
    source_id: str
    title: str
    summary: str
    body_html: str
    canonical_url: str
    image_url: str | None
    published_at: str
    slug: str
    title_translated: str
    summary_translated: str
    body_plain_text: str
    body_html_translated: str
    hero_image_ref: str | None
    content_image_refs: tuple[str, ...]
    is_published: bool = True


class ArticleState(str, Enum):
    FETCHED = "FETCHED"
    DEDUPED = "DEDUPED"
    SCRAPED = "SCRAPED"
    SANITIZED = "SANITIZED"
    IMAGES_UPLOADED = "IMAGES_UPLOADED"
    ENRICHED = "ENRICHED"
    PERSISTED = "PERSISTED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ArticleOutcome:
    natural_key: str
    title: str
    source_name: str
    state: ArticleState
    reason: str | None = None
    error: str | None = None
    slug: str | None = None


@dataclass(frozen=True)
class SourceReport:
    source_id: str
    status: str
    found_count: int
    accepted_count: int
    error: str | None = None


@dataclass(frozen=True)
class RunSummary:
    success: bool
    started_at: str
    finished_at: str
    fetched: int
    imported: int
    failed: int
    skipped: int
    duplicates: int
    too_old: int
    remaining: int
    errors: list[str]
    outcomes: list[ArticleOutcome] = field(default_factory=list)
    sources: list[SourceReport] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "fetched": self.fetched,
            "imported": self.imported,
            "failed": self.failed,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "too_old": self.too_old,
            "remaining": self.remaining,
            "errors": list(self.errors),
            "sources": [
                {
                    "source_id": report.source_id,
                    "status": report.status,
                    "found_count": report.found_count,
                    "accepted_count": report.accepted_count,
                    "error": report.error,
                }
                for report in self.sources
            ],
            "articles": [
                {
                    "natural_key": outcome.natural_key,
                    "title": outcome.title,
                    "source_name": outcome.source_name,
                    "state": outcome.state.value,
                    "reason": outcome.reason,
                    "error": outcome.error,
                    "slug": outcome.slug,
                }
                for outcome in self.outcomes
            ],
        }
