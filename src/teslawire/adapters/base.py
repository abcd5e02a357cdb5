from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Protocol

from ..config import SourceConfig
from ..errors import PipelineError
from ..models import RawArticle, SourceReport
from ..utils import log_event


class SourceAdapter(Protocol):
    source: SourceConfig

    def fetch(self) -> list[RawArticle]:
        """Parsed articles of one upstream; raises ``SourceFetchError``/``ParseError``."""
        ...


def keyword_match(source: SourceConfig, *texts: str) -> bool:
    if not source.filter_keywords:
        return True
    combined = " ".join(text for text in texts if text).lower()
    hits = [keyword for keyword in source.filter_keywords if keyword.lower() in combined]
    if source.require_all_keywords:
        return len(hits) == len(source.filter_keywords)
    return bool(hits)


def dedupe_by_natural_key(articles: Iterable[RawArticle]) -> list[RawArticle]:
    """First occurrence wins; order is preserved."""
    seen: set[str] = set()
    unique: list[RawArticle] = []
    for article in articles:
        key = article.natural_key
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(article)
    return unique


def _fetch_one(adapter: SourceAdapter, logger: logging.Logger) -> tuple[list[RawArticle], SourceReport]:
    source_id = adapter.source.id
    try:
        articles = adapter.fetch()
    except PipelineError as exc:
        log_event(logger, logging.ERROR, "source_fetch_failed", source_id=source_id, reason=exc.reason, error=str(exc))
        return [], SourceReport(source_id=source_id, status="error", found_count=0, accepted_count=0, error=str(exc))
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "source_fetch_crashed", source_id=source_id, error=str(exc))
        return [], SourceReport(source_id=source_id, status="error", found_count=0, accepted_count=0, error=str(exc))
    unique = dedupe_by_natural_key(articles)
    log_event(logger, logging.INFO, "source_fetched", source_id=source_id, found_count=len(articles), unique=len(unique))
    return unique, SourceReport(
        source_id=source_id, status="ok", found_count=len(articles), accepted_count=len(unique)
    )


def fetch_all_sources(
    adapters: list[SourceAdapter],
    logger: logging.Logger | None = None,
    max_workers: int = 4,
) -> tuple[list[RawArticle], list[SourceReport]]:
    """Fetch every source in parallel; a failing source contributes zero articles.

    The combined batch is de-duplicated by natural key, keeping the copy from
    the earliest source in ``adapters`` order.
    """
    logger = logger or logging.getLogger("teslawire.adapters")
    if not adapters:
        return [], []
    workers = max(1, min(max_workers, len(adapters)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_fetch_one, adapter, logger) for adapter in adapters]
        results = [future.result() for future in futures]
    combined: list[RawArticle] = []
    reports: list[SourceReport] = []
    for articles, report in results:
        combined.extend(articles)
        reports.append(report)
    return dedupe_by_natural_key(combined), reports
