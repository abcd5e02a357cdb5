from __future__ import annotations

import logging

from ..cache import TTLCache
from ..config import SourceConfig
from ..http import Fetcher
from .base import SourceAdapter, dedupe_by_natural_key, fetch_all_sources, keyword_match
from .rss import RssAdapter
from .wordpress import WordPressAdapter


def build_adapter(
    source: SourceConfig,
    fetcher: Fetcher,
    media_cache: TTLCache[str] | None = None,
    logger: logging.Logger | None = None,
) -> SourceAdapter:
    if source.kind == "wordpress":
        return WordPressAdapter(source, fetcher, media_cache=media_cache, logger=logger)
    if source.kind == "rss":
        return RssAdapter(source, fetcher, logger=logger)
    raise ValueError(f"unsupported source kind: {source.kind}")


__all__ = [
    "RssAdapter",
    "SourceAdapter",
    "WordPressAdapter",
    "build_adapter",
    "dedupe_by_natural_key",
    "fetch_all_sources",
    "keyword_match",
]
