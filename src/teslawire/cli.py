from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace

from .adapters import build_adapter, fetch_all_sources
from .config import ConfigError, load_config
from .db import connect_db
from .http import Fetcher
from .storage import ArticleStore
from .sync import build_orchestrator
from .utils import configure_logging, json_dumps, log_event


def _cmd_sync(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    overrides: dict[str, object] = {}
    if args.max_articles is not None:
        overrides["max_articles_per_run"] = args.max_articles
    if args.no_scrape:
        overrides["scrape_enabled"] = False
    if overrides:
        config = replace(config, sync=replace(config.sync, **overrides))

    store = ArticleStore(connect_db(config.paths.state_db))
    summary = build_orchestrator(config, store, logger=logger).run()
    if args.json:
        sys.stdout.write(json_dumps(summary.to_dict()) + "\n")
    for error in summary.errors:
        log_event(logger, logging.WARNING, "sync_error", error=error)
    log_event(
        logger,
        logging.INFO,
        "sync_summary",
        success=summary.success,
        imported=summary.imported,
        failed=summary.failed,
        skipped=summary.skipped,
        duplicates=summary.duplicates,
        too_old=summary.too_old,
        remaining=summary.remaining,
    )
    return 0 if summary.success else 1


def _cmd_sources(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    sources = config.enabled_sources()
    if args.source_id:
        sources = [source for source in config.sources if source.id == args.source_id]
        if not sources:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1

    fetcher = Fetcher(config.http)
    adapters = [build_adapter(source, fetcher) for source in sources]
    articles, reports = fetch_all_sources(adapters, logger=logger)
    for report in reports:
        log_event(
            logger,
            logging.INFO,
            "source_report",
            source_id=report.source_id,
            status=report.status,
            found_count=report.found_count,
            accepted_count=report.accepted_count,
            error=report.error,
        )
    for article in articles[: args.limit]:
        log_event(
            logger,
            logging.INFO,
            "article_preview",
            source_id=article.source_id,
            published_at=article.published_key,
            natural_key=article.natural_key,
            image=bool(article.image_url),
            title=json_dumps(article.title),
        )
    return 0 if all(report.status == "ok" for report in reports) else 1


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    if args.config:
        os.environ["TW_CONFIG_PATH"] = args.config
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("teslawire.api:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="teslawire", description="Tesla news sync pipeline")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to TW_CONFIG_PATH, else built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run one sync batch")
    sync_parser.add_argument("--max-articles", type=int, default=None, help="Per-run article cap")
    sync_parser.add_argument("--no-scrape", action="store_true", help="Use feed bodies only")
    sync_parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    sync_parser.set_defaults(func=_cmd_sync)

    sources_parser = subparsers.add_parser("sources", help="Fetch sources and preview parsed items")
    sources_parser.add_argument("source_id", nargs="?", help="Only this source id")
    sources_parser.add_argument("--limit", type=int, default=20, help="Preview item limit")
    sources_parser.set_defaults(func=_cmd_sources)

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP trigger API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("teslawire")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
