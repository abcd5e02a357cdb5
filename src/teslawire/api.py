from __future__ import annotations

import hmac
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Config, ConfigError, load_config
from .db import connect_db
from .errors import PersistenceError
from .models import RunSummary
from .storage import ArticleStore
from .sync import PipelineCaches, build_orchestrator
from .utils import configure_logging, log_event, utc_now_iso

app = FastAPI(title="teslawire sync API")

logger = logging.getLogger("teslawire.api")

SYNC_PATH = "/sync"


@dataclass
class Runtime:
    config: Config
    store: ArticleStore
    caches: PipelineCaches


_config: Config | None = None
_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_config() -> Config:
    global _config
    with _runtime_lock:
        if _config is None:
            _config = load_config()
        return _config


def get_runtime(config: Config = Depends(get_config)) -> Runtime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            try:
                store = ArticleStore(connect_db(config.paths.state_db))
            except Exception as exc:
                raise PersistenceError("store_unavailable", str(exc)) from exc
            _runtime = Runtime(config=config, store=store, caches=PipelineCaches.from_config(config))
        return _runtime


def _presented_secret(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.query_params.get("secret")


def _require_sync_secret(request: Request, config: Config = Depends(get_config)) -> None:
    secret = config.sync_secret
    if not secret:
        return
    presented = _presented_secret(request) or ""
    if not hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="unauthorized")


class SyncRequest(BaseModel):
    max_articles: int | None = Field(default=None, ge=0)
    scrape: bool | None = None


def _failed_summary(started_at: str, error: str, message: str) -> dict[str, object]:
    return RunSummary(
        success=False,
        started_at=started_at,
        finished_at=utc_now_iso(),
        fetched=0,
        imported=0,
        failed=0,
        skipped=0,
        duplicates=0,
        too_old=0,
        remaining=0,
        errors=[error],
        message=message,
    ).to_dict()


@app.exception_handler(ConfigError)
def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    log_event(logger, logging.ERROR, "config_invalid", error=str(exc))
    if request.url.path == SYNC_PATH:
        return JSONResponse(_failed_summary(utc_now_iso(), str(exc), "config invalid"), status_code=200)
    return JSONResponse({"success": False, "error": "config_invalid", "detail": str(exc)}, status_code=500)


@app.exception_handler(PersistenceError)
def _store_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    log_event(logger, logging.ERROR, "store_unavailable", path=request.url.path, error=str(exc))
    if request.url.path == SYNC_PATH:
        return JSONResponse(_failed_summary(utc_now_iso(), str(exc), "store unavailable"), status_code=200)
    return JSONResponse({"success": False, "error": exc.reason, "detail": exc.detail}, status_code=503)


@app.on_event("startup")
def _startup() -> None:
    configure_logging("teslawire")


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


def _run_sync(runtime: Runtime, payload: SyncRequest) -> JSONResponse:
    config = runtime.config
    sync_overrides: dict[str, object] = {}
    if payload.max_articles is not None:
        sync_overrides["max_articles_per_run"] = payload.max_articles
    if payload.scrape is not None:
        sync_overrides["scrape_enabled"] = payload.scrape
    if sync_overrides:
        config = replace(config, sync=replace(config.sync, **sync_overrides))
    started_at = utc_now_iso()
    try:
        summary = build_orchestrator(config, runtime.store, runtime.caches).run().to_dict()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "sync_crashed", error=str(exc))
        summary = _failed_summary(started_at, str(exc), f"sync crashed: {exc}")
    return JSONResponse(summary, status_code=200)


@app.post(SYNC_PATH, dependencies=[Depends(_require_sync_secret)])
def sync_post(payload: SyncRequest | None = None, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    return _run_sync(runtime, payload or SyncRequest())


@app.get(SYNC_PATH, dependencies=[Depends(_require_sync_secret)])
def sync_get(max_articles: int | None = None, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    if max_articles is not None and max_articles < 0:
        raise HTTPException(status_code=400, detail="max_articles must be >= 0")
    return _run_sync(runtime, SyncRequest(max_articles=max_articles))


@app.get("/status")
def status(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    return {
        "articles": runtime.store.count_articles(),
        "last_run": runtime.store.last_sync_run(),
        "sources": [
            {
                "id": source.id,
                "name": source.name,
                "kind": source.kind,
                "url": source.url,
                "family": source.family,
                "enabled": source.enabled,
            }
            for source in runtime.config.sources
        ],
    }


@app.get("/articles/{slug}")
def article_by_slug(slug: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    article = runtime.store.get_article_by_slug(slug)
    if article is None or not article.get("is_published"):
        raise HTTPException(status_code=404, detail="article_not_found")
    return article


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("teslawire")
    except Exception:  # noqa: BLE001
        return "unknown"
