from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import yaml

from .utils import parse_published_at


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    source_language: str
    target_language: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    assets_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float


@dataclass(frozen=True)
class SyncConfig:
    min_published_at: datetime | None
    max_articles_per_run: int
    article_delay_seconds: float
    max_errors_in_summary: int
    scrape_enabled: bool
    dedup_keys: list[str]


@dataclass(frozen=True)
class ScraperConfig:
    cache_ttl_seconds: int
    cache_max_entries: int
    min_content_chars: int
    min_container_chars: int
    referer: str


@dataclass(frozen=True)
class ImagesConfig:
    upload_delay_seconds: float
    max_images_per_article: int
    cdn_width: int
    cdn_height: int


@dataclass(frozen=True)
class AssetsConfig:
    backend: str
    base_url: str
    project_id: str
    dataset: str
    api_version: str
    token: str | None


@dataclass(frozen=True)
class LlmConfig:
    provider_type: str
    base_url: str
    translate_model: str
    generate_model: str
    timeout_seconds: int
    temperature: float
    max_tokens: int
    api_key: str | None


@dataclass(frozen=True)
class EnrichmentConfig:
    cache_ttl_seconds: int
    cache_max_entries: int
    min_paragraphs: int
    min_headings: int
    max_paragraph_chars: int
    attribution_terms: list[str]
    term_replacements: dict[str, str]


@dataclass(frozen=True)
class ReferralConfig:
    replacement_url: str


@dataclass(frozen=True)
class SourceConfig:
    id: str
    name: str
    kind: str
    url: str
    family: str
    strip_links: bool
    enabled: bool
    filter_keywords: list[str]
    require_all_keywords: bool
    per_page: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    sync: SyncConfig
    scraper: ScraperConfig
    images: ImagesConfig
    assets: AssetsConfig
    llm: LlmConfig
    enrichment: EnrichmentConfig
    referral: ReferralConfig
    sources: list[SourceConfig]
    sync_secret: str | None

    def enabled_sources(self) -> list[SourceConfig]:
        return [source for source in self.sources if source.enabled]


SOURCE_KINDS = ("rss", "wordpress")
ASSET_BACKENDS = ("local", "sanity")
DEDUP_KEYS = ("natural_key", "title", "published_at")
LLM_PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")

SOURCE_DEFAULTS: dict[str, Any] = {
    "id": "",
    "name": "",
    "kind": "rss",
    "url": "",
    "family": "default",
    "strip_links": False,
    "enabled": True,
    "filter_keywords": [],
    "require_all_keywords": False,
    "per_page": 10,
}

DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "teslawire",
        "source_language": "en",
        "target_language": "ar",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "assets_dir": "/data/assets",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "max_retries": 2,
        "backoff_seconds": 2.0,
    },
    "sync": {
        "min_published_at": "2025-11-20T00:00:00Z",
        "max_articles_per_run": 5,
        "article_delay_seconds": 0.5,
        "max_errors_in_summary": 50,
        "scrape_enabled": True,
        "dedup_keys": ["natural_key", "title", "published_at"],
    },
    "scraper": {
        "cache_ttl_seconds": 3600,
        "cache_max_entries": 256,
        "min_content_chars": 100,
        "min_container_chars": 500,
        "referer": "https://www.notateslaapp.com/",
    },
    "images": {
        "upload_delay_seconds": 0.5,
        "max_images_per_article": 12,
        "cdn_width": 1200,
        "cdn_height": 800,
    },
    "assets": {
        "backend": "local",
        "base_url": "/assets",
        "project_id": "",
        "dataset": "production",
        "api_version": "2021-06-07",
    },
    "llm": {
        "provider_type": "openai_compatible",
        "base_url": "https://api.openai.com/v1",
        "translate_model": "gpt-4o-mini",
        "generate_model": "gpt-4o",
        "timeout_seconds": 120,
        "temperature": 0.3,
        "max_tokens": 16000,
    },
    "enrichment": {
        "cache_ttl_seconds": 604800,
        "cache_max_entries": 2048,
        "min_paragraphs": 5,
        "min_headings": 2,
        "max_paragraph_chars": 1000,
        "attribution_terms": [
            "TESLARATI",
            "Teslarati",
            "teslarati.com",
            "Not a Tesla App",
            "notateslaapp.com",
        ],
        "term_replacements": {"تيسلا": "تسلا"},
    },
    "referral": {
        "replacement_url": "",
    },
    "sources": [
        {
            "id": "notateslaapp",
            "name": "Not a Tesla App",
            "kind": "rss",
            "url": "https://www.notateslaapp.com/rss",
            "family": "notateslaapp",
        },
        {
            "id": "teslarati-rss",
            "name": "TESLARATI",
            "kind": "rss",
            "url": "https://www.teslarati.com/category/tesla/feed/",
            "family": "teslarati",
            "strip_links": True,
        },
        {
            "id": "teslarati-wp",
            "name": "TESLARATI",
            "kind": "wordpress",
            "url": "https://www.teslarati.com/wp-json/wp/v2/posts",
            "family": "teslarati",
            "strip_links": True,
        },
    ],
}


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get("TW_CONFIG_PATH")
    overrides: dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigError(f"Unable to read config {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError("config file must contain a mapping")
        overrides = loaded
    return build_config(overrides)


def build_config(overrides: dict[str, Any]) -> Config:
    cfg = _merge(_deep_copy(DEFAULT_CONFIG), overrides)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    schema = {key: value for key, value in DEFAULT_CONFIG.items() if key != "sources"}
    body = {key: value for key, value in cfg.items() if key != "sources"}
    _validate_dict(body, schema, "config", errors)
    _validate_sources(cfg.get("sources"), errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            errors.append(f"missing {path}.{key}")
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if path == "config.sync.min_published_at":
        if value is not None and not isinstance(value, (str, datetime)):
            errors.append(f"{path} must be an ISO 8601 instant or null")
        return
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        if path.endswith("term_replacements"):
            for key, item in value.items():
                if not isinstance(key, str) or not isinstance(item, str):
                    errors.append(f"{path} must map strings to strings")
                    break
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_sources(value: Any, errors: list[str]) -> None:
    if not isinstance(value, list):
        errors.append("config.sources must be a list")
        return
    seen: set[str] = set()
    for index, item in enumerate(value):
        path = f"config.sources[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{path} must be an object")
            continue
        for key in item.keys():
            if key not in SOURCE_DEFAULTS:
                errors.append(f"unknown {path}.{key}")
        for key in ("id", "name", "url"):
            if not str(item.get(key) or "").strip():
                errors.append(f"missing {path}.{key}")
        for key, default in SOURCE_DEFAULTS.items():
            if key in item:
                _validate_value(item[key], default, f"{path}.{key}", errors)
        kind = item.get("kind", SOURCE_DEFAULTS["kind"])
        if kind not in SOURCE_KINDS:
            errors.append(f"{path}.kind must be one of {', '.join(SOURCE_KINDS)}")
        source_id = str(item.get("id") or "")
        if source_id in seen:
            errors.append(f"duplicate source id {source_id}")
        seen.add(source_id)


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    floor = cfg["sync"]["min_published_at"]
    if floor and parse_published_at(floor) is None:
        errors.append("config.sync.min_published_at must be an ISO 8601 instant")
    for key in cfg["sync"]["dedup_keys"]:
        if key not in DEDUP_KEYS:
            errors.append(f"config.sync.dedup_keys has unknown key {key}")
    if cfg["sync"]["max_articles_per_run"] < 0:
        errors.append("config.sync.max_articles_per_run must be >= 0")
    if cfg["llm"]["provider_type"] not in LLM_PROVIDER_TYPES:
        errors.append(f"config.llm.provider_type must be one of {', '.join(LLM_PROVIDER_TYPES)}")
    if cfg["assets"]["backend"] not in ASSET_BACKENDS:
        errors.append(f"config.assets.backend must be one of {', '.join(ASSET_BACKENDS)}")
    if cfg["assets"]["backend"] == "sanity" and not cfg["assets"]["project_id"]:
        errors.append("config.assets.project_id is required for the sanity backend")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    sync_cfg = cfg["sync"]
    scraper_cfg = cfg["scraper"]
    images_cfg = cfg["images"]
    assets_cfg = cfg["assets"]
    llm_cfg = cfg["llm"]
    enrichment_cfg = cfg["enrichment"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        source_language=str(app_cfg["source_language"]),
        target_language=str(app_cfg["target_language"]),
    )

    data_dir = os.environ.get("TW_DATA_DIR")
    if data_dir:
        paths = PathsConfig(
            data_dir=data_dir,
            state_db=os.path.join(data_dir, "state.sqlite3"),
            assets_dir=os.path.join(data_dir, "assets"),
        )
    else:
        paths = PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
            assets_dir=str(paths_cfg["assets_dir"]),
        )

    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=float(http_cfg["backoff_seconds"]),
    )

    floor = sync_cfg["min_published_at"]
    sync = SyncConfig(
        min_published_at=parse_published_at(floor) if floor else None,
        max_articles_per_run=int(sync_cfg["max_articles_per_run"]),
        article_delay_seconds=float(sync_cfg["article_delay_seconds"]),
        max_errors_in_summary=int(sync_cfg["max_errors_in_summary"]),
        scrape_enabled=bool(sync_cfg["scrape_enabled"]),
        dedup_keys=list(sync_cfg["dedup_keys"]),
    )

    scraper = ScraperConfig(
        cache_ttl_seconds=int(scraper_cfg["cache_ttl_seconds"]),
        cache_max_entries=int(scraper_cfg["cache_max_entries"]),
        min_content_chars=int(scraper_cfg["min_content_chars"]),
        min_container_chars=int(scraper_cfg["min_container_chars"]),
        referer=str(scraper_cfg["referer"]),
    )

    images = ImagesConfig(
        upload_delay_seconds=float(images_cfg["upload_delay_seconds"]),
        max_images_per_article=int(images_cfg["max_images_per_article"]),
        cdn_width=int(images_cfg["cdn_width"]),
        cdn_height=int(images_cfg["cdn_height"]),
    )

    assets = AssetsConfig(
        backend=str(assets_cfg["backend"]),
        base_url=str(assets_cfg["base_url"]),
        project_id=str(assets_cfg["project_id"]),
        dataset=str(assets_cfg["dataset"]),
        api_version=str(assets_cfg["api_version"]),
        token=_env_secret("TW_SANITY_TOKEN"),
    )

    llm = LlmConfig(
        provider_type=str(llm_cfg["provider_type"]),
        base_url=str(llm_cfg["base_url"]),
        translate_model=str(llm_cfg["translate_model"]),
        generate_model=str(llm_cfg["generate_model"]),
        timeout_seconds=int(llm_cfg["timeout_seconds"]),
        temperature=float(llm_cfg["temperature"]),
        max_tokens=int(llm_cfg["max_tokens"]),
        api_key=_env_secret("TW_LLM_API_KEY"),
    )

    enrichment = EnrichmentConfig(
        cache_ttl_seconds=int(enrichment_cfg["cache_ttl_seconds"]),
        cache_max_entries=int(enrichment_cfg["cache_max_entries"]),
        min_paragraphs=int(enrichment_cfg["min_paragraphs"]),
        min_headings=int(enrichment_cfg["min_headings"]),
        max_paragraph_chars=int(enrichment_cfg["max_paragraph_chars"]),
        attribution_terms=list(enrichment_cfg["attribution_terms"]),
        term_replacements=dict(enrichment_cfg["term_replacements"]),
    )

    return Config(
        app=app,
        paths=paths,
        http=http,
        sync=sync,
        scraper=scraper,
        images=images,
        assets=assets,
        llm=llm,
        enrichment=enrichment,
        referral=ReferralConfig(replacement_url=str(cfg["referral"]["replacement_url"])),
        sources=[_build_source(item) for item in cfg["sources"]],
        sync_secret=_env_secret("TW_SYNC_SECRET"),
    )


def _build_source(item: dict[str, Any]) -> SourceConfig:
    merged = {**SOURCE_DEFAULTS, **item}
    return SourceConfig(
        id=str(merged["id"]).strip(),
        name=str(merged["name"]).strip(),
        kind=str(merged["kind"]),
        url=str(merged["url"]).strip(),
        family=str(merged["family"] or "default"),
        strip_links=bool(merged["strip_links"]),
        enabled=bool(merged["enabled"]),
        filter_keywords=[str(keyword) for keyword in merged["filter_keywords"]],
        require_all_keywords=bool(merged["require_all_keywords"]),
        per_page=int(merged["per_page"]),
    )


def _env_secret(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict) and key != "term_replacements":
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
