import pytest

from teslawire.config import DEFAULT_CONFIG, ConfigError, build_config, load_config, validate_config


def test_defaults_build_and_carry_three_sources():
    config = build_config({})
    assert [source.kind for source in config.sources] == ["rss", "rss", "wordpress"]
    assert config.sync.max_articles_per_run == 5
    assert config.sync.dedup_keys == ["natural_key", "title", "published_at"]
    assert config.enrichment.min_paragraphs == 5
    assert config.enrichment.min_headings == 2
    assert config.sync.min_published_at.isoformat() == "2025-11-20T00:00:00+00:00"


def test_yaml_file_overrides_are_merged(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "sync:\n  max_articles_per_run: 2\n"
        "sources:\n  - id: only\n    name: Only\n    url: https://example.com/rss\n",
        encoding="utf-8",
    )
    config = load_config(str(path))
    assert config.sync.max_articles_per_run == 2
    assert config.sync.article_delay_seconds == DEFAULT_CONFIG["sync"]["article_delay_seconds"]
    assert [source.id for source in config.sources] == ["only"]
    assert config.sources[0].family == "default"


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("app:\n  target_language: fr\n", encoding="utf-8")
    monkeypatch.setenv("TW_CONFIG_PATH", str(path))
    assert load_config().app.target_language == "fr"


def test_unknown_keys_and_bad_types_are_reported_together():
    errors = validate_config(
        {**DEFAULT_CONFIG, "sync": {**DEFAULT_CONFIG["sync"], "max_articles_per_run": "5", "extra": 1}}
    )
    assert "config.sync.max_articles_per_run must be an integer" in errors
    assert "unknown config.sync.extra" in errors


def test_bad_source_kind_is_rejected():
    with pytest.raises(ConfigError) as excinfo:
        build_config({"sources": [{"id": "x", "name": "X", "url": "https://x", "kind": "atom"}]})
    assert "kind must be one of" in str(excinfo.value)


def test_unknown_dedup_key_is_rejected():
    with pytest.raises(ConfigError):
        build_config({"sync": {"dedup_keys": ["slug"]}})


def test_secrets_come_from_environment(monkeypatch):
    monkeypatch.setenv("TW_SYNC_SECRET", "s3cret")
    monkeypatch.setenv("TW_LLM_API_KEY", "key")
    config = build_config({})
    assert config.sync_secret == "s3cret"
    assert config.llm.api_key == "key"


def test_term_replacements_replace_wholesale():
    config = build_config({"enrichment": {"term_replacements": {"a": "b"}}})
    assert config.enrichment.term_replacements == {"a": "b"}


def test_invalid_yaml_raises_config_error(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("sync: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_null_floor_disables_the_date_filter(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("sync:\n  min_published_at: null\n", encoding="utf-8")
    assert load_config(str(path)).sync.min_published_at is None


def test_unquoted_yaml_timestamp_floor_is_accepted(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("sync:\n  min_published_at: 2025-11-20T06:00:00Z\n", encoding="utf-8")
    floor = load_config(str(path)).sync.min_published_at
    assert floor.isoformat() == "2025-11-20T06:00:00+00:00"


def test_non_instant_floor_is_rejected():
    with pytest.raises(ConfigError) as excinfo:
        build_config({"sync": {"min_published_at": 20251120}})
    assert "min_published_at" in str(excinfo.value)
