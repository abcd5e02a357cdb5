import pytest

from teslawire.assets import LocalAssetStore, SanityAssetStore, build_asset_store
from teslawire.config import AssetsConfig
from teslawire.errors import UploadError


def _assets_config(**overrides):
    values = {
        "backend": "sanity",
        "base_url": "/assets",
        "project_id": "abc123",
        "dataset": "production",
        "api_version": "2021-06-07",
        "token": None,
    }
    values.update(overrides)
    return AssetsConfig(**values)


def test_local_store_is_content_addressed(tmp_path):
    store = LocalAssetStore(str(tmp_path / "assets"), "/assets/")
    first = store.upload(b"pixels", content_type="image/png", filename="a.png")
    second = store.upload(b"pixels", content_type="image/png", filename="b.png")
    assert first == second
    assert first.startswith("local-") and first.endswith("-png")
    assert len(list((tmp_path / "assets").iterdir())) == 1
    url = store.url_for(first, width=1200, height=800)
    assert url.startswith("/assets/")
    assert url.endswith(".png?w=1200&h=800&fit=max&auto=format")


def test_sanity_url_for_builds_cdn_url():
    store = SanityAssetStore(_assets_config())
    url = store.url_for("image-Tb9Ew8CXIwaY6R1kjMvI0uRR-2000x3000-jpg", width=1200)
    assert url == (
        "https://cdn.sanity.io/images/abc123/production/"
        "Tb9Ew8CXIwaY6R1kjMvI0uRR-2000x3000.jpg?w=1200&fit=max&auto=format"
    )


def test_sanity_upload_without_token_fails():
    with pytest.raises(UploadError) as excinfo:
        SanityAssetStore(_assets_config()).upload(b"x", content_type="image/jpeg", filename="x.jpg")
    assert excinfo.value.reason == "asset_store_unauthorized"


def test_build_asset_store_picks_backend(tmp_path):
    assert isinstance(build_asset_store(_assets_config(), str(tmp_path)), SanityAssetStore)
    assert isinstance(build_asset_store(_assets_config(backend="local"), str(tmp_path)), LocalAssetStore)
