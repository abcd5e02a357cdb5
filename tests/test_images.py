from http.client import InvalidURL

import pytest

from teslawire import http as http_module
from teslawire.config import ImagesConfig, build_config
from teslawire.errors import FetchError
from teslawire.http import Fetcher
from teslawire.images import (
    ImageUploader,
    collect_images,
    filename_from_url,
    is_usable_image_url,
    pick_hero_image,
    resolve_image_url,
    rewrite_image_urls,
)

from conftest import FakeAssetStore, FakeFetcher

BASE = "https://www.example.com/news/post/"


class _ImageResponse:
    headers = {"Content-Type": "image/jpeg"}

    def getcode(self):
        return 200

    def read(self):
        return b"jpeg"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _images_config():
    return ImagesConfig(
        upload_delay_seconds=0.5,
        max_images_per_article=12,
        cdn_width=1200,
        cdn_height=800,
    )


@pytest.mark.parametrize(
    "url,usable",
    [
        ("https://cdn.example.com/photo.jpg", True),
        ("https://cdn.example.com/site-logo.png", False),
        ("https://cdn.example.com/avatars/a.jpg", False),
        ("data:image/gif;base64,R0lGOD", False),
        ("", False),
    ],
)
def test_is_usable_image_url(url, usable):
    assert is_usable_image_url(url) is usable


def test_collect_images_resolves_lazy_and_relative_sources():
    html = (
        '<img src="data:image/gif;base64,AAA" data-src="/uploads/one.jpg">'
        '<img src="//cdn.example.com/two.jpg">'
        '<img src="/uploads/one.jpg">'
        '<img src="/icons/share-icon.png">'
    )
    assert collect_images(html, BASE) == [
        "https://www.example.com/uploads/one.jpg",
        "https://cdn.example.com/two.jpg",
    ]


def test_pick_hero_prefers_marked_then_largest():
    marked = '<img src="/a.jpg" width="1600" height="900"><img class="hero-img" src="/b.jpg">'
    assert pick_hero_image(marked, BASE) == "https://www.example.com/b.jpg"
    sized = '<img src="/small.jpg" width="100" height="80"><img src="/big.jpg" width="1200" height="675">'
    assert pick_hero_image(sized, BASE) == "https://www.example.com/big.jpg"
    assert pick_hero_image("<p>no images</p>", BASE) is None


def test_filename_from_url_adds_extension():
    assert filename_from_url("https://cdn.example.com/a/photo.jpg?w=1") == "photo.jpg"
    assert filename_from_url("https://cdn.example.com/a/photo", "image/png") == "photo.png"


def test_uploader_skips_failures_and_paces_uploads():
    fetcher = FakeFetcher(
        {
            "https://cdn.example.com/a.jpg": (b"jpeg-a", "image/jpeg"),
            "https://cdn.example.com/page.html": (b"<html></html>", "text/html"),
            "https://cdn.example.com/down.jpg": FetchError("https://cdn.example.com/down.jpg", "timeout"),
            "https://cdn.example.com/b.jpg": (b"jpeg-b", "image/jpeg"),
        }
    )
    sleeps: list[float] = []
    store = FakeAssetStore()
    uploader = ImageUploader(fetcher, store, _images_config(), sleep=sleeps.append)
    mapping = uploader.upload(
        [
            "https://cdn.example.com/a.jpg",
            "https://cdn.example.com/page.html",
            "https://cdn.example.com/down.jpg",
            "https://cdn.example.com/a.jpg",
            "https://cdn.example.com/b.jpg",
        ]
    )
    assert list(mapping) == ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"]
    assert len(store.uploads) == 2
    assert sleeps == [0.5, 0.5, 0.5]


def test_rewrite_replaces_every_mapped_spelling():
    original = "https://cdn.example.com/a.jpg?w=1&h=2"
    html = (
        f'<img src="{original.replace("&", "&amp;")}">'
        f'<p>{original}</p>'
        '<img src="https://cdn.example.com/untouched.jpg">'
    )
    rewritten = rewrite_image_urls(html, {original: "image-abc-1x1-jpg"}, lambda ref: f"https://cdn.test/{ref}")
    assert rewritten.count("https://cdn.test/image-abc-1x1-jpg") == 2
    assert "cdn.example.com/a.jpg" not in rewritten
    assert "untouched.jpg" in rewritten


def test_rewrite_handles_prefix_urls():
    short = "https://cdn.example.com/a.jpg"
    long = "https://cdn.example.com/a.jpg.webp"
    html = f'<img src="{long}"><img src="{short}">'
    rewritten = rewrite_image_urls(html, {short: "s", long: "l"}, lambda ref: f"https://cdn.test/{ref}")
    assert rewritten == '<img src="https://cdn.test/l"><img src="https://cdn.test/s">'


def test_unsafe_characters_in_image_urls_are_percent_encoded():
    html = '<img src="https://cdn.example.com/my photo.jpg"><img src="/uploads/café.jpg">'
    assert collect_images(html, BASE) == [
        "https://cdn.example.com/my%20photo.jpg",
        "https://www.example.com/uploads/caf%C3%A9.jpg",
    ]
    assert resolve_image_url("https://cdn.example.com/a%20b.jpg?w=1&h=2", None) == (
        "https://cdn.example.com/a%20b.jpg?w=1&h=2"
    )


def test_uploader_survives_a_url_the_http_layer_rejects(monkeypatch):
    def _urlopen(request, timeout=None):
        if " " in request.full_url:
            raise InvalidURL(f"URL can't contain control characters. {request.full_url!r}")
        return _ImageResponse()

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    fetcher = Fetcher(build_config({}).http, sleep=lambda _: None)
    store = FakeAssetStore()
    uploader = ImageUploader(fetcher, store, _images_config(), sleep=lambda _: None)
    mapping = uploader.upload(["https://cdn.example.com/my photo.jpg", "https://cdn.example.com/ok.jpg"])
    assert list(mapping) == ["https://cdn.example.com/ok.jpg"]
    assert len(store.uploads) == 1


def test_rewrite_leaves_longer_unmapped_urls_alone():
    mapped = "https://cdn.example.com/a.jpg"
    html = f'<img src="{mapped}" srcset="{mapped}?w=300 300w, {mapped} 1200w">'
    rewritten = rewrite_image_urls(html, {mapped: "ref"}, lambda ref: f"https://cdn.test/{ref}")
    assert rewritten == (
        '<img src="https://cdn.test/ref" srcset="https://cdn.example.com/a.jpg?w=300 300w, '
        'https://cdn.test/ref 1200w">'
    )


def test_rewrite_matches_the_unencoded_spelling_in_the_body():
    html = '<img src="https://cdn.example.com/my photo.jpg">'
    rewritten = rewrite_image_urls(
        html, {"https://cdn.example.com/my%20photo.jpg": "ref"}, lambda ref: f"https://cdn.test/{ref}"
    )
    assert rewritten == '<img src="https://cdn.test/ref">'
