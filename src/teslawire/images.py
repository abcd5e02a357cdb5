from __future__ import annotations

import html as html_lib
import logging
import mimetypes
import posixpath
import re
import time
from typing import Callable, Iterable
from urllib.parse import quote, unquote, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .config import ImagesConfig
from .errors import FetchError, UploadError
from .http import IMAGE_ACCEPT, Fetcher
from .utils import log_event

EXCLUDED_IMAGE_TOKENS = (
    "icon",
    "avatar",
    "logo",
    "favicon",
    "transparent",
    "brand",
    "watermark",
    "placeholder",
)
URL_SAFE_CHARS = ":/?#[]@!$&'()*+,;=%~"
FEATURED_IMAGE_RE = re.compile(
    r"featured|hero|main-image|header-image|article-image|wp-image-\d+|attachment", re.IGNORECASE
)
FEATURED_WRAPPER_RE = re.compile(r"featured|hero|main-image|header-image", re.IGNORECASE)
LAZY_SRC_ATTRS = ("src", "data-src", "data-lazy-src", "data-original")
MIN_HERO_WIDTH = 400
MIN_HERO_HEIGHT = 300


def is_usable_image_url(url: str | None) -> bool:
    if not url:
        return False
    lowered = url.strip().lower()
    if not lowered or lowered.startswith("data:"):
        return False
    return not any(token in lowered for token in EXCLUDED_IMAGE_TOKENS)


def resolve_image_url(src: str | None, base_url: str | None) -> str | None:
    """Absolute http(s) URL for ``src``, or ``None`` when it cannot be resolved."""
    if not src:
        return None
    src = src.strip()
    if src.startswith("//"):
        src = "https:" + src
    if not src.startswith(("http://", "https://")):
        if not base_url:
            return None
        src = urljoin(base_url, src)
    if not src.startswith(("http://", "https://")):
        return None
    return quote(src, safe=URL_SAFE_CHARS)


def image_source(tag: Tag) -> str | None:
    for attr in LAZY_SRC_ATTRS:
        value = tag.get(attr)
        if isinstance(value, str) and value.strip() and not value.strip().startswith("data:"):
            return value.strip()
    return None


def _as_soup(content: str | BeautifulSoup | Tag) -> BeautifulSoup | Tag:
    if isinstance(content, (BeautifulSoup, Tag)):
        return content
    return BeautifulSoup(content or "", "html.parser")


def _tag_marker(tag: Tag) -> str:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    parts = [" ".join(classes), str(tag.get("id") or "")]
    return " ".join(part for part in parts if part)


def _dimension(tag: Tag, name: str) -> int:
    raw = str(tag.get(name) or "")
    match = re.match(r"\s*(\d+)", raw)
    return int(match.group(1)) if match else 0


def collect_images(content: str | BeautifulSoup | Tag, base_url: str | None) -> list[str]:
    """Ordered, de-duplicated absolute URLs of the non-decorative images in ``content``."""
    soup = _as_soup(content)
    images: list[str] = []
    seen: set[str] = set()
    for tag in soup.find_all("img"):
        resolved = resolve_image_url(image_source(tag), base_url)
        if not resolved or not is_usable_image_url(resolved) or resolved in seen:
            continue
        seen.add(resolved)
        images.append(resolved)
    return images


def pick_hero_image(content: str | BeautifulSoup | Tag, base_url: str | None) -> str | None:
    """Choose the representative image of a page or feed body.

    Order: an image marked featured/hero (on the tag or a wrapping block),
    then the largest image declaring at least 400 wide or 300 high, then
    the first image without declared dimensions, then any usable image.
    """
    soup = _as_soup(content)
    candidates: list[tuple[Tag, str]] = []
    for tag in soup.find_all("img"):
        resolved = resolve_image_url(image_source(tag), base_url)
        if resolved and is_usable_image_url(resolved):
            candidates.append((tag, resolved))
    if not candidates:
        return None

    for tag, resolved in candidates:
        if FEATURED_IMAGE_RE.search(_tag_marker(tag)):
            return resolved
        for parent in tag.parents:
            if parent.name in ("div", "figure", "section") and FEATURED_WRAPPER_RE.search(
                _tag_marker(parent)
            ):
                return resolved

    best: str | None = None
    best_size = 0
    for tag, resolved in candidates:
        width = _dimension(tag, "width")
        height = _dimension(tag, "height")
        if width >= MIN_HERO_WIDTH or height >= MIN_HERO_HEIGHT:
            size = max(width, 1) * max(height, 1)
            if size > best_size:
                best = resolved
                best_size = size
    if best:
        return best

    for tag, resolved in candidates:
        if not _dimension(tag, "width") and not _dimension(tag, "height"):
            return resolved
    return candidates[0][1]


def filename_from_url(url: str, content_type: str | None = None) -> str:
    name = posixpath.basename(urlsplit(url).path) or "image"
    if "." not in name:
        extension = mimetypes.guess_extension((content_type or "").split(";")[0].strip()) or ".jpg"
        name = f"{name}{extension}"
    return name


class ImageUploader:
    """Copies external images into the asset store one at a time.

    A failed image is logged and left out of the returned map; callers keep
    the original URL for anything without a mapping.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        asset_store,
        config: ImagesConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetcher = fetcher
        self.asset_store = asset_store
        self.config = config
        self.logger = logger or logging.getLogger("teslawire.images")
        self._sleep = sleep

    def upload_one(self, url: str) -> str:
        try:
            response = self.fetcher.get(url, accept=IMAGE_ACCEPT)
        except FetchError as exc:
            raise UploadError("image_fetch_failed", str(exc)) from exc
        content_type = (response.content_type or "").split(";")[0].strip().lower()
        if not content_type:
            content_type = mimetypes.guess_type(url)[0] or "image/jpeg"
        if not content_type.startswith("image/"):
            raise UploadError("not_an_image", f"{url} content_type={content_type}")
        if not response.content:
            raise UploadError("empty_image", url)
        return self.asset_store.upload(
            response.content,
            content_type=content_type,
            filename=filename_from_url(url, content_type),
        )

    def upload(self, urls: Iterable[str]) -> dict[str, str]:
        uploaded: dict[str, str] = {}
        pending = list(dict.fromkeys(urls))
        for index, url in enumerate(pending):
            if index:
                self._sleep(self.config.upload_delay_seconds)
            try:
                asset_ref = self.upload_one(url)
            except UploadError as exc:
                log_event(self.logger, logging.WARNING, "image_upload_failed", url=url, error=str(exc))
                continue
            uploaded[url] = asset_ref
            log_event(self.logger, logging.DEBUG, "image_uploaded", url=url, asset_ref=asset_ref)
        log_event(
            self.logger,
            logging.INFO,
            "images_uploaded",
            requested=len(pending),
            uploaded=len(uploaded),
        )
        return uploaded


def _url_pattern(variant: str) -> re.Pattern[str]:
    return re.compile(r"(?<![^\s\"'(,=>])" + re.escape(variant) + r"(?=[\s\"'),<]|$)")


def rewrite_image_urls(html: str, asset_map: dict[str, str], url_for: Callable[[str], str]) -> str:
    """Replace every occurrence of a mapped original URL with its asset CDN URL.

    Raw, decoded, HTML-escaped and percent-encoded spellings of each original
    URL are replaced. A match must end at a quote, whitespace, comma, closing
    parenthesis or tag boundary, so ``/a.jpg`` never rewrites part of
    ``/a.jpg?w=300``.
    """
    if not html or not asset_map:
        return html
    updated = html
    for original in sorted(asset_map, key=len, reverse=True):
        replacement = url_for(asset_map[original])
        if not original or not replacement:
            continue
        spellings = {original, unquote(original)}
        variants = set(spellings)
        variants.update(html_lib.escape(spelling, quote=True) for spelling in spellings)
        variants.add(quote(original, safe=""))
        for variant in sorted(variants, key=len, reverse=True):
            updated = _url_pattern(variant).sub(lambda _match: replacement, updated)
    return updated
