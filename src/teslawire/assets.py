from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
import os
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

from .config import AssetsConfig
from .errors import UploadError
from .utils import log_event

_SANITY_REF_RE = re.compile(r"^image-(?P<hash>[A-Za-z0-9]+)-(?P<dims>\d+x\d+)-(?P<ext>[a-z0-9]+)$")
_LOCAL_REF_RE = re.compile(r"^local-(?P<hash>[a-f0-9]+)-(?P<ext>[a-z0-9]+)$")


class AssetStore(Protocol):
    def upload(self, data: bytes, *, content_type: str, filename: str) -> str: ...

    def url_for(self, asset_ref: str, width: int | None = None, height: int | None = None) -> str: ...


def _transform_query(width: int | None, height: int | None) -> str:
    params: list[tuple[str, str]] = []
    if width:
        params.append(("w", str(width)))
    if height:
        params.append(("h", str(height)))
    params.extend([("fit", "max"), ("auto", "format")])
    return urllib.parse.urlencode(params)


class SanityAssetStore:
    """Uploads binaries through the Sanity assets API and builds CDN URLs."""

    def __init__(self, config: AssetsConfig, timeout_seconds: int = 60, logger: logging.Logger | None = None) -> None:
        if not config.project_id:
            raise ValueError("sanity asset store requires a project_id")
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("teslawire.assets")

    def _endpoint(self, filename: str) -> str:
        query = urllib.parse.urlencode({"filename": filename})
        return (
            f"https://{self.config.project_id}.api.sanity.io/v{self.config.api_version}"
            f"/assets/images/{self.config.dataset}?{query}"
        )

    def upload(self, data: bytes, *, content_type: str, filename: str) -> str:
        if not self.config.token:
            raise UploadError("asset_store_unauthorized", "TW_SANITY_TOKEN not set")
        request = urllib.request.Request(self._endpoint(filename), data=data, method="POST")
        request.add_header("Content-Type", content_type)
        request.add_header("Authorization", f"Bearer {self.config.token}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise UploadError("asset_upload_failed", f"http_error {exc.code}: {body[:300]}") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            raise UploadError("asset_upload_failed", f"network_error: {exc}") from exc
        try:
            payload: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UploadError("asset_upload_failed", "invalid json response") from exc
        document = payload.get("document") or {}
        asset_id = document.get("_id")
        if not asset_id:
            raise UploadError("asset_upload_failed", "response missing document._id")
        log_event(self.logger, logging.DEBUG, "asset_uploaded", asset_ref=asset_id, filename=filename)
        return str(asset_id)

    def url_for(self, asset_ref: str, width: int | None = None, height: int | None = None) -> str:
        match = _SANITY_REF_RE.match(asset_ref)
        if not match:
            raise ValueError(f"not a sanity image reference: {asset_ref}")
        path = f"{match.group('hash')}-{match.group('dims')}.{match.group('ext')}"
        return (
            f"https://cdn.sanity.io/images/{self.config.project_id}/{self.config.dataset}/{path}"
            f"?{_transform_query(width, height)}"
        )


class LocalAssetStore:
    """Content-addressed asset store on the local filesystem."""

    def __init__(self, root: str, base_url: str, logger: logging.Logger | None = None) -> None:
        self.root = root
        self.base_url = base_url.rstrip("/")
        self.logger = logger or logging.getLogger("teslawire.assets")

    def upload(self, data: bytes, *, content_type: str, filename: str) -> str:
        digest = hashlib.sha256(data).hexdigest()[:40]
        extension = (mimetypes.guess_extension(content_type) or os.path.splitext(filename)[1] or ".jpg")
        extension = extension.lstrip(".").lower()
        if extension == "jpe":
            extension = "jpg"
        try:
            os.makedirs(self.root, exist_ok=True)
            path = os.path.join(self.root, f"{digest}.{extension}")
            if not os.path.exists(path):
                with open(path, "wb") as handle:
                    handle.write(data)
        except OSError as exc:
            raise UploadError("asset_write_failed", str(exc)) from exc
        asset_ref = f"local-{digest}-{extension}"
        log_event(self.logger, logging.DEBUG, "asset_stored", asset_ref=asset_ref, filename=filename)
        return asset_ref

    def url_for(self, asset_ref: str, width: int | None = None, height: int | None = None) -> str:
        match = _LOCAL_REF_RE.match(asset_ref)
        if not match:
            raise ValueError(f"not a local asset reference: {asset_ref}")
        return f"{self.base_url}/{match.group('hash')}.{match.group('ext')}?{_transform_query(width, height)}"


def build_asset_store(config: AssetsConfig, assets_dir: str, logger: logging.Logger | None = None):
    if config.backend == "sanity":
        return SanityAssetStore(config, logger=logger)
    return LocalAssetStore(assets_dir, config.base_url, logger=logger)
