from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from http.client import HTTPException, InvalidURL
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import HttpConfig
from .errors import FetchError
from .utils import log_event

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
FEED_ACCEPT = "application/rss+xml, application/xml, text/xml"
JSON_ACCEPT = "application/json"
IMAGE_ACCEPT = "image/avif,image/webp,image/*,*/*;q=0.8"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int
    content: bytes
    content_type: str

    def text(self) -> str:
        charset = "utf-8"
        for part in self.content_type.split(";")[1:]:
            name, _, value = part.strip().partition("=")
            if name.lower() == "charset" and value:
                charset = value.strip('"')
        try:
            return self.content.decode(charset, errors="replace")
        except LookupError:
            return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.content.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise FetchError(self.url, f"invalid json: {exc}", self.status) from exc


class Fetcher:
    """Blocking HTTP GET with a browser-like user agent and retry on network errors.

    HTTP error statuses are not retried; the upstream answered and asking
    again right away rarely changes the answer.
    """

    def __init__(
        self,
        config: HttpConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("teslawire.http")
        self._sleep = sleep

    def get(
        self,
        url: str,
        *,
        accept: str = HTML_ACCEPT,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> FetchResult:
        request_headers = {
            "User-Agent": self.config.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
        }
        request_headers.update(headers or {})
        timeout = timeout or self.config.timeout_seconds
        attempt = 0
        while True:
            try:
                request = Request(url, headers=request_headers)
                with urlopen(request, timeout=timeout) as response:
                    status = response.getcode() or 200
                    content = response.read()
                    content_type = response.headers.get("Content-Type", "") or ""
                return FetchResult(url=url, status=status, content=content, content_type=content_type)
            except HTTPError as exc:
                raise FetchError(url, f"HTTP {exc.code} {exc.reason}", exc.code) from exc
            except (InvalidURL, ValueError) as exc:
                raise FetchError(url, f"invalid url: {exc}") from exc
            except (URLError, HTTPException, TimeoutError, ConnectionError) as exc:
                if attempt >= self.config.max_retries:
                    raise FetchError(url, str(exc)) from exc
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "fetch_retry",
                    url=url,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                self._sleep(self.config.backoff_seconds * (attempt + 1))
                attempt += 1
