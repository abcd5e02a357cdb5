from email.message import Message
from http.client import IncompleteRead, InvalidURL
from urllib.error import HTTPError, URLError

import pytest

from teslawire import http as http_module
from teslawire.config import build_config
from teslawire.errors import FetchError
from teslawire.http import Fetcher, FetchResult


class _Response:
    def __init__(self, content=b"<html></html>", content_type="text/html; charset=utf-8"):
        self._content = content
        self.headers = {"Content-Type": content_type}

    def getcode(self):
        return 200

    def read(self):
        return self._content

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _fetcher(sleeps):
    return Fetcher(build_config({}).http, sleep=sleeps.append)


def test_browser_headers_are_sent(monkeypatch):
    seen = {}

    def _urlopen(request, timeout=None):
        seen["headers"] = {key.lower(): value for key, value in request.header_items()}
        seen["timeout"] = timeout
        return _Response()

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    result = _fetcher([]).get("https://example.com/a", headers={"Referer": "https://example.com/"})
    assert result.text() == "<html></html>"
    assert "mozilla" in seen["headers"]["user-agent"].lower()
    assert seen["headers"]["referer"] == "https://example.com/"
    assert seen["timeout"] == 20


def test_network_errors_are_retried_with_backoff(monkeypatch):
    calls = []

    def _urlopen(request, timeout=None):
        calls.append(request.full_url)
        if len(calls) < 3:
            raise URLError("connection reset")
        return _Response()

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    sleeps = []
    _fetcher(sleeps).get("https://example.com/a")
    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]


def test_retries_are_bounded(monkeypatch):
    def _urlopen(request, timeout=None):
        raise URLError("down")

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    sleeps = []
    with pytest.raises(FetchError) as excinfo:
        _fetcher(sleeps).get("https://example.com/a")
    assert excinfo.value.reason == "fetch_failed"
    assert len(sleeps) == 2


def test_http_status_errors_are_not_retried(monkeypatch):
    calls = []

    def _urlopen(request, timeout=None):
        calls.append(1)
        raise HTTPError(request.full_url, 404, "Not Found", Message(), None)

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    with pytest.raises(FetchError) as excinfo:
        _fetcher([]).get("https://example.com/missing")
    assert excinfo.value.status == 404
    assert len(calls) == 1


def test_text_honors_declared_charset_and_json_errors_raise():
    latin = FetchResult("u", 200, "café".encode("latin-1"), "text/html; charset=latin-1")
    assert latin.text() == "café"
    with pytest.raises(FetchError):
        FetchResult("u", 200, b"not json", "application/json").json()


def test_invalid_urls_become_fetch_errors_without_retry(monkeypatch):
    calls = []

    def _urlopen(request, timeout=None):
        calls.append(1)
        raise InvalidURL("URL can't contain control characters. '/my photo.jpg'")

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    with pytest.raises(FetchError) as excinfo:
        _fetcher([]).get("https://cdn.example.com/my photo.jpg")
    assert "invalid url" in str(excinfo.value)
    assert len(calls) == 1


def test_non_ascii_path_becomes_fetch_error(monkeypatch):
    def _urlopen(request, timeout=None):
        "/é".encode("ascii")

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    with pytest.raises(FetchError):
        _fetcher([]).get("https://cdn.example.com/é.jpg")


def test_incomplete_reads_are_retried(monkeypatch):
    calls = []

    def _urlopen(request, timeout=None):
        calls.append(1)
        if len(calls) == 1:
            raise IncompleteRead(b"partial")
        return _Response(b"done")

    monkeypatch.setattr(http_module, "urlopen", _urlopen)
    sleeps = []
    assert _fetcher(sleeps).get("https://example.com/a").content == b"done"
    assert sleeps == [2.0]
