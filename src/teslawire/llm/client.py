from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from ..config import LLM_PROVIDER_TYPES, LlmConfig
from ..errors import PipelineError
from ..utils import log_event

PROVIDER_TYPES = LLM_PROVIDER_TYPES


class LlmError(PipelineError):
    pass


class ChatClient:
    """Single-turn chat completion against one configured provider."""

    def __init__(self, config: LlmConfig, logger: logging.Logger | None = None) -> None:
        if config.provider_type not in PROVIDER_TYPES:
            raise ValueError(f"unsupported provider type: {config.provider_type}")
        self.config = config
        self.logger = logger or logging.getLogger("teslawire.llm")

    def complete(
        self,
        model: str,
        system: str,
        user: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        if not self.config.api_key:
            raise LlmError("llm_unconfigured", "TW_LLM_API_KEY not set")
        params = {
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        started = time.monotonic()
        text = _call_provider(
            self.config.provider_type,
            self.config.base_url or _default_base_url(self.config.provider_type),
            self.config.api_key,
            model,
            messages,
            params,
            self.config.timeout_seconds,
        )
        log_event(
            self.logger,
            logging.INFO,
            "llm_completed",
            provider=self.config.provider_type,
            model=model,
            input_chars=len(system) + len(user),
            output_chars=len(text),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return text


def _call_provider(
    provider_type: str,
    base_url: str,
    api_key: str,
    model_name: str,
    messages: list[dict[str, str]],
    params: dict[str, Any],
    timeout: int,
) -> str:
    if provider_type == "openai_compatible":
        path = _join_url(base_url, "/chat/completions")
        payload = {"model": model_name, "messages": messages, **params}
        response = _http_request(path, _auth_headers(provider_type, api_key), payload, timeout)
        return _read_openai(response)
    if provider_type == "anthropic":
        path = _join_url(base_url, "/messages")
        payload = {
            "model": model_name,
            "max_tokens": int(params["max_tokens"]),
            "temperature": params["temperature"],
            "system": messages[0]["content"],
            "messages": [{"role": "user", "content": messages[1]["content"]}],
        }
        response = _http_request(path, _auth_headers(provider_type, api_key), payload, timeout)
        return _read_anthropic(response)
    if provider_type == "google":
        path = _join_url(base_url, f"/models/{urllib.parse.quote(model_name)}:generateContent")
        path = _append_key(path, api_key)
        payload = {
            "systemInstruction": {"parts": [{"text": messages[0]["content"]}]},
            "contents": [{"role": "user", "parts": [{"text": messages[1]["content"]}]}],
            "generationConfig": {
                "temperature": params["temperature"],
                "maxOutputTokens": int(params["max_tokens"]),
            },
        }
        response = _http_request(path, {}, payload, timeout)
        return _read_google(response)
    raise LlmError("unsupported_provider_type", provider_type)


def _http_request(url: str, headers: dict[str, str], payload: dict[str, Any], timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise LlmError("llm_http_error", f"{exc.code}: {body[:500]}") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise LlmError("llm_network_error", str(exc)) from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LlmError("llm_invalid_json", raw[:200]) from exc


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise LlmError("openai_missing_choices")
    return (choices[0].get("message") or {}).get("content") or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    content = response.get("content") or []
    if not content:
        raise LlmError("anthropic_missing_content")
    return "".join(block.get("text") or "" for block in content if block.get("type", "text") == "text")


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise LlmError("google_missing_candidates")
    parts = candidates[0].get("content", {}).get("parts", [])
    if not parts:
        raise LlmError("google_missing_parts")
    return "".join(part.get("text") or "" for part in parts)


def _auth_headers(provider_type: str, api_key: str) -> dict[str, str]:
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _append_key(url: str, api_key: str) -> str:
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
