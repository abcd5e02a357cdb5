from __future__ import annotations

import logging
import math
from typing import Protocol

from ..cache import TTLCache
from ..config import AppConfig, EnrichmentConfig, LlmConfig
from ..errors import EnrichmentRejected, PipelineError
from ..utils import log_event
from .validate import validate_generated_html

LANGUAGE_NAMES = {
    "ar": "Arabic",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
}


class ChatCompleter(Protocol):
    def complete(
        self,
        model: str,
        system: str,
        user: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...


def _language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def _spelling_rules(replacements: dict[str, str]) -> str:
    lines = [f'- Always write "{target}", never "{source}".' for source, target in replacements.items()]
    return "\n".join(lines)


class EnrichmentEngine:
    """Translation and article rewriting on top of a chat-completion client.

    Translations are cached in memory by exact text and language pair. A
    generated article that fails structural validation is rejected; there
    is no fallback to the untranslated text.
    """

    def __init__(
        self,
        client: ChatCompleter,
        llm: LlmConfig,
        config: EnrichmentConfig,
        app: AppConfig,
        cache: TTLCache[str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.llm = llm
        self.config = config
        self.app = app
        self.cache = cache or TTLCache(config.cache_ttl_seconds, config.cache_max_entries)
        self.logger = logger or logging.getLogger("teslawire.enrichment")

    def _apply_replacements(self, text: str) -> str:
        for source, target in self.config.term_replacements.items():
            if source:
                text = text.replace(source, target)
        return text

    def translate(self, text: str, source_lang: str | None = None, target_lang: str | None = None) -> str:
        source_lang = source_lang or self.app.source_language
        target_lang = target_lang or self.app.target_language
        if not text or not text.strip():
            return ""
        key = (text, source_lang, target_lang)
        cached = self.cache.get(key)
        if cached is not None:
            log_event(self.logger, logging.DEBUG, "translation_cache_hit", chars=len(text))
            return cached

        system = (
            f"You are a professional translator. Translate the user's text from "
            f"{_language_name(source_lang)} to {_language_name(target_lang)}.\n"
        )
        rules = _spelling_rules(self.config.term_replacements)
        if rules:
            system += f"Spelling rules:\n{rules}\n"
        system += "Return only the translated text."
        max_tokens = min(max(math.ceil(len(text) / 4) * 2, 500), 4000)
        try:
            translated = self.client.complete(
                self.llm.translate_model, system, text, max_tokens=max_tokens
            )
        except PipelineError as exc:
            raise EnrichmentRejected("translation_failed", str(exc)) from exc
        translated = self._apply_replacements((translated or "").strip())
        if not translated:
            raise EnrichmentRejected("translation_empty")
        self.cache.set(key, translated)
        return translated

    def generate_article_html(self, title: str, summary: str, full_text: str, images: list[str]) -> str:
        language = _language_name(self.app.target_language)
        min_p = self.config.min_paragraphs
        min_h = self.config.min_headings
        terms = ", ".join(f'"{term}"' for term in self.config.attribution_terms)
        system = (
            f"You write news articles in {language} as clean semantic HTML.\n"
            f"Requirements:\n"
            f"1. Every paragraph is its own <p> element; write at least {min_p * 2} paragraphs.\n"
            f"2. Split the article into sections with <h2> headings; at least {min_h + 1} of them.\n"
            f"3. Do not use class or style attributes on any element.\n"
            f"4. Remove every mention of the original source: {terms}.\n"
            f"5. Remove author names, bios and pictures, and any related or more-news section.\n"
            f"6. Rewrite the story in fresh wording instead of translating line by line.\n"
        )
        rules = _spelling_rules(self.config.term_replacements)
        if rules:
            system += f"Spelling rules:\n{rules}\n"
        system += "Return only the HTML."

        image_lines = "\n".join(f"{index}. {url}" for index, url in enumerate(images, start=1))
        user = f"Title: {title}\nDescription: {summary}\n\nArticle content:\n{full_text}\n"
        if image_lines:
            user += (
                f"\nAvailable images (place them with <img src=\"URL\" alt=\"...\"> "
                f"between sections):\n{image_lines}\n"
            )
        estimated = math.ceil((len(title) + len(summary) + len(full_text)) / 4)
        max_tokens = min(max(estimated * 3, 4000), self.llm.max_tokens)
        try:
            generated = self.client.complete(self.llm.generate_model, system, user, max_tokens=max_tokens)
        except PipelineError as exc:
            raise EnrichmentRejected("generation_failed", str(exc)) from exc

        try:
            html, stats = validate_generated_html(generated, self.config)
        except EnrichmentRejected as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "generation_rejected",
                reason=exc.reason,
                detail=exc.detail,
                preview=(generated or "")[:200],
            )
            raise
        log_event(
            self.logger,
            logging.INFO,
            "generation_accepted",
            paragraphs=stats.paragraphs,
            headings=stats.headings,
            chars=len(html),
        )
        return html
