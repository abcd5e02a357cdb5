from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, Comment

from ..config import EnrichmentConfig
from ..errors import EnrichmentRejected

_FENCE_OPEN_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?\s*```\s*$")
FORBIDDEN_ATTRS = ("class", "style")


@dataclass(frozen=True)
class HtmlStats:
    paragraphs: int
    headings: int
    longest_paragraph: int
    paragraph_chars: int


def strip_code_fences(html: str) -> str:
    cleaned = _FENCE_OPEN_RE.sub("", html or "")
    return _FENCE_CLOSE_RE.sub("", cleaned).strip()


def html_stats(soup: BeautifulSoup) -> HtmlStats:
    lengths = [len(p.get_text(" ", strip=True)) for p in soup.find_all("p")]
    lengths = [length for length in lengths if length]
    return HtmlStats(
        paragraphs=len(lengths),
        headings=len([h for h in soup.find_all(["h2", "h3"]) if h.get_text(strip=True)]),
        longest_paragraph=max(lengths, default=0),
        paragraph_chars=sum(lengths),
    )


def _replace_in_text(soup: BeautifulSoup, pattern: re.Pattern[str], replace) -> None:
    for text in list(soup.find_all(string=True)):
        if isinstance(text, Comment):
            continue
        value = str(text)
        updated = pattern.sub(replace, value)
        if updated != value:
            text.replace_with(updated)


def clean_generated_html(html: str, config: EnrichmentConfig) -> BeautifulSoup:
    soup = BeautifulSoup(strip_code_fences(html), "html.parser")
    for comment in list(soup.find_all(string=lambda text: isinstance(text, Comment))):
        comment.extract()
    for tag in soup.find_all(True):
        for attr in FORBIDDEN_ATTRS:
            if attr in tag.attrs:
                del tag.attrs[attr]
    terms = sorted((term for term in config.attribution_terms if term), key=len, reverse=True)
    if terms:
        pattern = re.compile("|".join(re.escape(term) for term in terms), re.IGNORECASE)
        _replace_in_text(soup, pattern, "")
    for source, target in config.term_replacements.items():
        if source:
            _replace_in_text(soup, re.compile(re.escape(source)), target)
    return soup


def validate_generated_html(html: str, config: EnrichmentConfig) -> tuple[str, HtmlStats]:
    """Clean generated article HTML and enforce its structural floor.

    Class and style attributes are stripped rather than rejected. The output
    is rejected when it has fewer paragraphs or section headings than
    configured, or when one paragraph longer than ``max_paragraph_chars``
    carries most of the text.
    """
    if not html or not html.strip():
        raise EnrichmentRejected("empty_output")
    soup = clean_generated_html(html, config)
    stats = html_stats(soup)
    if stats.paragraphs < config.min_paragraphs:
        raise EnrichmentRejected(
            "too_few_paragraphs", f"{stats.paragraphs} < {config.min_paragraphs}"
        )
    if stats.headings < config.min_headings:
        raise EnrichmentRejected("too_few_headings", f"{stats.headings} < {config.min_headings}")
    if (
        stats.longest_paragraph > config.max_paragraph_chars
        and stats.longest_paragraph * 2 > stats.paragraph_chars
    ):
        raise EnrichmentRejected(
            "oversized_paragraph", f"{stats.longest_paragraph} of {stats.paragraph_chars} chars"
        )
    return str(soup).strip(), stats
