"""Source-chrome removal for scraped and feed-supplied article HTML.

Each cleanup step is a named ``Rule`` operating on a parsed tree. A source
family maps to its own ordered rule list, framed by the shared rules that
run for every family. ``sanitize`` never raises: a rule that blows up is
logged and skipped, and unparseable input comes back unchanged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .images import image_source, resolve_image_url
from .utils import collapse_whitespace, log_event, replace_referral_links

logger = logging.getLogger("teslawire.sanitize")

_BARE_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)


def _token_pattern(*tokens: str) -> re.Pattern[str]:
    joined = "|".join(re.escape(token) for token in tokens)
    return re.compile(rf"(?:^|[\s_-])(?:{joined})(?:$|[\s_-])", re.IGNORECASE)


AD_MARKERS = _token_pattern(
    "ad", "ads", "advert", "advertisement", "sponsor", "sponsored", "promo", "banner", "adsbygoogle"
)
SOCIAL_MARKERS_WIDE = _token_pattern(
    "social", "share", "sharing", "facebook", "twitter", "instagram", "tiktok", "youtube",
    "threads", "linkedin", "pinterest", "reddit", "snapchat", "whatsapp", "telegram", "tweet",
)
SOCIAL_MARKERS = _token_pattern("social", "share", "sharing")
AUTHOR_MARKERS = _token_pattern(
    "author", "byline", "writer", "post-meta", "entry-meta", "avatar", "profile"
)
RELATED_MARKERS = _token_pattern(
    "related", "more-stories", "more-news", "you-may-also-like", "recommended", "similar"
)
CAPTION_MARKERS = _token_pattern(
    "caption", "credit", "source", "image-text", "img-caption", "photo-caption", "wp-caption-text"
)
FEATURED_MARKERS = _token_pattern(
    "featured", "hero", "main-image", "header-image", "article-image", "featured-image",
    "hero-image",
)
WP_IMAGE_MARKER = re.compile(r"(?:^|\s)wp-image-\d+(?:$|\s)")
RELATED_HEADING_RE = re.compile(
    r"^\s*(related|more news|related news|more stories|you may also like)\b", re.IGNORECASE
)
RELATED_TEXT_RE = re.compile(r"Related Topics|Related Posts", re.IGNORECASE)
PROMPT_CUTOFF_RE = re.compile(r"Related News|More News|Related Stories", re.IGNORECASE)
SOCIAL_HOSTS = (
    "facebook.com", "twitter.com", "x.com", "instagram.com", "tiktok.com", "linkedin.com",
    "pinterest.com", "reddit.com", "threads.net", "t.me", "wa.me", "whatsapp.com",
)


@dataclass(frozen=True)
class RuleContext:
    base_url: str | None = None
    hero_image_url: str | None = None
    own_domains: tuple[str, ...] = ()
    referral_url: str = ""


@dataclass(frozen=True)
class Rule:
    name: str
    apply: Callable[[BeautifulSoup, RuleContext], None]


@dataclass(frozen=True)
class FamilyProfile:
    name: str
    rules: tuple[Rule, ...]
    own_domains: tuple[str, ...] = ()
    extract_hero: bool = False
    extra_featured: bool = False


def marker(tag: Tag) -> str:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    return " ".join([*classes, str(tag.get("id") or "")]).strip()


def _live(tags) -> list[Tag]:
    return [tag for tag in list(tags) if isinstance(tag, Tag) and not tag.decomposed]


def _remove_marked(soup: BeautifulSoup, names: tuple[str, ...], pattern: re.Pattern[str]) -> int:
    removed = 0
    for tag in _live(soup.find_all(names)):
        if tag.decomposed:
            continue
        if pattern.search(marker(tag)):
            tag.decompose()
            removed += 1
    return removed


def _host(url: str | None) -> str:
    if not url:
        return ""
    return (urlsplit(url.strip()).hostname or "").lower()


def _host_matches(host: str, domains: tuple[str, ...]) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def _remove_following(node) -> None:
    current = node
    while current is not None and not isinstance(current, BeautifulSoup):
        for sibling in list(current.next_siblings):
            sibling.extract()
        current = current.parent


# Shared rules


def remove_chrome(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for comment in list(soup.find_all(string=lambda text: isinstance(text, Comment))):
        comment.extract()
    for tag in _live(soup.find_all(
        ["script", "style", "noscript", "iframe", "form", "nav", "header", "footer", "aside"]
    )):
        if not tag.decomposed:
            tag.decompose()


def remove_captions(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all("figcaption")):
        if not tag.decomposed:
            tag.decompose()
    _remove_marked(soup, ("p", "div", "span"), CAPTION_MARKERS)


def remove_duplicate_title(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all("h1")):
        if not tag.decomposed:
            tag.decompose()


def remove_hero_duplicates(soup: BeautifulSoup, ctx: RuleContext) -> None:
    hero = resolve_image_url(ctx.hero_image_url, ctx.base_url) if ctx.hero_image_url else None
    for tag in _live(soup.find_all("img")):
        if tag.decomposed:
            continue
        if FEATURED_MARKERS.search(marker(tag)):
            tag.decompose()
            continue
        if hero and resolve_image_url(image_source(tag), ctx.base_url) == hero:
            tag.decompose()


def absolutize_images(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all("img")):
        resolved = resolve_image_url(image_source(tag), ctx.base_url)
        if resolved:
            tag["src"] = resolved
        elif not tag.get("src"):
            tag.decompose()


def strip_noise_attributes(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all(True)):
        for attr in list(tag.attrs):
            if attr.startswith("data-") or attr.lower().startswith("on"):
                del tag.attrs[attr]


def drop_empty_blocks(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all(["p", "div", "span", "section", "figure", "li", "ul"])):
        if tag.decomposed:
            continue
        if not tag.get_text(strip=True) and not tag.find(["img", "video", "picture"]):
            tag.decompose()


# Family rules


def remove_ads(soup: BeautifulSoup, ctx: RuleContext) -> None:
    _remove_marked(soup, ("div", "section", "aside", "ins"), AD_MARKERS)


def _remove_social_anchors(soup: BeautifulSoup, pattern: re.Pattern[str]) -> None:
    for tag in _live(soup.find_all("a")):
        if tag.decomposed:
            continue
        if pattern.search(marker(tag)) or _host_matches(_host(tag.get("href")), SOCIAL_HOSTS):
            tag.decompose()


def remove_share_widgets_wide(soup: BeautifulSoup, ctx: RuleContext) -> None:
    _remove_marked(soup, ("div", "section", "ul", "button"), SOCIAL_MARKERS_WIDE)
    _remove_social_anchors(soup, SOCIAL_MARKERS_WIDE)


def remove_share_widgets(soup: BeautifulSoup, ctx: RuleContext) -> None:
    _remove_marked(soup, ("div", "section", "ul"), SOCIAL_MARKERS_WIDE)
    _remove_social_anchors(soup, SOCIAL_MARKERS)


def remove_author_blocks(soup: BeautifulSoup, ctx: RuleContext) -> None:
    _remove_marked(soup, ("div", "section", "p", "span", "img"), AUTHOR_MARKERS)


def truncate_at_related(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in soup.find_all(["div", "section"]):
        if RELATED_MARKERS.search(marker(tag)):
            _remove_following(tag)
            tag.decompose()
            return
    for tag in soup.find_all(["h2", "h3", "h4", "h5", "h6"]):
        if RELATED_HEADING_RE.search(tag.get_text(" ", strip=True)):
            _remove_following(tag)
            tag.decompose()
            return
    for text in soup.find_all(string=RELATED_TEXT_RE):
        match = RELATED_TEXT_RE.search(str(text))
        if not match:
            continue
        head = str(text)[: match.start()]
        replacement = NavigableString(head)
        text.replace_with(replacement)
        _remove_following(replacement)
        return


def remove_featured_wrappers(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all("img")):
        if not tag.decomposed and WP_IMAGE_MARKER.search(marker(tag)):
            tag.decompose()
    _remove_marked(soup, ("div", "figure"), _token_pattern("featured-image", "hero-image", "main-image"))


def unlink_own_domain(soup: BeautifulSoup, ctx: RuleContext) -> None:
    if not ctx.own_domains:
        return
    for tag in _live(soup.find_all("a")):
        if _host_matches(_host(tag.get("href")), ctx.own_domains):
            tag.unwrap()


# Policy rules


def strip_all_links(soup: BeautifulSoup, ctx: RuleContext) -> None:
    for tag in _live(soup.find_all("a")):
        tag.unwrap()
    for text in list(soup.find_all(string=_BARE_URL_RE)):
        if isinstance(text, Comment):
            continue
        text.replace_with(_BARE_URL_RE.sub("", str(text)))


def replace_referrals(soup: BeautifulSoup, ctx: RuleContext) -> None:
    if not ctx.referral_url:
        return
    for tag in _live(soup.find_all("a")):
        href = tag.get("href")
        if isinstance(href, str):
            tag["href"] = replace_referral_links(href, ctx.referral_url)
    for text in list(soup.find_all(string=True)):
        if isinstance(text, Comment):
            continue
        replaced = replace_referral_links(str(text), ctx.referral_url)
        if replaced != str(text):
            text.replace_with(replaced)


LEADING_RULES = (Rule("remove_chrome", remove_chrome),)
TRAILING_RULES = (
    Rule("remove_captions", remove_captions),
    Rule("remove_duplicate_title", remove_duplicate_title),
    Rule("remove_hero_duplicates", remove_hero_duplicates),
    Rule("absolutize_images", absolutize_images),
    Rule("strip_noise_attributes", strip_noise_attributes),
)

FAMILIES: dict[str, FamilyProfile] = {
    "teslarati": FamilyProfile(
        name="teslarati",
        rules=(
            Rule("remove_ads", remove_ads),
            Rule("remove_share_widgets_wide", remove_share_widgets_wide),
            Rule("remove_author_blocks", remove_author_blocks),
            Rule("truncate_at_related", truncate_at_related),
            Rule("remove_featured_wrappers", remove_featured_wrappers),
        ),
        own_domains=("teslarati.com",),
        extract_hero=True,
    ),
    "notateslaapp": FamilyProfile(
        name="notateslaapp",
        rules=(
            Rule("remove_share_widgets", remove_share_widgets),
            Rule("unlink_own_domain", unlink_own_domain),
        ),
        own_domains=("notateslaapp.com",),
    ),
    "default": FamilyProfile(
        name="default",
        rules=(Rule("remove_share_widgets", remove_share_widgets),),
    ),
}


def get_family(name: str | None) -> FamilyProfile:
    return FAMILIES.get(name or "default", FAMILIES["default"])


def build_rules(family: str | None, *, strip_links: bool = False, referral_url: str = "") -> list[Rule]:
    rules = [*LEADING_RULES, *get_family(family).rules, *TRAILING_RULES]
    if strip_links:
        rules.append(Rule("strip_all_links", strip_all_links))
    if referral_url:
        rules.append(Rule("replace_referrals", replace_referrals))
    rules.append(Rule("drop_empty_blocks", drop_empty_blocks))
    return rules


def apply_rules(soup: BeautifulSoup, rules: list[Rule], ctx: RuleContext) -> list[str]:
    failed: list[str] = []
    for rule in rules:
        try:
            rule.apply(soup, ctx)
        except Exception as exc:  # noqa: BLE001
            failed.append(rule.name)
            log_event(logger, logging.WARNING, "sanitize_rule_failed", rule=rule.name, error=str(exc))
    return failed


def sanitize(
    html: str,
    family: str | None,
    *,
    strip_links: bool = False,
    base_url: str | None = None,
    hero_image_url: str | None = None,
    referral_url: str = "",
) -> str:
    if not html or not html.strip():
        return ""
    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "sanitize_parse_failed", family=family, error=str(exc))
        return html
    profile = get_family(family)
    ctx = RuleContext(
        base_url=base_url,
        hero_image_url=hero_image_url,
        own_domains=profile.own_domains,
        referral_url=referral_url,
    )
    apply_rules(soup, build_rules(family, strip_links=strip_links, referral_url=referral_url), ctx)
    try:
        return str(soup).strip()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "sanitize_serialize_failed", family=family, error=str(exc))
        return html


def html_to_text(content: str | BeautifulSoup | Tag) -> str:
    """Readable plain text with paragraph breaks kept as blank lines."""
    if isinstance(content, (BeautifulSoup, Tag)):
        soup = BeautifulSoup(str(content), "html.parser")
    else:
        soup = BeautifulSoup(content or "", "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    blocks: list[str] = []
    for tag in soup.find_all(["p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote"]):
        if tag.find_parent(["p", "li", "blockquote"]):
            continue
        text = collapse_whitespace(tag.get_text(" ", strip=True))
        if text:
            blocks.append(text)
    if blocks:
        return "\n\n".join(blocks)
    return collapse_whitespace(soup.get_text(" ", strip=True))


def extract_plain_text(html: str, attribution_terms: list[str] | tuple[str, ...] = ()) -> str:
    """Plain text for the generation prompt, cut at "related/more news" markers.

    Source names listed in ``attribution_terms`` are dropped from the text.
    """
    text = html_to_text(html)
    match = PROMPT_CUTOFF_RE.search(text)
    if match:
        text = text[: match.start()]
    for term in sorted(attribution_terms, key=len, reverse=True):
        text = re.sub(re.escape(term), "", text, flags=re.IGNORECASE)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
    return text.strip()
