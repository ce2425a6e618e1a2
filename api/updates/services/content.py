from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment

from updates.services.errors import RepositoryValidationError

TITLE_MAX_LENGTH = 255
TAGS_MAX_COUNT = 30
TAG_MAX_LENGTH = 32

_WHITESPACE_RE = re.compile(r"\s+")

# titles, main titles, basic and multiline text formatting, images, links, video iframes
ALLOWED_TAGS: dict[str, set[str]] = {
    "h1": set(),
    "h2": set(),
    "h3": set(),
    "strong": set(),
    "em": set(),
    "b": set(),
    "i": set(),
    "u": set(),
    "s": set(),
    "strike": set(),
    "del": set(),
    "p": set(),
    "br": set(),
    "ul": set(),
    "ol": set(),
    "li": set(),
    "blockquote": set(),
    "pre": set(),
    "code": set(),
    "hr": set(),
    "div": set(),
    "figure": set(),
    "figcaption": set(),
    "img": {"src", "alt", "title"},
    "a": {"href", "title", "target"},
    "iframe": {"src", "width", "height", "allowfullscreen", "frameborder"},
}
_DROP_WITH_CONTENT = {"script", "style", "noscript", "object", "embed", "form"}
_SAFE_URL_SCHEMES = {"http", "https", "mailto", ""}
_VIDEO_IFRAME_HOSTS = {
    "www.youtube.com",
    "youtube.com",
    "www.youtube-nocookie.com",
    "player.vimeo.com",
    "www.loom.com",
    "anchor.fm",
}


def normalize_title(title: Any) -> str:
    if not isinstance(title, str):
        raise RepositoryValidationError("title must be a string")
    normalized = _WHITESPACE_RE.sub(" ", title).strip()
    if not 1 <= len(normalized) <= TITLE_MAX_LENGTH:
        raise RepositoryValidationError(f"title must be between 1 and {TITLE_MAX_LENGTH} characters")
    return normalized


def sanitize_html(html: str | None) -> str:
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for element in soup.find_all(True):
        if element.decomposed:
            continue
        if element.name in _DROP_WITH_CONTENT:
            element.decompose()
            continue
        allowed_attrs = ALLOWED_TAGS.get(element.name)
        if allowed_attrs is None:
            element.unwrap()
            continue
        element.attrs = {key: value for key, value in element.attrs.items() if key in allowed_attrs}
        if element.name in {"a", "img"}:
            attr = "href" if element.name == "a" else "src"
            if attr in element.attrs and not _is_safe_url(element.attrs[attr]):
                del element.attrs[attr]
            if element.name == "a" and element.attrs.get("target") == "_blank":
                element.attrs["rel"] = "noopener noreferrer"
        elif element.name == "iframe" and not _is_video_iframe(element.attrs.get("src")):
            element.decompose()

    return str(soup)


def generate_summary(html: str | None, max_length: int = 240) -> str:
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) <= max_length:
        return text
    truncated = text[: max_length - 3].rsplit(" ", 1)[0].rstrip(" ,.;:")
    return f"{truncated}..."


def sanitize_tags(tags: Any) -> list[str]:
    if not tags:
        return []
    if not isinstance(tags, list):
        raise RepositoryValidationError("tags must be a list of strings")
    sanitized: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        normalized = _WHITESPACE_RE.sub(" ", tag).strip().lower()
        if normalized and normalized not in sanitized:
            sanitized.append(normalized)
    return sanitized


def validate_tags(tags: list[str]) -> None:
    if len(tags) > TAGS_MAX_COUNT:
        raise RepositoryValidationError(f"Not more than {TAGS_MAX_COUNT} tags are allowed")
    for tag in tags:
        if len(tag) > TAG_MAX_LENGTH:
            raise RepositoryValidationError(f"Tag {tag} is too long, must be shorter than {TAG_MAX_LENGTH} characters")


def _is_safe_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return urlparse(value.strip()).scheme.lower() in _SAFE_URL_SCHEMES


def _is_video_iframe(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme == "https" and parsed.netloc.lower() in _VIDEO_IFRAME_HOSTS
