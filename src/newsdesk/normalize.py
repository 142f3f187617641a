from __future__ import annotations

import re
from typing import Iterable

from bs4 import BeautifulSoup

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w+", re.UNICODE)

# Tried in order; the first container with text wins.
MAIN_CONTENT_SELECTORS = ("article", "div[class*=article]", "div[class*=content]", "main")
_BOILERPLATE_TAGS = ["script", "style", "nav", "aside", "footer", "form"]


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    if "<" not in value and "&" not in value:
        return clean_text(value)
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return clean_text(soup.get_text(" ", strip=True))


def clean_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip()


def truncate(value: str, max_length: int) -> str:
    value = clean_text(value)
    if len(value) <= max_length:
        return value
    cut = value[: max_length - 1]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,.;:-") + "…"


def tokenize(value: str | None) -> list[str]:
    if not value:
        return []
    return [token for token in _WORD.findall(value.lower()) if not token.isdigit()]


def word_count(value: str | None) -> int:
    if not value:
        return 0
    return len(_WORD.findall(value))


def matching_keywords(text: str | None, keywords: Iterable[str]) -> list[str]:
    """Return the keywords found as words (or word stems) in text.

    Short keywords must match a whole token so that "war" does not match
    "software"; keywords of five or more characters also match as a prefix
    ("skandal" matches "skandals").
    """
    tokens = tokenize(text)
    if not tokens:
        return []
    found: list[str] = []
    for keyword in keywords:
        needle = keyword.lower().strip()
        if not needle:
            continue
        if " " in needle:
            if needle in " ".join(tokens):
                found.append(keyword)
            continue
        for token in tokens:
            if token == needle or (len(needle) >= 5 and token.startswith(needle)):
                found.append(keyword)
                break
    return found


def extract_main_content(document: str | bytes) -> str | None:
    """Return the inner HTML of a page's article container, or None."""
    soup = BeautifulSoup(document, "html.parser")
    for selector in MAIN_CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is None:
            continue
        for tag in node(_BOILERPLATE_TAGS):
            tag.decompose()
        if clean_text(node.get_text(" ", strip=True)):
            return node.decode_contents().strip()
    return None


def extract_page_title(document: str | bytes) -> str:
    soup = BeautifulSoup(document, "html.parser")
    for name in ("h1", "title"):
        tag = soup.find(name)
        if tag is not None:
            text = clean_text(tag.get_text(" ", strip=True))
            if text:
                return text
    return ""
