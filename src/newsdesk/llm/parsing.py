from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

import jsonschema
from bs4 import BeautifulSoup

from ..models import ParsedArticle
from ..normalize import clean_text

SEO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "keywords": {"type": "array", "items": {"type": "string"}},
        "slug": {"type": "string"},
    },
    "required": ["title", "description"],
}

ENTITIES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "entities": {
            "type": "object",
            "additionalProperties": {"type": "array", "items": {"type": "string"}},
        },
        "keywords": {"type": "array", "items": {"type": "string"}},
        "geo": {"type": "array", "items": {"type": "string"}},
        "category": {"type": "string"},
        "sentiment": {"type": ["number", "string"]},
    },
    "required": ["category"],
}

CLASSIFY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "category": {"type": "string"},
        "confidence": {"type": "number"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["category"],
}

ARTICLE_PAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "lead": {"type": "string"},
        "body": {"type": "string"},
        "author": {"type": ["string", "null"]},
        "date": {"type": ["string", "null"]},
    },
    "required": ["title", "body"],
}

SECTION_IDS = ("what", "why", "action")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_MAX_FALLBACK_TITLE = 100


@dataclass(frozen=True)
class ParsedJson:
    data: dict[str, Any]
    was_fallback: bool
    error: str | None = None


def parse_json_object(raw: str | None, schema: dict[str, Any] | None = None) -> ParsedJson:
    """Pull the outermost JSON object out of a model reply and validate it.

    Replies often wrap the object in prose or code fences, so the first "{"
    through the last "}" is taken. Anything unusable yields an empty dict with
    was_fallback set.
    """
    if not raw:
        return ParsedJson(data={}, was_fallback=True, error="empty_response")
    match = _JSON_OBJECT.search(raw)
    if not match:
        return ParsedJson(data={}, was_fallback=True, error="no_json_object")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return ParsedJson(data={}, was_fallback=True, error=f"invalid_json: {exc.msg}")
    if not isinstance(data, dict):
        return ParsedJson(data={}, was_fallback=True, error="not_an_object")
    if schema is not None:
        try:
            jsonschema.validate(data, schema)
        except jsonschema.ValidationError as exc:
            return ParsedJson(data={}, was_fallback=True, error=f"schema_error: {exc.message}")
    return ParsedJson(data=data, was_fallback=False)


def parse_article(raw: str | None) -> ParsedArticle:
    """Split a tagged model reply into title, lead and body.

    Missing <title> falls back to the first short line, missing <lead> to the
    first paragraph. The body is the <section> blocks when present, otherwise
    whatever text remains.
    """
    raw = (raw or "").strip()
    if not raw:
        return ParsedArticle(title="", lead="", body="", sections={}, was_fallback=True)

    soup = BeautifulSoup(raw, "html.parser")
    was_fallback = False

    title_tag = soup.find("title")
    if title_tag is not None and clean_text(title_tag.get_text()):
        title = clean_text(title_tag.get_text())
    else:
        was_fallback = True
        title = _first_short_line(raw)

    lead_tag = soup.find("lead")
    if lead_tag is not None and clean_text(lead_tag.get_text()):
        lead = clean_text(lead_tag.get_text())
    else:
        was_fallback = True
        paragraph = soup.find("p")
        lead = clean_text(paragraph.get_text()) if paragraph is not None else ""

    sections: dict[str, str] = {}
    for section_id in SECTION_IDS:
        tag = soup.find("section", id=section_id)
        if tag is not None:
            sections[section_id] = str(tag).strip()

    if sections:
        body = "\n\n".join(sections[key] for key in SECTION_IDS if key in sections)
    else:
        was_fallback = True
        for tag in soup.find_all(["title", "lead"]):
            tag.decompose()
        body = str(soup).strip()
        if title and body.startswith(title):
            body = body[len(title):].strip()

    return ParsedArticle(
        title=title,
        lead=lead,
        body=body,
        sections=sections,
        was_fallback=was_fallback,
    )


def _first_short_line(raw: str) -> str:
    for line in raw.splitlines():
        text = clean_text(BeautifulSoup(line, "html.parser").get_text())
        if text and len(text) < _MAX_FALLBACK_TITLE:
            return text
    return ""
