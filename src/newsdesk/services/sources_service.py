from __future__ import annotations

from dataclasses import asdict
from typing import Any

import yaml

from ..errors import ConfigError, NotFoundError
from ..models import Source
from ..storage import delete_source as _delete_source
from ..storage import get_source, list_sources, upsert_source

DEFAULT_SEED_SOURCES: list[dict[str, Any]] = [
    {
        "id": "bamf_press",
        "name": "BAMF Pressemitteilungen",
        "url": "https://www.bamf.de/SiteGlobals/Functions/RSSFeed/DE/RSSNewsfeed/RSSNewsfeed_Pressemitteilungen.xml",
        "lang": "de",
        "category": "official",
        "trust_score": 0.95,
        "fetch_interval_minutes": 30,
    },
    {
        "id": "bundesregierung",
        "name": "Bundesregierung",
        "url": "https://www.bundesregierung.de/service/rss/breg-de/1151244/feed.xml",
        "lang": "de",
        "category": "official",
        "trust_score": 0.95,
        "fetch_interval_minutes": 30,
    },
    {
        "id": "muenchen_stadt",
        "name": "Stadt München Rathaus Umschau",
        "url": "https://ru.muenchen.de/rss/",
        "lang": "de",
        "category": "official",
        "trust_score": 0.9,
        "fetch_interval_minutes": 60,
    },
]

_EDITABLE = {"name", "url", "lang", "category", "trust_score", "fetch_interval_minutes", "enabled"}


def source_to_dict(source: Source) -> dict[str, Any]:
    return asdict(source)


def create_source(conn: Any, payload: dict[str, Any]) -> Source:
    source_id = str(payload.get("id") or "").strip()
    if source_id and get_source(conn, source_id):
        raise ValueError(f"source {source_id} already exists")
    return upsert_source(conn, payload)


def update_source(conn: Any, source_id: str, payload: dict[str, Any]) -> Source:
    existing = get_source(conn, source_id)
    if existing is None:
        raise NotFoundError(f"source {source_id} not found")
    unknown = set(payload) - _EDITABLE - {"id"}
    if unknown:
        raise ValueError("unknown source fields: " + ", ".join(sorted(unknown)))
    merged = source_to_dict(existing)
    merged.update({key: value for key, value in payload.items() if key in _EDITABLE})
    merged["id"] = source_id
    return upsert_source(conn, merged)


def delete_source(conn: Any, source_id: str) -> None:
    if not _delete_source(conn, source_id):
        raise NotFoundError(f"source {source_id} not found")


def load_sources_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read sources file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"sources file {path} is not valid YAML: {exc}") from exc
    items = data.get("sources") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ConfigError(f"sources file {path} must contain a 'sources' list")
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigError(f"sources[{index}] must be a mapping")
    return items


def import_sources(conn: Any, items: list[dict[str, Any]]) -> list[Source]:
    imported = []
    for index, item in enumerate(items):
        try:
            imported.append(upsert_source(conn, item))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"sources[{index}]: {exc}") from exc
    return imported


def import_sources_file(conn: Any, path: str) -> list[Source]:
    return import_sources(conn, load_sources_file(path))


def seed_default_sources(conn: Any) -> list[Source]:
    """Insert the default sources when the registry is empty."""
    if list_sources(conn):
        return []
    return import_sources(conn, DEFAULT_SEED_SOURCES)
