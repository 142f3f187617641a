from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import RawItem
from .storage import find_recent_duplicate, raw_item_hash_exists
from .utils import normalize_url, to_iso, url_hash, utc_now


@dataclass(frozen=True)
class Fingerprint:
    canonical_url: str
    url_hash: str


def fingerprint(url: str, tracking_params: tuple[str, ...] | list[str]) -> Fingerprint:
    canonical = normalize_url(url, tracking_params)
    return Fingerprint(canonical_url=canonical, url_hash=url_hash(canonical))


def is_known(conn, item_print: Fingerprint) -> bool:
    return raw_item_hash_exists(conn, item_print.url_hash)


def find_duplicate_of(
    conn,
    item: RawItem,
    window_hours: int = 72,
    now: datetime | None = None,
) -> int | None:
    """Id of an earlier item with the same title or URL inside the window."""
    now = now or utc_now()
    since = to_iso(now - timedelta(hours=window_hours))
    return find_recent_duplicate(conn, item.id, item.title, item.url, since)
