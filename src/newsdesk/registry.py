from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .errors import NotFoundError
from .models import Source
from .storage import get_source, insert_log, list_fetch_candidates, update_source_fetch_state
from .utils import log_event, parse_iso, to_iso, utc_now

QUARANTINE_ERROR_THRESHOLD = 5
QUARANTINE_MINUTES = 30

logger = logging.getLogger("newsdesk.registry")


def get_due(conn, limit: int | None = None, now: datetime | None = None) -> list[Source]:
    """Enabled, non-quarantined sources whose fetch interval has elapsed.

    Never-fetched sources come first, then the longest idle ones.
    """
    now = now or utc_now()
    due: list[Source] = []
    for source in list_fetch_candidates(conn, to_iso(now)):
        if not is_due(source, now):
            continue
        due.append(source)
        if limit is not None and len(due) >= limit:
            break
    return due


def is_due(source: Source, now: datetime) -> bool:
    if not source.enabled:
        return False
    if source.quarantine_until and parse_iso(source.quarantine_until) > now:
        return False
    if not source.last_fetched_at:
        return True
    idle = now - parse_iso(source.last_fetched_at)
    return idle >= timedelta(minutes=source.fetch_interval_minutes)


def record_fetch_outcome(
    conn,
    source_id: str,
    error: str | None = None,
    now: datetime | None = None,
) -> Source:
    source = get_source(conn, source_id)
    if source is None:
        raise NotFoundError(f"source {source_id} not found")
    now = now or utc_now()
    if error is None:
        update_source_fetch_state(
            conn,
            source_id,
            last_fetched_at=to_iso(now),
            error_count=0,
            last_error=None,
            quarantine_until=None,
        )
        return get_source(conn, source_id) or source

    error_count = source.error_count + 1
    quarantine_until = source.quarantine_until
    if error_count >= QUARANTINE_ERROR_THRESHOLD:
        quarantine_until = to_iso(now + timedelta(minutes=QUARANTINE_MINUTES))
        log_event(
            logger,
            logging.WARNING,
            "source_quarantined",
            source_id=source_id,
            error_count=error_count,
            until=quarantine_until,
        )
        insert_log(
            conn,
            "warning",
            f"Source {source.name} quarantined after {error_count} consecutive errors",
            {"source_id": source_id, "error": error, "quarantine_until": quarantine_until},
        )
    update_source_fetch_state(
        conn,
        source_id,
        last_fetched_at=to_iso(now),
        error_count=error_count,
        last_error=error[:1000],
        quarantine_until=quarantine_until,
    )
    return get_source(conn, source_id) or source
