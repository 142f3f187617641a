from datetime import timedelta

from newsdesk.registry import QUARANTINE_ERROR_THRESHOLD, get_due, record_fetch_outcome
from newsdesk.storage import get_source, set_source_enabled, upsert_source
from newsdesk.utils import utc_now


def _add(conn, source_id, interval=15):
    return upsert_source(
        conn,
        {"id": source_id, "name": source_id, "url": f"https://{source_id}.example/feed", "fetch_interval_minutes": interval},
    )


def test_never_fetched_sources_are_due_first(conn):
    _add(conn, "alpha")
    _add(conn, "beta")
    now = utc_now()
    record_fetch_outcome(conn, "alpha", now=now - timedelta(minutes=30))
    due = get_due(conn, now=now)
    assert [source.id for source in due] == ["beta", "alpha"]


def test_interval_not_elapsed_is_not_due(conn):
    _add(conn, "alpha", interval=60)
    now = utc_now()
    record_fetch_outcome(conn, "alpha", now=now - timedelta(minutes=10))
    assert get_due(conn, now=now) == []


def test_disabled_sources_are_skipped(conn):
    _add(conn, "alpha")
    set_source_enabled(conn, "alpha", False)
    assert get_due(conn) == []


def test_repeated_errors_quarantine_and_success_resets(conn):
    _add(conn, "alpha")
    now = utc_now()
    for _ in range(QUARANTINE_ERROR_THRESHOLD):
        source = record_fetch_outcome(conn, "alpha", error="timeout", now=now)
    assert source.error_count == QUARANTINE_ERROR_THRESHOLD
    assert source.quarantine_until is not None
    assert get_due(conn, now=now + timedelta(minutes=20)) == []

    record_fetch_outcome(conn, "alpha", now=now)
    source = get_source(conn, "alpha")
    assert source.error_count == 0
    assert source.last_error is None
    assert source.quarantine_until is None


def test_limit_caps_due_sources(conn):
    for name in ("a1", "a2", "a3"):
        _add(conn, name)
    assert len(get_due(conn, limit=2)) == 2
