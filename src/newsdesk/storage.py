from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Any, Iterable

from .db import connect_db
from .models import (
    DRAFT_PUBLISHED,
    ITEM_NEW,
    ITEM_PROCESSING,
    ITEM_REJECTED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    Draft,
    FactCheckResult,
    PublishRecord,
    QueueJob,
    RawItem,
    Source,
)
from .utils import json_dumps, json_loads, parse_iso, slugify, to_iso, utc_now_iso

_SOURCE_COLUMNS = """
    id, name, url, lang, category, trust_score, fetch_interval_minutes, enabled,
    last_fetched_at, error_count, last_error, quarantine_until
"""

_RAW_ITEM_COLUMNS = """
    id, source_id, url, url_hash, title, summary, body, author, published_at,
    fetched_at, lang, status, fact_check_score
"""

_DRAFT_COLUMNS = """
    id, raw_item_id, lang, title, lead, body, category, tags_json, risk_flags_json,
    seo_title, meta_description, slug, status, gate_reason, keywords_json, sources_json,
    featured_media, scheduled_at, channels_json, published_at, published_url,
    created_by, edited_by, created_at, updated_at
"""

_JOB_COLUMNS = """
    id, job_type, payload_json, priority, status, attempts, max_attempts,
    scheduled_at, locked_at, error, created_at, finished_at
"""

_DRAFT_FIELDS = {
    "title": "title",
    "lead": "lead",
    "body": "body",
    "category": "category",
    "tags": "tags_json",
    "risk_flags": "risk_flags_json",
    "seo_title": "seo_title",
    "meta_description": "meta_description",
    "slug": "slug",
    "status": "status",
    "gate_reason": "gate_reason",
    "keywords": "keywords_json",
    "sources": "sources_json",
    "featured_media": "featured_media",
    "scheduled_at": "scheduled_at",
    "channels": "channels_json",
    "published_at": "published_at",
    "published_url": "published_url",
    "edited_by": "edited_by",
}

_JSON_DRAFT_COLUMNS = {"tags_json", "risk_flags_json", "keywords_json", "sources_json", "channels_json"}


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_source(conn: Any, source_dict: dict[str, object]) -> Source:
    source = _source_from_dict(source_dict)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, url, lang, category, trust_score, fetch_interval_minutes, enabled,
             error_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            url=excluded.url,
            lang=excluded.lang,
            category=excluded.category,
            trust_score=excluded.trust_score,
            fetch_interval_minutes=excluded.fetch_interval_minutes,
            enabled=excluded.enabled,
            updated_at=excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.url,
            source.lang,
            source.category,
            source.trust_score,
            source.fetch_interval_minutes,
            1 if source.enabled else 0,
            now,
            now,
        ),
    )
    conn.commit()
    return get_source(conn, source.id) or source


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(conn: Any, enabled_only: bool = False) -> list[Source]:
    where = "WHERE enabled = 1" if enabled_only else ""
    cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources {where} ORDER BY id")
    return [_row_to_source(row) for row in cursor.fetchall()]


def list_fetch_candidates(conn: Any, now_iso: str) -> list[Source]:
    cursor = conn.execute(
        f"""
        SELECT {_SOURCE_COLUMNS}
        FROM sources
        WHERE enabled = 1
          AND (quarantine_until IS NULL OR quarantine_until <= ?)
        ORDER BY CASE WHEN last_fetched_at IS NULL THEN 0 ELSE 1 END,
                 last_fetched_at ASC,
                 id ASC
        """,
        (now_iso,),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def delete_source(conn: Any, source_id: str) -> bool:
    cursor = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
    conn.commit()
    return cursor.rowcount == 1


def set_source_enabled(conn: Any, source_id: str, enabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET enabled = ?, updated_at = ? WHERE id = ?",
        (1 if enabled else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_source_fetch_state(
    conn: Any,
    source_id: str,
    *,
    last_fetched_at: str,
    error_count: int,
    last_error: str | None,
    quarantine_until: str | None,
) -> None:
    conn.execute(
        """
        UPDATE sources
        SET last_fetched_at = ?,
            error_count = ?,
            last_error = ?,
            quarantine_until = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (last_fetched_at, error_count, last_error, quarantine_until, utc_now_iso(), source_id),
    )
    conn.commit()


def record_trust_change(
    conn: Any, source_id: str, old_score: float, new_score: float, reason: str
) -> None:
    now = utc_now_iso()
    with conn.transaction():
        conn.execute(
            "UPDATE sources SET trust_score = ?, updated_at = ? WHERE id = ?",
            (new_score, now, source_id),
        )
        conn.execute(
            """
            INSERT INTO trust_history (source_id, old_score, new_score, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (source_id, old_score, new_score, reason, now),
        )


def list_trust_history(conn: Any, source_id: str, limit: int = 50) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT old_score, new_score, reason, created_at
        FROM trust_history
        WHERE source_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (source_id, limit),
    )
    return [
        {"old_score": row[0], "new_score": row[1], "reason": row[2], "created_at": row[3]}
        for row in cursor.fetchall()
    ]


def insert_raw_item(
    conn: Any,
    *,
    source_id: str,
    url: str,
    url_hash: str,
    title: str,
    summary: str | None,
    body: str | None,
    author: str | None,
    published_at: str | None,
    fetched_at: str,
    lang: str,
) -> int | None:
    cursor = conn.execute(
        """
        INSERT INTO raw_items
            (source_id, url, url_hash, title, summary, body, author, published_at,
             fetched_at, lang, status, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'new', ?)
        ON CONFLICT(url_hash) DO NOTHING
        RETURNING id
        """,
        (
            source_id,
            url,
            url_hash,
            title,
            summary,
            body,
            author,
            published_at,
            fetched_at,
            lang,
            fetched_at,
        ),
    )
    rows = cursor.fetchall()
    conn.commit()
    if not rows:
        return None
    return int(rows[0][0])


def raw_item_hash_exists(conn: Any, url_hash: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM raw_items WHERE url_hash = ?", (url_hash,))
    return cursor.fetchone() is not None


def get_raw_item(conn: Any, item_id: int) -> RawItem | None:
    cursor = conn.execute(f"SELECT {_RAW_ITEM_COLUMNS} FROM raw_items WHERE id = ?", (item_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_raw_item(row)


def list_raw_items(conn: Any, status: str | None = None, limit: int = 50) -> list[RawItem]:
    if status:
        cursor = conn.execute(
            f"SELECT {_RAW_ITEM_COLUMNS} FROM raw_items WHERE status = ? ORDER BY id DESC LIMIT ?",
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_RAW_ITEM_COLUMNS} FROM raw_items ORDER BY id DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_raw_item(row) for row in cursor.fetchall()]


def set_raw_item_status(conn: Any, item_id: int, status: str) -> None:
    conn.execute(
        "UPDATE raw_items SET status = ?, updated_at = ? WHERE id = ?",
        (status, utc_now_iso(), item_id),
    )
    conn.commit()


def find_recent_duplicate(
    conn: Any, item_id: int, title: str, url: str, since_iso: str
) -> int | None:
    cursor = conn.execute(
        """
        SELECT id FROM raw_items
        WHERE id < ?
          AND fetched_at >= ?
          AND (title = ? OR url = ?)
        ORDER BY id ASC
        LIMIT 1
        """,
        (item_id, since_iso, title, url),
    )
    row = cursor.fetchone()
    return int(row[0]) if row else None


def list_recent_items_from_other_sources(
    conn: Any, item_id: int, source_id: str, since_iso: str
) -> list[tuple[str, str, float]]:
    cursor = conn.execute(
        """
        SELECT ri.source_id, ri.title, s.trust_score
        FROM raw_items ri
        JOIN sources s ON s.id = ri.source_id
        WHERE ri.id != ?
          AND ri.source_id != ?
          AND ri.fetched_at >= ?
        ORDER BY ri.fetched_at DESC
        """,
        (item_id, source_id, since_iso),
    )
    return [(row[0], row[1], float(row[2])) for row in cursor.fetchall()]


def insert_fact_check(conn: Any, result: FactCheckResult) -> None:
    with conn.transaction():
        conn.execute(
            """
            INSERT INTO fact_checks (raw_item_id, score, sources_confirmed, details_json, computed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                result.raw_item_id,
                result.score,
                result.sources_confirmed,
                json_dumps(result.details),
                result.computed_at,
            ),
        )
        conn.execute(
            "UPDATE raw_items SET fact_check_score = ?, updated_at = ? WHERE id = ?",
            (result.score, result.computed_at, result.raw_item_id),
        )


def get_latest_fact_check(conn: Any, raw_item_id: int) -> FactCheckResult | None:
    cursor = conn.execute(
        """
        SELECT raw_item_id, score, sources_confirmed, computed_at, details_json
        FROM fact_checks
        WHERE raw_item_id = ?
        ORDER BY computed_at DESC, id DESC
        LIMIT 1
        """,
        (raw_item_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return FactCheckResult(
        raw_item_id=int(row[0]),
        score=float(row[1]),
        sources_confirmed=int(row[2]),
        computed_at=row[3],
        details=json_loads(row[4], {}),
    )


def average_fact_check_score(conn: Any, source_id: str, since_iso: str) -> float | None:
    cursor = conn.execute(
        """
        SELECT AVG(fc.score)
        FROM fact_checks fc
        JOIN raw_items ri ON ri.id = fc.raw_item_id
        WHERE ri.source_id = ? AND fc.computed_at >= ?
        """,
        (source_id, since_iso),
    )
    row = cursor.fetchone()
    if not row or row[0] is None:
        return None
    return float(row[0])


def insert_draft(conn: Any, draft: Draft) -> int | None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO drafts
            (raw_item_id, lang, title, lead, body, category, tags_json, risk_flags_json,
             seo_title, meta_description, slug, status, gate_reason, keywords_json,
             sources_json, featured_media, scheduled_at, channels_json, published_at,
             published_url, created_by, edited_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(raw_item_id, lang) DO NOTHING
        RETURNING id
        """,
        (
            draft.raw_item_id,
            draft.lang,
            draft.title,
            draft.lead,
            draft.body,
            draft.category,
            json_dumps(draft.tags),
            json_dumps(draft.risk_flags),
            draft.seo_title,
            draft.meta_description,
            draft.slug,
            draft.status,
            draft.gate_reason,
            json_dumps(draft.keywords),
            json_dumps(draft.sources),
            draft.featured_media,
            draft.scheduled_at,
            json_dumps(draft.channels),
            draft.published_at,
            draft.published_url,
            draft.created_by,
            draft.edited_by,
            draft.created_at or now,
            now,
        ),
    )
    rows = cursor.fetchall()
    conn.commit()
    if not rows:
        return None
    return int(rows[0][0])


def get_draft(conn: Any, draft_id: int) -> Draft | None:
    cursor = conn.execute(f"SELECT {_DRAFT_COLUMNS} FROM drafts WHERE id = ?", (draft_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_draft(row)


def list_drafts(
    conn: Any,
    status: str | None = None,
    raw_item_id: int | None = None,
    limit: int = 50,
) -> list[Draft]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if raw_item_id is not None:
        clauses.append("raw_item_id = ?")
        params.append(raw_item_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT {_DRAFT_COLUMNS} FROM drafts {where} ORDER BY id DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_draft(row) for row in cursor.fetchall()]


def transition_draft(
    conn: Any,
    draft_id: int,
    from_statuses: Iterable[str],
    to_status: str,
    **fields: object,
) -> bool:
    allowed = list(from_statuses)
    assignments = ["status = ?", "updated_at = ?"]
    params: list[object] = [to_status, utc_now_iso()]
    for name, value in fields.items():
        column = _DRAFT_FIELDS.get(name)
        if not column or column == "status":
            raise ValueError(f"unknown draft field {name}")
        assignments.append(f"{column} = ?")
        params.append(json_dumps(value) if column in _JSON_DRAFT_COLUMNS else value)
    placeholders = ",".join(["?"] * len(allowed))
    params.append(draft_id)
    params.extend(allowed)
    cursor = conn.execute(
        f"""
        UPDATE drafts
        SET {', '.join(assignments)}
        WHERE id = ? AND status IN ({placeholders})
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_draft_fields(conn: Any, draft_id: int, **fields: object) -> bool:
    if not fields:
        return False
    assignments = ["updated_at = ?"]
    params: list[object] = [utc_now_iso()]
    for name, value in fields.items():
        column = _DRAFT_FIELDS.get(name)
        if not column or column == "status":
            raise ValueError(f"unknown draft field {name}")
        assignments.append(f"{column} = ?")
        params.append(json_dumps(value) if column in _JSON_DRAFT_COLUMNS else value)
    params.append(draft_id)
    cursor = conn.execute(
        f"UPDATE drafts SET {', '.join(assignments)} WHERE id = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def draft_slug_in_use(conn: Any, lang: str, slug: str, exclude_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM drafts WHERE lang = ? AND slug = ? AND status = ? AND id <> ? LIMIT 1",
        (lang, slug, DRAFT_PUBLISHED, exclude_id),
    ).fetchone()
    return row is not None


def list_drafts_ready_for_auto_publish(
    conn: Any, statuses: Iterable[str], created_before: str, limit: int
) -> list[Draft]:
    allowed = list(statuses)
    placeholders = ",".join(["?"] * len(allowed))
    cursor = conn.execute(
        f"""
        SELECT {_DRAFT_COLUMNS}
        FROM drafts
        WHERE status IN ({placeholders}) AND created_at <= ?
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (*allowed, created_before, limit),
    )
    return [_row_to_draft(row) for row in cursor.fetchall()]


def list_due_scheduled_drafts(conn: Any, now_iso: str, limit: int) -> list[Draft]:
    cursor = conn.execute(
        f"""
        SELECT {_DRAFT_COLUMNS}
        FROM drafts
        WHERE status = 'scheduled' AND scheduled_at IS NOT NULL AND scheduled_at <= ?
        ORDER BY scheduled_at ASC, id ASC
        LIMIT ?
        """,
        (now_iso, limit),
    )
    return [_row_to_draft(row) for row in cursor.fetchall()]


def insert_publish_record(
    conn: Any,
    draft_id: int,
    channel: str,
    success: bool,
    url: str | None,
    error: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO publishes (draft_id, channel, success, url, error, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (draft_id, channel, 1 if success else 0, url, error, utc_now_iso()),
    )
    conn.commit()


def list_publish_records(conn: Any, draft_id: int) -> list[PublishRecord]:
    cursor = conn.execute(
        """
        SELECT id, draft_id, channel, success, url, error, created_at
        FROM publishes
        WHERE draft_id = ?
        ORDER BY id ASC
        """,
        (draft_id,),
    )
    return [
        PublishRecord(
            id=int(row[0]),
            draft_id=int(row[1]),
            channel=row[2],
            success=bool(row[3]),
            url=row[4],
            error=row[5],
            created_at=row[6],
        )
        for row in cursor.fetchall()
    ]


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    priority: int = 5,
    max_attempts: int = 3,
    scheduled_at: str | None = None,
    debounce: bool = False,
) -> str:
    if debounce:
        existing = _get_pending_job_id(conn, job_type)
        if existing:
            return existing
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO queue
            (id, job_type, payload_json, priority, status, attempts, max_attempts,
             scheduled_at, locked_at, error, created_at, finished_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?, NULL, NULL, ?, NULL)
        """,
        (
            job_id,
            job_type,
            json_dumps(payload) if payload else None,
            priority,
            JOB_PENDING,
            max_attempts,
            scheduled_at or now,
            now,
        ),
    )
    conn.commit()
    return job_id


def claim_next_job(
    conn: Any,
    job_type: str | None = None,
    lock_timeout_seconds: int | None = None,
    now_iso: str | None = None,
) -> QueueJob | None:
    for _ in range(20):
        now = now_iso or utc_now_iso()
        with conn.transaction():
            if lock_timeout_seconds is not None:
                _requeue_stale_jobs(conn, lock_timeout_seconds, now)
            params: list[object] = [JOB_PENDING, now]
            type_clause = ""
            if job_type:
                type_clause = " AND job_type = ?"
                params.append(job_type)
            skip_locked = " FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
            cursor = conn.execute(
                f"""
                SELECT id
                FROM queue
                WHERE status = ? AND attempts < max_attempts AND scheduled_at <= ?{type_clause}
                ORDER BY priority ASC, scheduled_at ASC, created_at ASC
                LIMIT 1{skip_locked}
                """,
                tuple(params),
            )
            row = cursor.fetchone()
            if not row:
                return None
            job_id = row[0]
            cursor = conn.execute(
                """
                UPDATE queue
                SET status = ?, locked_at = ?
                WHERE id = ? AND status = ?
                """,
                (JOB_PROCESSING, now, job_id, JOB_PENDING),
            )
            if cursor.rowcount != 1:
                continue
            return get_job(conn, job_id)
    return None


def _requeue_stale_jobs(conn: Any, lock_timeout_seconds: int, now_iso: str) -> None:
    cutoff = _offset_iso(now_iso, -lock_timeout_seconds)
    exhausted = conn.execute(
        """
        SELECT id, job_type, payload_json
        FROM queue
        WHERE status = ? AND locked_at IS NOT NULL AND locked_at < ? AND attempts + 1 >= max_attempts
        """,
        (JOB_PROCESSING, cutoff),
    ).fetchall()
    conn.execute(
        """
        UPDATE queue
        SET status = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE ? END,
            finished_at = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE NULL END,
            attempts = attempts + 1,
            locked_at = NULL,
            error = 'stale_lock_requeued'
        WHERE status = ? AND locked_at IS NOT NULL AND locked_at < ?
        """,
        (JOB_FAILED, JOB_PENDING, now_iso, JOB_PROCESSING, cutoff),
    )
    for job_id, job_type, payload_json in exhausted:
        raw_item_id = json_loads(payload_json, {}).get("raw_item_id")
        # A crashed item job leaves its raw item mid-processing.
        if raw_item_id is not None:
            conn.execute(
                "UPDATE raw_items SET status = ?, updated_at = ? WHERE id = ? AND status IN (?, ?)",
                (ITEM_REJECTED, now_iso, int(raw_item_id), ITEM_NEW, ITEM_PROCESSING),
            )
        insert_log(
            conn,
            "error",
            f"Job {job_id} failed permanently after a stale lock",
            {"job_id": job_id, "job_type": job_type, "raw_item_id": raw_item_id},
        )


def complete_job(conn: Any, job_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE queue
        SET status = ?, finished_at = ?, locked_at = NULL, error = NULL
        WHERE id = ? AND status = ?
        """,
        (JOB_COMPLETED, utc_now_iso(), job_id, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str, retry_at: str | None = None) -> str | None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE queue
        SET status = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE ? END,
            finished_at = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE NULL END,
            scheduled_at = CASE WHEN attempts + 1 >= max_attempts THEN scheduled_at ELSE ? END,
            attempts = attempts + 1,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = ?
        """,
        (JOB_FAILED, JOB_PENDING, now, retry_at or now, error[:2000], job_id, JOB_PROCESSING),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    job = get_job(conn, job_id)
    return job.status if job else None


def release_job(conn: Any, job_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE queue SET status = ?, locked_at = NULL WHERE id = ? AND status = ?",
        (JOB_PENDING, job_id, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_job(conn: Any, job_id: str) -> QueueJob | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM queue WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(
    conn: Any,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[QueueJob]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM queue {where} ORDER BY created_at DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_rows_by_status(conn: Any, table: str) -> dict[str, int]:
    if table not in {"queue", "drafts", "raw_items"}:
        raise ValueError(f"unsupported table {table}")
    cursor = conn.execute(f"SELECT status, COUNT(*) FROM {table} GROUP BY status")
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def acquire_lock(
    conn: Any, name: str, holder: str, ttl_seconds: int, now_iso: str | None = None
) -> bool:
    now = now_iso or utc_now_iso()
    expires_at = _offset_iso(now, ttl_seconds)
    with conn.transaction():
        conn.execute("DELETE FROM locks WHERE name = ? AND expires_at <= ?", (name, now))
        cursor = conn.execute(
            """
            INSERT INTO locks (name, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO NOTHING
            """,
            (name, holder, now, expires_at),
        )
        return cursor.rowcount == 1


def release_lock(conn: Any, name: str, holder: str) -> bool:
    cursor = conn.execute("DELETE FROM locks WHERE name = ? AND holder = ?", (name, holder))
    conn.commit()
    return cursor.rowcount == 1


def get_lock(conn: Any, name: str) -> dict[str, str] | None:
    cursor = conn.execute(
        "SELECT name, holder, acquired_at, expires_at FROM locks WHERE name = ?", (name,)
    )
    row = cursor.fetchone()
    if not row:
        return None
    return {"name": row[0], "holder": row[1], "acquired_at": row[2], "expires_at": row[3]}


def clear_locks(conn: Any) -> int:
    cursor = conn.execute("DELETE FROM locks")
    conn.commit()
    return cursor.rowcount


def insert_log(
    conn: Any, level: str, message: str, context: dict[str, object] | None = None
) -> None:
    conn.execute(
        "INSERT INTO logs (level, message, context_json, created_at) VALUES (?, ?, ?, ?)",
        (level, message, json_dumps(context) if context else None, utc_now_iso()),
    )
    conn.commit()


def list_logs(conn: Any, level: str | None = None, limit: int = 100) -> list[dict[str, object]]:
    if level:
        cursor = conn.execute(
            """
            SELECT level, message, context_json, created_at FROM logs
            WHERE level = ? ORDER BY id DESC LIMIT ?
            """,
            (level, limit),
        )
    else:
        cursor = conn.execute(
            "SELECT level, message, context_json, created_at FROM logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
    return [
        {
            "level": row[0],
            "message": row[1],
            "context": json_loads(row[2], {}),
            "created_at": row[3],
        }
        for row in cursor.fetchall()
    ]


def purge_logs(conn: Any, before_iso: str) -> int:
    cursor = conn.execute("DELETE FROM logs WHERE created_at < ?", (before_iso,))
    conn.commit()
    return cursor.rowcount


def purge_raw_items(conn: Any, before_iso: str, statuses: Iterable[str]) -> int:
    allowed = list(statuses)
    placeholders = ",".join(["?"] * len(allowed))
    cursor = conn.execute(
        f"DELETE FROM raw_items WHERE fetched_at < ? AND status IN ({placeholders})",
        (before_iso, *allowed),
    )
    conn.commit()
    return cursor.rowcount


def purge_jobs(conn: Any, status: str, before_iso: str) -> int:
    cursor = conn.execute(
        "DELETE FROM queue WHERE status = ? AND COALESCE(finished_at, created_at) < ?",
        (status, before_iso),
    )
    conn.commit()
    return cursor.rowcount


def purge_expired_locks(conn: Any, now_iso: str) -> int:
    cursor = conn.execute("DELETE FROM locks WHERE expires_at <= ?", (now_iso,))
    conn.commit()
    return cursor.rowcount


def _offset_iso(now_iso: str, seconds: int) -> str:
    return to_iso(parse_iso(now_iso) + timedelta(seconds=seconds))


def _source_from_dict(source_dict: dict[str, object]) -> Source:
    name = str(source_dict.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    url = str(source_dict.get("url") or "").strip()
    if not url:
        raise ValueError("url is required")
    source_id = str(source_dict.get("id") or "").strip()
    if not source_id:
        source_id = slugify(name).replace("-", "_")
    trust = float(source_dict.get("trust_score", 0.7))
    interval = int(source_dict.get("fetch_interval_minutes", 15))
    if interval < 1:
        raise ValueError("fetch_interval_minutes must be at least 1")
    return Source(
        id=source_id,
        name=name,
        url=url,
        lang=str(source_dict.get("lang") or "de").strip().lower(),
        category=str(source_dict.get("category") or "media").strip().lower(),
        trust_score=min(1.0, max(0.0, trust)),
        fetch_interval_minutes=interval,
        enabled=bool(source_dict.get("enabled", True)),
        last_fetched_at=None,
        error_count=0,
        last_error=None,
        quarantine_until=None,
    )


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        name,
        url,
        lang,
        category,
        trust_score,
        fetch_interval_minutes,
        enabled,
        last_fetched_at,
        error_count,
        last_error,
        quarantine_until,
    ) = row
    return Source(
        id=source_id,
        name=name,
        url=url,
        lang=lang,
        category=category,
        trust_score=float(trust_score),
        fetch_interval_minutes=int(fetch_interval_minutes),
        enabled=bool(enabled),
        last_fetched_at=last_fetched_at,
        error_count=int(error_count or 0),
        last_error=last_error,
        quarantine_until=quarantine_until,
    )


def _row_to_raw_item(row: tuple) -> RawItem:
    (
        item_id,
        source_id,
        url,
        url_hash,
        title,
        summary,
        body,
        author,
        published_at,
        fetched_at,
        lang,
        status,
        fact_check_score,
    ) = row
    return RawItem(
        id=int(item_id),
        source_id=source_id,
        url=url,
        url_hash=url_hash,
        title=title,
        summary=summary,
        body=body,
        author=author,
        published_at=published_at,
        fetched_at=fetched_at,
        lang=lang,
        status=status,
        fact_check_score=float(fact_check_score) if fact_check_score is not None else None,
    )


def _row_to_draft(row: tuple) -> Draft:
    (
        draft_id,
        raw_item_id,
        lang,
        title,
        lead,
        body,
        category,
        tags_json,
        risk_flags_json,
        seo_title,
        meta_description,
        slug,
        status,
        gate_reason,
        keywords_json,
        sources_json,
        featured_media,
        scheduled_at,
        channels_json,
        published_at,
        published_url,
        created_by,
        edited_by,
        created_at,
        updated_at,
    ) = row
    return Draft(
        id=int(draft_id),
        raw_item_id=int(raw_item_id) if raw_item_id is not None else None,
        lang=lang,
        title=title,
        lead=lead or "",
        body=body or "",
        category=category,
        tags=json_loads(tags_json, []),
        risk_flags=json_loads(risk_flags_json, []),
        seo_title=seo_title or "",
        meta_description=meta_description or "",
        slug=slug,
        status=status,
        gate_reason=gate_reason,
        keywords=json_loads(keywords_json, []),
        sources=json_loads(sources_json, []),
        featured_media=featured_media,
        scheduled_at=scheduled_at,
        channels=json_loads(channels_json, []),
        published_at=published_at,
        published_url=published_url,
        created_by=created_by,
        edited_by=edited_by,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_job(row: tuple) -> QueueJob:
    (
        job_id,
        job_type,
        payload_json,
        priority,
        status,
        attempts,
        max_attempts,
        scheduled_at,
        locked_at,
        error,
        created_at,
        finished_at,
    ) = row
    return QueueJob(
        id=job_id,
        job_type=job_type,
        payload=json_loads(payload_json, {}),
        priority=int(priority),
        status=status,
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        scheduled_at=scheduled_at,
        locked_at=locked_at,
        error=error,
        created_at=created_at,
        finished_at=finished_at,
    )


def _get_pending_job_id(conn: Any, job_type: str) -> str | None:
    cursor = conn.execute(
        """
        SELECT id FROM queue
        WHERE job_type = ? AND status IN ('pending', 'processing')
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (job_type,),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
