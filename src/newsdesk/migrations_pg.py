from __future__ import annotations

import logging
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[object], None]


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("newsdesk.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    for version, migration in _get_migrations():
        if version in applied:
            logger.debug("migration_skipped version=%s", version)
            continue
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)"
                " ON CONFLICT (version) DO NOTHING",
                (version, utc_now_iso()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info("migration_applied version=%s", version)


def _pg_initial_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            lang TEXT NOT NULL DEFAULT 'de',
            category TEXT NOT NULL DEFAULT 'media',
            trust_score DOUBLE PRECISION NOT NULL DEFAULT 0.7,
            fetch_interval_minutes INTEGER NOT NULL DEFAULT 15,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_fetched_at TEXT NULL,
            error_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            quarantine_until TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS raw_items (
            id BIGSERIAL PRIMARY KEY,
            source_id TEXT NOT NULL REFERENCES sources(id),
            url TEXT NOT NULL,
            url_hash TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            summary TEXT NULL,
            body TEXT NULL,
            author TEXT NULL,
            published_at TEXT NULL,
            fetched_at TEXT NOT NULL,
            lang TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'new',
            fact_check_score DOUBLE PRECISION NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_items_status ON raw_items(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_items_fetched ON raw_items(fetched_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_items_title ON raw_items(title)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fact_checks (
            id BIGSERIAL PRIMARY KEY,
            raw_item_id BIGINT NOT NULL,
            score DOUBLE PRECISION NOT NULL,
            sources_confirmed INTEGER NOT NULL DEFAULT 0,
            details_json TEXT NULL,
            computed_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_fact_checks_item ON fact_checks(raw_item_id, computed_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS drafts (
            id BIGSERIAL PRIMARY KEY,
            raw_item_id BIGINT NULL,
            lang TEXT NOT NULL,
            title TEXT NOT NULL,
            lead TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL,
            tags_json TEXT NULL,
            risk_flags_json TEXT NULL,
            seo_title TEXT NOT NULL DEFAULT '',
            meta_description TEXT NOT NULL DEFAULT '',
            slug TEXT NOT NULL,
            keywords_json TEXT NULL,
            sources_json TEXT NULL,
            featured_media TEXT NULL,
            status TEXT NOT NULL,
            gate_reason TEXT NULL,
            scheduled_at TEXT NULL,
            channels_json TEXT NULL,
            published_at TEXT NULL,
            published_url TEXT NULL,
            created_by TEXT NULL,
            edited_by TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(raw_item_id, lang)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_drafts_status ON drafts(status, created_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            payload_json TEXT NULL,
            priority INTEGER NOT NULL DEFAULT 5,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            scheduled_at TEXT NOT NULL,
            locked_at TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_claim ON queue(status, priority, scheduled_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trust_history (
            id BIGSERIAL PRIMARY KEY,
            source_id TEXT NOT NULL,
            old_score DOUBLE PRECISION NOT NULL,
            new_score DOUBLE PRECISION NOT NULL,
            reason TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS logs (
            id BIGSERIAL PRIMARY KEY,
            level TEXT NOT NULL,
            message TEXT NOT NULL,
            context_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_created ON logs(created_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS locks (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS publishes (
            id BIGSERIAL PRIMARY KEY,
            draft_id BIGINT NOT NULL,
            channel TEXT NOT NULL,
            success INTEGER NOT NULL,
            url TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_publishes_draft ON publishes(draft_id)")


def _pg_credentials(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credentials (
            name TEXT PRIMARY KEY,
            key_id TEXT NOT NULL,
            value_enc TEXT NOT NULL,
            last4 TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("pg_001_initial_schema", _pg_initial_schema),
        ("pg_002_credentials", _pg_credentials),
    ]
