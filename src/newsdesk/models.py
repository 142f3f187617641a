from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ITEM_NEW = "new"
ITEM_PROCESSING = "processing"
ITEM_PROCESSED = "processed"
ITEM_DUPLICATE = "duplicate"
ITEM_REJECTED = "rejected"

DRAFT_AI = "ai_draft"
DRAFT_PENDING = "pending_ok"
DRAFT_AUTO_READY = "auto_ready"
DRAFT_APPROVED = "approved"
DRAFT_SCHEDULED = "scheduled"
DRAFT_PUBLISHED = "published"
DRAFT_PUBLISH_FAILED = "publish_failed"
DRAFT_REJECTED = "rejected"
DRAFT_UNPUBLISHED = "unpublished"

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    url: str
    lang: str
    category: str
    trust_score: float
    fetch_interval_minutes: int
    enabled: bool
    last_fetched_at: str | None
    error_count: int
    last_error: str | None
    quarantine_until: str | None


@dataclass(frozen=True)
class RawItem:
    id: int
    source_id: str
    url: str
    url_hash: str
    title: str
    summary: str | None
    body: str | None
    author: str | None
    published_at: str | None
    fetched_at: str
    lang: str
    status: str
    fact_check_score: float | None


@dataclass(frozen=True)
class FactCheckResult:
    raw_item_id: int
    score: float
    sources_confirmed: int
    computed_at: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Draft:
    id: int | None
    raw_item_id: int | None
    lang: str
    title: str
    lead: str
    body: str
    category: str
    tags: list[str]
    risk_flags: list[str]
    seo_title: str
    meta_description: str
    slug: str
    status: str
    gate_reason: str | None = None
    keywords: list[str] = field(default_factory=list)
    sources: list[dict[str, Any]] = field(default_factory=list)
    featured_media: str | None = None
    scheduled_at: str | None = None
    channels: list[str] = field(default_factory=list)
    published_at: str | None = None
    published_url: str | None = None
    created_by: str | None = None
    edited_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class QueueJob:
    id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    status: str
    attempts: int
    max_attempts: int
    scheduled_at: str
    locked_at: str | None
    error: str | None
    created_at: str
    finished_at: str | None


@dataclass(frozen=True)
class PublishRecord:
    id: int
    draft_id: int
    channel: str
    success: bool
    url: str | None
    error: str | None
    created_at: str


@dataclass(frozen=True)
class Analysis:
    keywords: list[str]
    category: str
    entities: dict[str, list[str]]
    sentiment: str
    was_fallback: bool


@dataclass(frozen=True)
class ParsedArticle:
    title: str
    lead: str
    body: str
    sections: dict[str, str]
    was_fallback: bool


@dataclass(frozen=True)
class SeoMeta:
    title: str
    description: str
    keywords: list[str]
    slug: str
    was_fallback: bool


@dataclass(frozen=True)
class GateDecision:
    status: str
    gate_reason: str | None
    reasons: list[str]


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PublishResult:
    draft_id: int
    success: bool
    url: str | None
    error: str | None
    results: list[ChannelResult]


@dataclass(frozen=True)
class RunResult:
    hook: str
    success: bool
    counters: dict[str, int]
    errors: list[str]
    error: str | None = None
    message: str | None = None
    skipped: bool = False
