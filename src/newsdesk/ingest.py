from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser

from .config import Config
from .dedupe import fingerprint
from .errors import FetchError
from .models import Source
from .normalize import clean_text, extract_main_content, extract_page_title, strip_html
from .storage import enqueue_job, insert_raw_item
from .utils import extract_published_at, log_event, utc_now_iso

PROCESS_ITEM_JOB = "process_item"

CATEGORY_PRIORITY = {
    "emergency": 1,
    "transport": 2,
    "official": 3,
    "ukraine": 4,
    "media": 5,
    "economy": 5,
    "international": 6,
    "aggregator": 7,
}
DEFAULT_PRIORITY = 5

BREAKING_MARKERS = ("breaking", "eilmeldung", "терміново", "срочно", "warnung", "alert")
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"
PAGE_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class ItemCandidate:
    url: str
    url_hash: str
    title: str
    summary: str
    body: str
    author: str | None
    published_at: str


@dataclass(frozen=True)
class FetchResult:
    source_id: str
    new_item_count: int
    total_item_count: int
    skipped_duplicates: int
    skipped_invalid: int
    raw_item_ids: list[int]


@dataclass(frozen=True)
class FeedCheck:
    success: bool
    message: str
    item_count: int = 0
    sample: dict[str, Any] | None = None


@dataclass(frozen=True)
class ArticlePage:
    url: str
    html: str
    text: str
    title: str


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except (URLError, TimeoutError) as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "Unknown fetch error"


def queue_priority(source: Source, title: str) -> int:
    lowered = (title or "").lower()
    if source.category == "emergency" or any(marker in lowered for marker in BREAKING_MARKERS):
        return 1
    return CATEGORY_PRIORITY.get(source.category, DEFAULT_PRIORITY)


def build_candidate(entry: Any, config: Config, fetched_at: str) -> ItemCandidate | None:
    link = entry.get("link") or entry.get("id")
    title = clean_text(strip_html(entry.get("title") or ""))
    if not link or not title or not str(link).startswith(("http://", "https://")):
        return None
    item_print = fingerprint(str(link), config.ingest.tracking_params)
    summary = strip_html(entry.get("summary") or entry.get("description") or "")
    body = ""
    content = entry.get("content") or []
    if content and isinstance(content, list):
        body = strip_html(content[0].get("value") or "")
    return ItemCandidate(
        url=item_print.canonical_url,
        url_hash=item_print.url_hash,
        title=title,
        summary=summary,
        body=body or summary,
        author=entry.get("author") or None,
        published_at=extract_published_at(entry, fetched_at),
    )


def fetch_source(
    conn,
    config: Config,
    source: Source,
    logger: logging.Logger | None = None,
) -> FetchResult:
    logger = logger or logging.getLogger("newsdesk.ingest")
    http_cfg = config.http
    http_status, content, error = _fetch_url(
        source.url,
        headers={"User-Agent": http_cfg.user_agent, "Accept": FEED_ACCEPT},
        timeout=http_cfg.timeout_seconds,
        max_retries=http_cfg.max_retries,
        backoff_seconds=http_cfg.backoff_seconds,
    )
    if error or not content:
        raise FetchError(source.id, error or "empty response", http_status)
    if http_status is not None and http_status >= 400:
        raise FetchError(source.id, f"http_status {http_status}", http_status)

    parsed = feedparser.parse(content)
    entries = list(parsed.entries or [])
    if parsed.bozo:
        if not entries:
            raise FetchError(source.id, f"feed_parse_error: {parsed.bozo_exception}", http_status)
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            source_id=source.id,
            error=str(parsed.bozo_exception),
        )

    entries = entries[: config.ingest.max_items_per_feed]
    fetched_at = utc_now_iso()
    raw_item_ids: list[int] = []
    skipped_duplicates = 0
    skipped_invalid = 0
    for entry in entries:
        candidate = build_candidate(entry, config, fetched_at)
        if candidate is None:
            skipped_invalid += 1
            continue
        item_id = insert_raw_item(
            conn,
            source_id=source.id,
            url=candidate.url,
            url_hash=candidate.url_hash,
            title=candidate.title,
            summary=candidate.summary or None,
            body=candidate.body or None,
            author=candidate.author,
            published_at=candidate.published_at,
            fetched_at=fetched_at,
            lang=source.lang,
        )
        if item_id is None:
            skipped_duplicates += 1
            continue
        raw_item_ids.append(item_id)
        enqueue_job(
            conn,
            PROCESS_ITEM_JOB,
            {"raw_item_id": item_id, "source_id": source.id},
            priority=queue_priority(source, candidate.title),
            max_attempts=config.scheduler.max_attempts,
        )

    log_event(
        logger,
        logging.INFO,
        "source_parsed",
        source_id=source.id,
        found_count=len(entries),
        new_count=len(raw_item_ids),
        skipped_duplicates=skipped_duplicates,
    )
    return FetchResult(
        source_id=source.id,
        new_item_count=len(raw_item_ids),
        total_item_count=len(entries),
        skipped_duplicates=skipped_duplicates,
        skipped_invalid=skipped_invalid,
        raw_item_ids=raw_item_ids,
    )


def check_feed(config: Config, url: str) -> FeedCheck:
    """Fetch and parse a feed URL without storing anything."""
    if not url or not url.startswith(("http://", "https://")):
        return FeedCheck(success=False, message="url must start with http:// or https://")
    http_cfg = config.http
    http_status, content, error = _fetch_url(
        url,
        headers={"User-Agent": http_cfg.user_agent, "Accept": FEED_ACCEPT},
        timeout=http_cfg.timeout_seconds,
        max_retries=http_cfg.max_retries,
        backoff_seconds=http_cfg.backoff_seconds,
    )
    if not error and http_status is not None and http_status >= 400:
        error = f"http_status {http_status}"
    if error or not content:
        return FeedCheck(success=False, message=f"feed could not be fetched: {error or 'empty response'}")

    parsed = feedparser.parse(content)
    fetched_at = utc_now_iso()
    candidates = [
        candidate
        for candidate in (build_candidate(entry, config, fetched_at) for entry in parsed.entries or [])
        if candidate is not None
    ]
    if not candidates:
        return FeedCheck(success=False, message="feed is empty or not RSS/Atom")
    first = candidates[0]
    return FeedCheck(
        success=True,
        message="feed is valid",
        item_count=len(candidates),
        sample={"title": first.title, "url": first.url, "published_at": first.published_at},
    )


def fetch_article_page(config: Config, url: str) -> ArticlePage:
    http_cfg = config.http
    http_status, content, error = _fetch_url(
        url,
        headers={"User-Agent": http_cfg.user_agent, "Accept": PAGE_ACCEPT},
        timeout=http_cfg.timeout_seconds,
        max_retries=http_cfg.max_retries,
        backoff_seconds=http_cfg.backoff_seconds,
    )
    if error or not content:
        raise FetchError(url, error or "empty response", http_status)
    if http_status is not None and http_status >= 400:
        raise FetchError(url, f"http_status {http_status}", http_status)
    html = extract_main_content(content)
    if html is None:
        raise FetchError(url, "no article content found", http_status)
    return ArticlePage(url=url, html=html, text=strip_html(html), title=extract_page_title(content))
