from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import NotFoundError
from .models import FactCheckResult, RawItem
from .normalize import tokenize, word_count
from .storage import (
    average_fact_check_score,
    get_source,
    insert_fact_check,
    insert_log,
    list_recent_items_from_other_sources,
    list_sources,
    record_trust_change,
)
from .utils import log_event, to_iso, utc_now

TRUST_WEIGHT = 0.3
CROSS_REFERENCE_WEIGHT = 0.4
CONTENT_WEIGHT = 0.3

CROSS_REFERENCE_WINDOW_HOURS = 48
TRUST_WINDOW_DAYS = 30
TRUST_REASON = "fact_check_performance"

SENSATIONAL_MARKERS = (
    "schockierend",
    "unglaublich",
    "skandal",
    "geheim",
    "shocking",
    "unbelievable",
    "scandal",
    "secret",
    "сенсация",
    "шок",
    "скандал",
)

_DATE_PATTERN = re.compile(r"\b\d{1,2}\.\d{1,2}\.\d{2,4}\b")
_NUMBER_PATTERN = re.compile(r"\d+")

logger = logging.getLogger("newsdesk.factcheck")


@dataclass(frozen=True)
class CrossReference:
    score: float
    confirmations: int
    confirming_sources: list[str]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def title_terms(title: str) -> list[str]:
    terms: list[str] = []
    for token in tokenize(title):
        if len(token) > 4 and token not in terms:
            terms.append(token)
    return terms[:5]


def content_score(text: str) -> float:
    score = 0.5
    lowered = (text or "").lower()
    for marker in SENSATIONAL_MARKERS:
        if marker in lowered:
            score -= 0.1
    if _DATE_PATTERN.search(lowered):
        score += 0.1
    if _NUMBER_PATTERN.search(lowered):
        score += 0.05
    words = word_count(lowered)
    if words < 20:
        score -= 0.1
    elif words > 100:
        score += 0.1
    return clamp(score)


class FactChecker:
    """Scores raw items and feeds the scores back into source trust."""

    def __init__(self, conn, update_trust_after_check: bool = False) -> None:
        self.conn = conn
        self.update_trust_after_check = update_trust_after_check

    def check(self, item: RawItem, now: datetime | None = None) -> FactCheckResult:
        now = now or utc_now()
        source = get_source(self.conn, item.source_id)
        if source is None:
            raise NotFoundError(f"source {item.source_id} not found")

        reference = self.cross_reference(item, now)
        text = " ".join(part for part in (item.title, item.summary, item.body) if part)
        heuristic = content_score(text)
        score = clamp(
            TRUST_WEIGHT * source.trust_score
            + CROSS_REFERENCE_WEIGHT * reference.score
            + CONTENT_WEIGHT * heuristic
        )
        result = FactCheckResult(
            raw_item_id=item.id,
            score=round(score, 4),
            sources_confirmed=reference.confirmations,
            computed_at=to_iso(now),
            details={
                "source_trust": source.trust_score,
                "cross_reference": round(reference.score, 4),
                "confirming_sources": reference.confirming_sources,
                "content": round(heuristic, 4),
            },
        )
        insert_fact_check(self.conn, result)
        log_event(
            logger,
            logging.DEBUG,
            "fact_check_complete",
            raw_item_id=item.id,
            score=result.score,
            confirmations=reference.confirmations,
        )
        if self.update_trust_after_check:
            self.update_source_trust(source.id, now)
        return result

    def cross_reference(self, item: RawItem, now: datetime | None = None) -> CrossReference:
        """Count other sources that published a similar title recently.

        A title matches when it shares at least two of the item's significant
        words (or all of them when the item has fewer than two).
        """
        now = now or utc_now()
        terms = title_terms(item.title)
        if not terms:
            return CrossReference(score=0.5, confirmations=0, confirming_sources=[])

        since = to_iso(now - timedelta(hours=CROSS_REFERENCE_WINDOW_HOURS))
        required = min(2, len(terms))
        confirming: dict[str, float] = {}
        for source_id, title, trust in list_recent_items_from_other_sources(
            self.conn, item.id, item.source_id, since
        ):
            if source_id in confirming:
                continue
            other = set(tokenize(title))
            if sum(1 for term in terms if term in other) >= required:
                confirming[source_id] = trust

        if not confirming:
            return CrossReference(score=0.0, confirmations=0, confirming_sources=[])
        confirmations = len(confirming)
        avg_trust = sum(confirming.values()) / confirmations
        score = clamp(confirmations * 0.2 + avg_trust * 0.3)
        return CrossReference(
            score=score,
            confirmations=confirmations,
            confirming_sources=sorted(confirming),
        )

    def update_source_trust(self, source_id: str, now: datetime | None = None) -> float | None:
        """Blend the source's trust with its recent fact-check average.

        Returns the new trust score, or None when there is nothing to average.
        """
        now = now or utc_now()
        source = get_source(self.conn, source_id)
        if source is None:
            raise NotFoundError(f"source {source_id} not found")
        since = to_iso(now - timedelta(days=TRUST_WINDOW_DAYS))
        average = average_fact_check_score(self.conn, source_id, since)
        if average is None:
            return None
        new_score = round(clamp(0.7 * source.trust_score + 0.3 * average), 2)
        if new_score != source.trust_score:
            record_trust_change(self.conn, source_id, source.trust_score, new_score, TRUST_REASON)
            insert_log(
                self.conn,
                "info",
                f"Trust score of {source.name} changed",
                {"source_id": source_id, "old": source.trust_score, "new": new_score},
            )
            log_event(
                logger,
                logging.INFO,
                "source_trust_updated",
                source_id=source_id,
                old=source.trust_score,
                new=new_score,
            )
        return new_score

    def update_all_source_trust(self, now: datetime | None = None) -> int:
        changed = 0
        for source in list_sources(self.conn):
            new_score = self.update_source_trust(source.id, now)
            if new_score is not None and new_score != source.trust_score:
                changed += 1
        return changed
