from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlparse

from .config import Config, PipelineConfig
from .dedupe import find_duplicate_of
from .errors import FetchError, GenerationError
from .factcheck import FactChecker
from .ingest import fetch_article_page
from .llm.base import DisabledTextGenerator, GenerationResult, TextGenerator
from .llm.parsing import parse_article
from .models import (
    DRAFT_AUTO_READY,
    DRAFT_PENDING,
    ITEM_DUPLICATE,
    ITEM_NEW,
    ITEM_PROCESSED,
    ITEM_PROCESSING,
    ITEM_REJECTED,
    Analysis,
    Draft,
    FactCheckResult,
    GateDecision,
    ParsedArticle,
    RawItem,
    SeoMeta,
    Source,
)
from .normalize import clean_text, matching_keywords, strip_html, tokenize, truncate
from .storage import (
    get_latest_fact_check,
    get_raw_item,
    get_source,
    insert_draft,
    insert_log,
    list_drafts,
    set_raw_item_status,
)
from .utils import log_event, parse_iso, slugify, utc_now

DEFAULT_CATEGORY = "nachrichten"

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "politik": ("bundestag", "regierung", "minister", "partei", "wahl", "gesetz", "politik"),
    "wirtschaft": ("wirtschaft", "unternehmen", "aktie", "börse", "euro", "inflation", "arbeitsmarkt"),
    "migration": ("aufenthaltstitel", "bamf", "flüchtling", "asyl", "integration", "migration", "ukrainer"),
    "gesellschaft": ("bildung", "schule", "universität", "kultur", "sozial", "gesellschaft"),
    "verkehr": ("mvg", "bahn", "verkehr", "stau", "bus", "u-bahn", "s-bahn", "fahrplan"),
    "lokales": ("münchen", "bayern", "rathaus", "stadt", "bezirk", "gemeinde"),
    "wetter": ("wetter", "unwetter", "warnung", "sturm", "regen", "temperatur"),
}

STOP_WORDS = frozenset(
    """
    der die das und ist in von mit für auf den des dem ein eine einer als auch es an
    werden aus er hat dass sie nach wird bei um am sind noch wie einem über einen so
    zum kann nur sein ich nicht the and is to of for a on with that this from
    """.split()
)

REASON_CATEGORY = "category_requires_review"
REASON_LOW_SCORE = "low_fact_check_score"
REASON_LOW_TRUST = "low_source_trust"
REASON_SENSITIVE = "sensitive_topic"
REASON_AUTO_PUBLISH_OFF = "auto_publish_disabled"
REASON_GENERATION_FALLBACK = "generation_fallback"
REASON_MANUAL = "manual_submission"

SEO_TITLE_MAX = 60
SEO_DESCRIPTION_MAX = 155
LEAD_FALLBACK_MAX = 300
PAGE_LEAD_FALLBACK_MAX = 200
PAGE_HTML_MAX = 20000

logger = logging.getLogger("newsdesk.processor")


class FactCheckCapability(Protocol):
    def check(self, item: RawItem) -> FactCheckResult: ...


@dataclass(frozen=True)
class ProcessOutcome:
    raw_item_id: int
    status: str
    draft_ids: list[int] = field(default_factory=list)
    duplicate_of: int | None = None
    fact_check_score: float | None = None


def determine_status(
    category: str,
    score: float,
    trust: float,
    sensitive: bool,
    auto_publish: bool,
    config: PipelineConfig,
) -> GateDecision:
    """Gate a generated draft.

    The checks are evaluated in priority order; every one that triggers is
    recorded so the reason list doubles as an audit trail.
    """
    reasons: list[str] = []
    if category.lower() in config.categories_require_approval:
        reasons.append(REASON_CATEGORY)
    if score < config.fact_check_threshold:
        reasons.append(REASON_LOW_SCORE)
    if trust < config.source_trust_threshold:
        reasons.append(REASON_LOW_TRUST)
    if sensitive:
        reasons.append(REASON_SENSITIVE)
    if not auto_publish:
        reasons.append(REASON_AUTO_PUBLISH_OFF)
    if reasons:
        return GateDecision(status=DRAFT_PENDING, gate_reason=", ".join(reasons), reasons=reasons)
    return GateDecision(status=DRAFT_AUTO_READY, gate_reason=None, reasons=[])


def risk_flags(category: str, trust: float, sensitive: bool, config: PipelineConfig) -> list[str]:
    flags: list[str] = []
    if category.lower() in config.categories_require_approval:
        flags.extend([category.lower(), "sensitive"])
    if trust < config.source_trust_threshold:
        flags.append("low_trust_source")
    if sensitive:
        flags.append("sensitive_content")
    return flags


def guess_category(text: str) -> str:
    lowered = (text or "").lower()
    best = DEFAULT_CATEGORY
    best_score = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        score = sum(lowered.count(keyword) for keyword in keywords)
        if score > best_score:
            best, best_score = category, score
    return best


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    words = [
        word
        for word in tokenize(strip_html(text))
        if len(word) > 3 and word not in STOP_WORDS
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def analysis_from_entities(result: GenerationResult, text: str) -> Analysis:
    if not result.success:
        return Analysis(
            keywords=extract_keywords(text),
            category=guess_category(text),
            entities={"persons": [], "organizations": [], "locations": [], "dates": []},
            sentiment="neutral",
            was_fallback=True,
        )
    data = result.data
    entities = data.get("entities") or {}
    keywords = [str(word) for word in data.get("keywords") or [] if str(word).strip()]
    category = str(data.get("category") or "").strip().lower() or guess_category(text)
    return Analysis(
        keywords=keywords or extract_keywords(text),
        category=category,
        entities={key: [str(value) for value in values] for key, values in entities.items()},
        sentiment=_sentiment_label(data.get("sentiment")),
        was_fallback=False,
    )


def seo_from_result(result: GenerationResult, title: str, lead: str, keywords: list[str]) -> SeoMeta:
    if not result.success:
        return seo_fallback(title, lead, keywords)
    data = result.data
    seo_title = truncate(str(data.get("title") or title), SEO_TITLE_MAX)
    description = truncate(str(data.get("description") or lead or title), SEO_DESCRIPTION_MAX)
    seo_keywords = [str(word) for word in data.get("keywords") or [] if str(word).strip()]
    slug = slugify(str(data.get("slug") or "")) or slugify(title)
    return SeoMeta(
        title=seo_title,
        description=description,
        keywords=seo_keywords or keywords,
        slug=slug,
        was_fallback=False,
    )


def seo_fallback(title: str, lead: str, keywords: list[str]) -> SeoMeta:
    return SeoMeta(
        title=truncate(title, SEO_TITLE_MAX),
        description=truncate(lead or title, SEO_DESCRIPTION_MAX),
        keywords=list(keywords),
        slug=slugify(title),
        was_fallback=True,
    )


class DraftProcessor:
    """Turns one raw item into gated drafts for every target language."""

    def __init__(
        self,
        conn,
        config: Config,
        generator: TextGenerator,
        fact_checker: FactCheckCapability | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.generator = generator
        self.fact_checker = fact_checker or FactChecker(conn)

    def process_item(self, raw_item_id: int, allow_fallback: bool = False) -> ProcessOutcome:
        item = get_raw_item(self.conn, raw_item_id)
        if item is None:
            log_event(logger, logging.WARNING, "raw_item_missing", raw_item_id=raw_item_id)
            return ProcessOutcome(raw_item_id=raw_item_id, status="missing")
        if item.status in {ITEM_PROCESSED, ITEM_DUPLICATE, ITEM_REJECTED}:
            return ProcessOutcome(raw_item_id=raw_item_id, status=item.status)
        source = get_source(self.conn, item.source_id)
        if source is None:
            set_raw_item_status(self.conn, item.id, ITEM_REJECTED)
            log_event(logger, logging.WARNING, "raw_item_source_missing", raw_item_id=item.id)
            return ProcessOutcome(raw_item_id=raw_item_id, status=ITEM_REJECTED)

        set_raw_item_status(self.conn, item.id, ITEM_PROCESSING)
        final_status = ITEM_NEW
        try:
            duplicate_of = find_duplicate_of(
                self.conn, item, window_hours=self.config.ingest.duplicate_window_hours
            )
            if duplicate_of is not None:
                final_status = ITEM_DUPLICATE
                log_event(
                    logger,
                    logging.INFO,
                    "raw_item_duplicate",
                    raw_item_id=item.id,
                    duplicate_of=duplicate_of,
                )
                return ProcessOutcome(
                    raw_item_id=item.id, status=ITEM_DUPLICATE, duplicate_of=duplicate_of
                )

            analysis = self.analyze(item)
            fact_check = get_latest_fact_check(self.conn, item.id) or self.fact_checker.check(item)
            existing = {draft.lang for draft in list_drafts(self.conn, raw_item_id=item.id)}
            draft_ids: list[int] = []
            for lang in self.config.pipeline.target_languages:
                if lang in existing:
                    continue
                draft = self.generate_draft(item, source, analysis, fact_check, lang, allow_fallback)
                draft_id = insert_draft(self.conn, draft)
                if draft_id is not None:
                    draft_ids.append(draft_id)
            final_status = ITEM_PROCESSED
        finally:
            set_raw_item_status(self.conn, item.id, final_status)

        insert_log(
            self.conn,
            "info",
            f"Processed item {item.id}: {len(draft_ids)} drafts",
            {
                "raw_item_id": item.id,
                "category": analysis.category,
                "fact_check_score": fact_check.score,
                "analysis_fallback": analysis.was_fallback,
            },
        )
        log_event(
            logger,
            logging.INFO,
            "raw_item_processed",
            raw_item_id=item.id,
            drafts=len(draft_ids),
            score=fact_check.score,
        )
        return ProcessOutcome(
            raw_item_id=item.id,
            status=ITEM_PROCESSED,
            draft_ids=draft_ids,
            fact_check_score=fact_check.score,
        )

    def analyze(self, item: RawItem) -> Analysis:
        text = f"{item.title}\n\n{item.body or item.summary or ''}"
        result = self.generator.extract_entities(text)
        analysis = analysis_from_entities(result, text)
        if analysis.was_fallback:
            log_event(
                logger,
                logging.WARNING,
                "analysis_fallback",
                raw_item_id=item.id,
                error=result.error,
            )
        return analysis

    def generate_draft(
        self,
        item: RawItem,
        source: Source,
        analysis: Analysis,
        fact_check: FactCheckResult,
        lang: str,
        allow_fallback: bool = False,
    ) -> Draft:
        content = item.body or item.summary or item.title
        style = self.config.pipeline.rewrite_style
        result = self.generator.rewrite(content, style, item.lang)
        if result.success and lang != item.lang:
            result = self.generator.translate(result.content, item.lang, lang)

        generation_fallback = False
        if result.success:
            parsed = parse_article(result.content)
        else:
            if not (allow_fallback or isinstance(self.generator, DisabledTextGenerator)):
                raise GenerationError(f"generation failed for {lang}: {result.error}")
            generation_fallback = True
            parsed = ParsedArticle(
                title=item.title,
                lead=truncate(item.summary or "", LEAD_FALLBACK_MAX),
                body=item.body or item.summary or "",
                sections={},
                was_fallback=True,
            )
            log_event(
                logger,
                logging.WARNING,
                "generation_fallback",
                raw_item_id=item.id,
                lang=lang,
                error=result.error,
            )

        title = parsed.title or item.title
        lead = parsed.lead or truncate(item.summary or "", LEAD_FALLBACK_MAX)
        seo = seo_from_result(
            self.generator.generate_seo(f"{title}\n\n{lead}\n\n{parsed.body}", lang)
            if result.success
            else GenerationResult(success=False, error="generation_fallback"),
            title,
            lead,
            analysis.keywords,
        )

        pipeline = self.config.pipeline
        sensitive = bool(
            matching_keywords(f"{item.title} {item.summary or ''}", pipeline.sensitive_keywords)
        )
        decision = determine_status(
            analysis.category,
            fact_check.score,
            source.trust_score,
            sensitive,
            pipeline.auto_publish_enabled,
            pipeline,
        )
        status, gate_reason = decision.status, decision.gate_reason
        if generation_fallback:
            reasons = decision.reasons + [REASON_GENERATION_FALLBACK]
            status, gate_reason = DRAFT_PENDING, ", ".join(reasons)

        return Draft(
            id=None,
            raw_item_id=item.id,
            lang=lang,
            title=title,
            lead=lead,
            body=parsed.body,
            category=analysis.category,
            tags=list(analysis.keywords),
            risk_flags=risk_flags(analysis.category, source.trust_score, sensitive, pipeline),
            seo_title=seo.title,
            meta_description=seo.description,
            slug=seo.slug,
            status=status,
            gate_reason=gate_reason,
            keywords=seo.keywords,
            sources=[_source_reference(source, item)],
        )

    def submit_manual_article(
        self,
        title: str,
        lead: str,
        body: str,
        source_lang: str | None = None,
        target_langs: list[str] | None = None,
        category: str = DEFAULT_CATEGORY,
        tags: list[str] | None = None,
        sources: list[dict[str, Any]] | None = None,
        created_by: str | None = None,
    ) -> dict[str, int]:
        """Create editor-written drafts, translated into each target language.

        Every draft waits for approval. Languages whose translation fails are
        skipped; the source-language draft is always created.
        """
        source_lang = source_lang or self.config.app.default_language
        target_langs = list(target_langs or self.config.pipeline.target_languages)
        tags = list(tags or [])
        sources = list(sources or [])
        drafts: dict[str, int] = {}

        draft_id = insert_draft(
            self.conn,
            self._manual_draft(title, lead, body, source_lang, category, tags, sources, created_by),
        )
        if draft_id is not None:
            drafts[source_lang] = draft_id

        for lang in target_langs:
            if lang == source_lang:
                continue
            translated_title = self.generator.translate(title, source_lang, lang)
            translated_lead = self.generator.translate(lead, source_lang, lang) if lead else None
            translated_body = self.generator.translate(body, source_lang, lang)
            if not translated_title.success or not translated_body.success:
                log_event(
                    logger,
                    logging.WARNING,
                    "manual_translation_failed",
                    lang=lang,
                    error=translated_title.error or translated_body.error,
                )
                continue
            draft_id = insert_draft(
                self.conn,
                self._manual_draft(
                    translated_title.content.strip(),
                    translated_lead.content.strip() if translated_lead and translated_lead.success else "",
                    translated_body.content,
                    lang,
                    category,
                    tags,
                    sources,
                    created_by,
                ),
            )
            if draft_id is not None:
                drafts[lang] = draft_id

        insert_log(
            self.conn,
            "info",
            f"Manual article submitted in {len(drafts)} languages",
            {"drafts": drafts, "created_by": created_by},
        )
        return drafts

    def submit_article_from_url(
        self,
        url: str,
        source_lang: str | None = None,
        target_langs: list[str] | None = None,
        category: str = DEFAULT_CATEGORY,
        created_by: str | None = None,
    ) -> dict[str, int]:
        """Turn a web page into editor drafts.

        The generator pulls title, lead and body out of the page HTML; when it
        cannot, the page's <h1> or <title> and its plain text are used. The
        article is rewritten once and then submitted like a manual article.
        Raises FetchError when the page cannot be read or has no headline.
        """
        source_lang = source_lang or self.config.app.default_language
        page = fetch_article_page(self.config, url)

        extracted = self.generator.extract_article(page.html[:PAGE_HTML_MAX])
        if extracted.success:
            title = clean_text(str(extracted.data.get("title") or ""))
            lead = clean_text(str(extracted.data.get("lead") or ""))
            body = str(extracted.data.get("body") or "").strip() or page.text
        else:
            log_event(logger, logging.INFO, "page_extraction_fallback", url=url, error=extracted.error)
            title = ""
            lead = truncate(page.text, PAGE_LEAD_FALLBACK_MAX)
            body = page.text
        title = title or page.title
        if not title:
            raise FetchError(url, "no headline found on page")

        rewritten = self.generator.rewrite(
            f"{title}\n\n{lead}\n\n{body}", self.config.pipeline.rewrite_style, source_lang
        )
        if rewritten.success:
            parsed = parse_article(rewritten.content)
            title = parsed.title or title
            lead = parsed.lead or lead
            body = parsed.body or body

        return self.submit_manual_article(
            title,
            lead,
            body,
            source_lang=source_lang,
            target_langs=target_langs,
            category=category,
            sources=[
                {
                    "name": urlparse(url).hostname or url,
                    "url": url,
                    "date": utc_now().strftime("%d.%m.%Y"),
                }
            ],
            created_by=created_by,
        )

    def _manual_draft(
        self,
        title: str,
        lead: str,
        body: str,
        lang: str,
        category: str,
        tags: list[str],
        sources: list[dict[str, Any]],
        created_by: str | None,
    ) -> Draft:
        content = f"{title}\n\n{lead}\n\n{body}"
        keywords = extract_keywords(content)
        seo = seo_from_result(self.generator.generate_seo(content, lang), title, lead, keywords)
        return Draft(
            id=None,
            raw_item_id=None,
            lang=lang,
            title=title,
            lead=lead,
            body=body,
            category=category,
            tags=tags,
            risk_flags=[],
            seo_title=seo.title,
            meta_description=seo.description,
            slug=seo.slug,
            status=DRAFT_PENDING,
            gate_reason=REASON_MANUAL,
            keywords=seo.keywords,
            sources=sources,
            created_by=created_by,
        )


def _source_reference(source: Source, item: RawItem) -> dict[str, Any]:
    published = item.published_at or item.fetched_at
    return {
        "name": source.name,
        "url": item.url,
        "date": parse_iso(published).strftime("%d.%m.%Y"),
        "title": item.title,
        "summary": (item.summary or "")[:500],
    }


def _sentiment_label(value: Any) -> str:
    if isinstance(value, str):
        return value.strip().lower() or "neutral"
    try:
        score = float(value)
    except (TypeError, ValueError):
        return "neutral"
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"
