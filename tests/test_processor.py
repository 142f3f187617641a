import json
import logging

import pytest
from conftest import StubFactChecker, StubGenerator, add_raw_item

from newsdesk import ingest
from newsdesk.cli import build_parser
from newsdesk.errors import FetchError, GenerationError
from newsdesk.llm import prompts
from newsdesk.llm.base import DisabledTextGenerator, GenerationResult
from newsdesk.models import DRAFT_AUTO_READY, DRAFT_PENDING, ITEM_DUPLICATE, ITEM_NEW, ITEM_PROCESSED
from newsdesk.processor import (
    DraftProcessor,
    determine_status,
    extract_keywords,
    guess_category,
    risk_flags,
)
from newsdesk.storage import get_raw_item, list_drafts, upsert_source


def _processor(conn, config, generator=None, score=0.8):
    return DraftProcessor(conn, config, generator or StubGenerator(), StubFactChecker(score))


def test_determine_status_passes_clean_draft(make_config):
    pipeline = make_config().pipeline
    decision = determine_status("lokales", 0.8, 0.9, False, True, pipeline)
    assert decision.status == DRAFT_AUTO_READY
    assert decision.gate_reason is None


def test_determine_status_records_every_reason_in_order(make_config):
    pipeline = make_config().pipeline
    decision = determine_status("Politik", 0.4, 0.5, True, False, pipeline)
    assert decision.status == DRAFT_PENDING
    assert decision.reasons == [
        "category_requires_review",
        "low_fact_check_score",
        "low_source_trust",
        "sensitive_topic",
        "auto_publish_disabled",
    ]
    assert decision.gate_reason.startswith("category_requires_review, low_fact_check_score")


def test_risk_flags(make_config):
    pipeline = make_config().pipeline
    assert risk_flags("wirtschaft", 0.5, True, pipeline) == [
        "wirtschaft",
        "sensitive",
        "low_trust_source",
        "sensitive_content",
    ]
    assert risk_flags("lokales", 0.9, False, pipeline) == []


def test_guess_category_and_keywords():
    text = "Die MVG meldet Störungen bei der U-Bahn, der Fahrplan der Bahn ändert sich."
    assert guess_category(text) == "verkehr"
    assert guess_category("") == "nachrichten"
    keywords = extract_keywords("<p>Rathaus Rathaus München Stadtrat</p>")
    assert keywords[0] == "rathaus"
    assert "der" not in keywords


def test_process_item_creates_auto_ready_drafts(conn, source, make_config):
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    generator = StubGenerator()

    outcome = _processor(conn, config, generator).process_item(item_id)

    assert outcome.status == ITEM_PROCESSED
    assert len(outcome.draft_ids) == 2
    assert outcome.fact_check_score == 0.8
    drafts = {draft.lang: draft for draft in list_drafts(conn, raw_item_id=item_id)}
    assert set(drafts) == {"de", "en"}
    for draft in drafts.values():
        assert draft.status == DRAFT_AUTO_READY
        assert draft.gate_reason is None
        assert draft.title == "Neue Meldung aus München"
        assert draft.slug == "seo-titel"
        assert draft.category == "lokales"
        assert draft.tags == ["münchen", "rathaus"]
        assert draft.sources[0]["name"] == "Stadt München"
        assert '<section id="what">' in draft.body
    assert get_raw_item(conn, item_id).status == ITEM_PROCESSED
    assert any("translator" in call.lower() for call in generator.calls)


def test_process_item_is_idempotent(conn, source, make_config):
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    processor = _processor(conn, config)
    processor.process_item(item_id)

    again = processor.process_item(item_id)
    assert again.status == ITEM_PROCESSED
    assert again.draft_ids == []
    assert len(list_drafts(conn, raw_item_id=item_id)) == 2


def test_gated_category_waits_for_review(conn, source, make_config):
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(conn, source.id, "Neue Regeln 2024", "https://example.org/1")
    _processor(conn, config, StubGenerator(category="politik")).process_item(item_id)

    drafts = list_drafts(conn, raw_item_id=item_id)
    assert len(drafts) == 2
    for draft in drafts:
        assert draft.status == DRAFT_PENDING
        assert draft.gate_reason == "category_requires_review"
        assert draft.risk_flags == ["politik", "sensitive"]


def test_german_past_tense_does_not_gate_as_sensitive(conn, source, make_config):
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(
        conn,
        source.id,
        "Neue Regeln 2024",
        "https://example.org/1",
        summary="Das Treffen im Rathaus war erfolgreich.",
    )
    _processor(conn, config).process_item(item_id)

    drafts = list_drafts(conn, raw_item_id=item_id)
    assert len(drafts) == 2
    for draft in drafts:
        assert draft.status == DRAFT_AUTO_READY
        assert draft.gate_reason is None


def test_low_score_and_low_trust_are_gated(conn, make_config):
    upsert_source(conn, {"id": "blog", "name": "Blog", "url": "https://blog.example/feed", "trust_score": 0.4})
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(conn, "blog", "Neue Regeln im Rathaus", "https://blog.example/1")
    _processor(conn, config, score=0.3).process_item(item_id)

    draft = list_drafts(conn, raw_item_id=item_id)[0]
    assert draft.status == DRAFT_PENDING
    assert draft.gate_reason == "low_fact_check_score, low_source_trust"
    assert "low_trust_source" in draft.risk_flags


def test_duplicate_item_gets_no_drafts(conn, source, make_config):
    upsert_source(conn, {"id": "br24", "name": "BR24", "url": "https://br.example/feed"})
    first = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    second = add_raw_item(conn, "br24", "Neue Regeln im Rathaus", "https://br.example/1")

    outcome = _processor(conn, make_config()).process_item(second)

    assert outcome.status == ITEM_DUPLICATE
    assert outcome.duplicate_of == first
    assert list_drafts(conn, raw_item_id=second) == []
    assert get_raw_item(conn, second).status == ITEM_DUPLICATE


def test_missing_item(conn, make_config):
    assert _processor(conn, make_config()).process_item(999).status == "missing"


def test_generation_failure_raises_and_resets_item(conn, source, make_config):
    item_id = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    processor = _processor(conn, make_config(), StubGenerator(fail_rewrite=True))

    with pytest.raises(GenerationError):
        processor.process_item(item_id)

    assert get_raw_item(conn, item_id).status == ITEM_NEW
    assert list_drafts(conn, raw_item_id=item_id) == []


def test_generation_failure_falls_back_on_last_attempt(conn, source, make_config):
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    item_id = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    processor = _processor(conn, config, StubGenerator(fail_rewrite=True))

    outcome = processor.process_item(item_id, allow_fallback=True)

    assert outcome.status == ITEM_PROCESSED
    for draft in list_drafts(conn, raw_item_id=item_id):
        assert draft.status == DRAFT_PENDING
        assert draft.gate_reason == "generation_fallback"
        assert draft.title == "Neue Regeln im Rathaus"
        assert draft.slug == "neue-regeln-im-rathaus"


def test_disabled_generator_uses_fallbacks(conn, source, make_config):
    item_id = add_raw_item(conn, source.id, "Neue Regeln im Rathaus", "https://example.org/1")
    processor = _processor(conn, make_config(), DisabledTextGenerator())

    outcome = processor.process_item(item_id)

    assert outcome.status == ITEM_PROCESSED
    drafts = list_drafts(conn, raw_item_id=item_id)
    assert len(drafts) == 2
    for draft in drafts:
        assert draft.status == DRAFT_PENDING
        assert "generation_fallback" in draft.gate_reason
        assert draft.category == "lokales"


def test_manual_article_drafts_wait_for_approval(conn, make_config):
    processor = _processor(conn, make_config())
    drafts = processor.submit_manual_article(
        "Sommerfest im Westpark",
        "Am Samstag feiert der Bezirk.",
        "<p>Programm ab 14 Uhr.</p>",
        target_langs=["de", "en"],
        created_by="anna",
    )

    assert set(drafts) == {"de", "en"}
    stored = list_drafts(conn)
    assert len(stored) == 2
    for draft in stored:
        assert draft.status == DRAFT_PENDING
        assert draft.gate_reason == "manual_submission"
        assert draft.raw_item_id is None
        assert draft.created_by == "anna"


ARTICLE_PAGE = """<html><head><title>Stadtportal</title></head><body>
<article><h1>Unwetter in München</h1><p>Der Wetterdienst warnt vor Gewittern.</p></article>
</body></html>
""".encode("utf-8")


class PageReadingGenerator(StubGenerator):
    def complete(self, prompt, system_prompt="", temperature=0.7, max_tokens=4000):
        if system_prompt == prompts.ARTICLE_PAGE_SYSTEM:
            self.calls.append(system_prompt)
            return GenerationResult(
                success=True,
                content=json.dumps(
                    {
                        "title": "Unwetter in München",
                        "lead": "Der Wetterdienst warnt.",
                        "body": "<p>Gewitter ab dem Nachmittag.</p>",
                    }
                ),
            )
        return super().complete(prompt, system_prompt, temperature, max_tokens)


def test_article_from_url_falls_back_to_page_text(conn, make_config, monkeypatch):
    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (200, ARTICLE_PAGE, None))
    processor = _processor(conn, make_config(), DisabledTextGenerator())

    drafts = processor.submit_article_from_url("https://example.org/unwetter", created_by="anna")

    assert list(drafts) == ["de"]
    draft = list_drafts(conn)[0]
    assert draft.title == "Unwetter in München"
    assert "Wetterdienst warnt" in draft.body
    assert draft.status == DRAFT_PENDING
    assert draft.gate_reason == "manual_submission"
    assert draft.sources[0]["name"] == "example.org"
    assert draft.sources[0]["url"] == "https://example.org/unwetter"


def test_article_from_url_is_extracted_and_rewritten(conn, make_config, monkeypatch):
    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (200, ARTICLE_PAGE, None))
    generator = PageReadingGenerator()
    processor = _processor(conn, make_config(), generator)

    drafts = processor.submit_article_from_url("https://example.org/unwetter")

    assert set(drafts) == {"de", "en"}
    assert prompts.ARTICLE_PAGE_SYSTEM in generator.calls
    assert {draft.title for draft in list_drafts(conn)} == {"Neue Meldung aus München"}


def test_article_from_url_without_headline_raises(conn, make_config, monkeypatch):
    page = b"<html><body><main><p>Nur ein Absatz.</p></main></body></html>"
    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (200, page, None))
    processor = _processor(conn, make_config(), DisabledTextGenerator())

    with pytest.raises(FetchError):
        processor.submit_article_from_url("https://example.org/leer")
    assert list_drafts(conn) == []


def test_cli_drafts_from_url(conn, monkeypatch, capsys):
    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (200, ARTICLE_PAGE, None))
    args = build_parser().parse_args(["drafts", "from-url", "https://example.org/unwetter", "--editor", "anna"])

    assert args.func(args, logging.getLogger("test")) == 0
    assert '"de"' in capsys.readouterr().out
    assert [draft.created_by for draft in list_drafts(conn)] == ["anna"]

    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (None, None, "timed out"))
    assert args.func(args, logging.getLogger("test")) == 1
