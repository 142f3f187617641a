from dataclasses import replace

import pytest
from conftest import add_raw_item

from newsdesk.errors import NotFoundError
from newsdesk.factcheck import FactChecker, content_score, title_terms
from newsdesk.models import FactCheckResult
from newsdesk.storage import (
    get_latest_fact_check,
    get_raw_item,
    get_source,
    insert_fact_check,
    list_trust_history,
    upsert_source,
)
from newsdesk.utils import utc_now_iso

LONG_TEXT = (
    "Am 12.05.2024 hat die Stadt 300 neue Wohnungen im Norden freigegeben. "
    "Die Vergabe erfolgt über das Wohnungsamt, Anträge sind ab Montag möglich "
    "und werden in der Reihenfolge des Eingangs bearbeitet."
)


def test_title_terms_keeps_long_words_only():
    assert title_terms("Neue Regeln für Aufenthaltstitel in München") == [
        "regeln",
        "aufenthaltstitel",
        "münchen",
    ]


def test_content_score_rewards_dates_and_numbers():
    assert content_score(LONG_TEXT) == pytest.approx(0.65)


def test_content_score_penalises_short_sensational_text():
    assert content_score("Schockierend: alles anders") == pytest.approx(0.3)


def test_cross_reference_counts_confirming_sources(conn, source):
    upsert_source(conn, {"id": "br24", "name": "BR24", "url": "https://br.example/feed", "trust_score": 0.8})
    item_id = add_raw_item(conn, source.id, "Neue Regeln für Aufenthaltstitel in München", "https://example.org/1")
    add_raw_item(conn, "br24", "Aufenthaltstitel: neue Regeln angekündigt", "https://br.example/1")
    add_raw_item(conn, "br24", "Aufenthaltstitel: weitere Regeln", "https://br.example/2")

    reference = FactChecker(conn).cross_reference(get_raw_item(conn, item_id))
    assert reference.confirmations == 1
    assert reference.confirming_sources == ["br24"]
    assert reference.score == pytest.approx(0.2 + 0.8 * 0.3)


def test_cross_reference_without_confirmation(conn, source):
    item_id = add_raw_item(conn, source.id, "Neue Regeln für Aufenthaltstitel in München", "https://example.org/1")
    reference = FactChecker(conn).cross_reference(get_raw_item(conn, item_id))
    assert reference.score == 0.0
    assert reference.confirmations == 0


def test_cross_reference_neutral_without_terms(conn, source):
    item_id = add_raw_item(conn, source.id, "Kurz", "https://example.org/1")
    assert FactChecker(conn).cross_reference(get_raw_item(conn, item_id)).score == 0.5


def test_check_blends_components_and_persists(conn, source):
    item_id = add_raw_item(conn, source.id, "Kurz", "https://example.org/1", summary=LONG_TEXT)
    result = FactChecker(conn).check(get_raw_item(conn, item_id))

    heuristic = content_score(" ".join(["Kurz", LONG_TEXT, LONG_TEXT]))
    expected = 0.3 * source.trust_score + 0.4 * 0.5 + 0.3 * heuristic
    assert result.score == pytest.approx(expected, abs=1e-4)
    assert 0.0 <= result.score <= 1.0
    assert get_latest_fact_check(conn, item_id).score == result.score
    assert get_raw_item(conn, item_id).fact_check_score == result.score


def test_check_unknown_source_raises(conn, source):
    item_id = add_raw_item(conn, source.id, "Kurz", "https://example.org/1")
    item = replace(get_raw_item(conn, item_id), source_id="gone")
    with pytest.raises(NotFoundError):
        FactChecker(conn).check(item)


def test_update_source_trust_blends_recent_scores(conn):
    upsert_source(conn, {"id": "blog", "name": "Blog", "url": "https://blog.example/feed", "trust_score": 0.9})
    item_id = add_raw_item(conn, "blog", "Titel", "https://blog.example/1")
    insert_fact_check(
        conn,
        FactCheckResult(raw_item_id=item_id, score=0.5, sources_confirmed=0, computed_at=utc_now_iso()),
    )

    checker = FactChecker(conn)
    assert checker.update_source_trust("blog") == pytest.approx(0.78)
    assert get_source(conn, "blog").trust_score == pytest.approx(0.78)
    history = list_trust_history(conn, "blog")
    assert history[0]["old_score"] == pytest.approx(0.9)
    assert history[0]["reason"] == "fact_check_performance"


def test_update_source_trust_without_checks_is_noop(conn, source):
    assert FactChecker(conn).update_source_trust(source.id) is None
    assert FactChecker(conn).update_all_source_trust() == 0
