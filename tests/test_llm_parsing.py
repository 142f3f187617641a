from conftest import ARTICLE

from newsdesk.llm import prompts
from newsdesk.llm.parsing import SEO_SCHEMA, parse_article, parse_json_object


def test_parse_article_reads_tags():
    parsed = parse_article(ARTICLE.format(title="Neue Regeln"))

    assert parsed.title == "Neue Regeln"
    assert parsed.lead == "Kurzer Überblick zur Meldung."
    assert set(parsed.sections) == {"what", "why", "action"}
    assert parsed.body.startswith('<section id="what">')
    assert not parsed.was_fallback


def test_parse_article_without_tags_falls_back():
    raw = "Neue Regeln für Pendler\n\n<p>Ab Montag gilt ein neuer Fahrplan.</p>\n<p>Mehr folgt.</p>"
    parsed = parse_article(raw)

    assert parsed.was_fallback
    assert parsed.title == "Neue Regeln für Pendler"
    assert parsed.lead == "Ab Montag gilt ein neuer Fahrplan."
    assert parsed.sections == {}
    assert "Mehr folgt." in parsed.body
    assert not parsed.body.startswith("Neue Regeln")


def test_parse_article_empty():
    parsed = parse_article("")
    assert parsed.was_fallback
    assert parsed.title == ""


def test_parse_json_object_inside_prose():
    raw = 'Hier ist das Ergebnis:\n```json\n{"title": "T", "description": "D", "slug": "t"}\n```'
    parsed = parse_json_object(raw, SEO_SCHEMA)

    assert not parsed.was_fallback
    assert parsed.data["slug"] == "t"


def test_parse_json_object_failures():
    assert parse_json_object(None).error == "empty_response"
    assert parse_json_object("keine Daten").error == "no_json_object"
    assert parse_json_object("{not json}").error.startswith("invalid_json")

    missing = parse_json_object('{"title": "T"}', SEO_SCHEMA)
    assert missing.was_fallback
    assert missing.data == {}
    assert missing.error.startswith("schema_error")


def test_prompts_name_languages_and_glossary():
    system = prompts.translate_system("de", "en")
    assert "from German to English" in system
    assert "Aufenthaltstitel = residence permit" in system
    assert "Glossary" not in prompts.translate_system("en", "de")
    assert "Що сталося?" in prompts.rewrite_system("news", "ua")
    assert "Ukrainian" in prompts.seo_system("ua")
