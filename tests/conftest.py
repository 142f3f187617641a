from __future__ import annotations

import json

import pytest

from newsdesk.config import build_config, merge_config
from newsdesk.llm.base import GenerationResult, TextGenerator
from newsdesk.models import ChannelResult, Draft, FactCheckResult
from newsdesk.channels import PrimaryChannel, PublishChannel
from newsdesk.storage import init_db, insert_draft, insert_raw_item, upsert_source
from newsdesk.utils import url_hash, utc_now_iso

ARTICLE = (
    "<title>{title}</title>\n"
    "<lead>Kurzer Überblick zur Meldung.</lead>\n"
    '<section id="what"><h2>Was ist passiert</h2><p>Details.</p></section>\n'
    '<section id="why"><h2>Warum ist das wichtig</h2><p>Hintergrund.</p></section>\n'
    '<section id="action"><h2>Was ist zu tun</h2><p>Hinweise.</p></section>'
)


class StubGenerator(TextGenerator):
    """Answers every prompt type with canned, well-formed replies."""

    name = "stub"

    def __init__(self, category="lokales", fail_rewrite=False):
        self.category = category
        self.fail_rewrite = fail_rewrite
        self.calls = []

    def complete(self, prompt, system_prompt="", temperature=0.7, max_tokens=4000):
        self.calls.append(system_prompt)
        lowered = system_prompt.lower()
        if "seo" in lowered:
            return GenerationResult(
                success=True,
                content=json.dumps(
                    {
                        "title": "SEO Titel",
                        "description": "SEO Beschreibung",
                        "keywords": ["münchen", "stadt"],
                        "slug": "seo-titel",
                    }
                ),
            )
        if "entities" in lowered or "entitäten" in lowered:
            return GenerationResult(
                success=True,
                content=json.dumps(
                    {
                        "entities": {"persons": [], "organizations": ["Stadt München"]},
                        "keywords": ["münchen", "rathaus"],
                        "category": self.category,
                        "sentiment": 0,
                    }
                ),
            )
        if "translat" in lowered or "übersetz" in lowered:
            return GenerationResult(success=True, content=prompt)
        if self.fail_rewrite:
            return GenerationResult(success=False, error="provider_down")
        return GenerationResult(success=True, content=ARTICLE.format(title="Neue Meldung aus München"))


class StubFactChecker:
    def __init__(self, score=0.8):
        self.score = score

    def check(self, item):
        return FactCheckResult(
            raw_item_id=item.id,
            score=self.score,
            sources_confirmed=2,
            computed_at=utc_now_iso(),
        )

    def update_all_source_trust(self, now=None):
        return 0


class RecordingPrimary(PrimaryChannel):
    name = "markdown_site"

    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, draft, primary_url=None):
        if self.fail:
            return ChannelResult(channel=self.name, success=False, error="disk full")
        self.published.append(draft.id)
        return ChannelResult(channel=self.name, success=True, url=f"https://news.test/{draft.lang}/{draft.slug}/")

    def unpublish(self, draft):
        return ChannelResult(channel=self.name, success=True)

    def set_featured_media(self, draft, media_url):
        return ChannelResult(channel=self.name, success=True)


class RecordingSecondary(PublishChannel):
    name = "telegram"

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def publish(self, draft, primary_url=None):
        self.calls.append((draft.id, primary_url))
        if self.fail:
            return ChannelResult(channel=self.name, success=False, error="chat not found")
        return ChannelResult(channel=self.name, success=True, url="https://t.me/newsdesk/1")


@pytest.fixture
def conn(tmp_path, monkeypatch):
    monkeypatch.setenv("ND_DATA_DIR", str(tmp_path / "data"))
    return init_db()


@pytest.fixture
def make_config(tmp_path):
    def _make(overrides=None):
        base = {
            "paths": {
                "data_dir": str(tmp_path / "data"),
                "site_dir": str(tmp_path / "site"),
            },
            "pipeline": {"target_languages": ["de", "en"]},
            "http": {"max_retries": 0, "backoff_seconds": 0},
        }
        return build_config(merge_config(base, overrides or {}))

    return _make


@pytest.fixture
def source(conn):
    return upsert_source(
        conn,
        {
            "id": "muenchen_stadt",
            "name": "Stadt München",
            "url": "https://example.org/feed.xml",
            "lang": "de",
            "category": "official",
            "trust_score": 0.95,
        },
    )


def add_raw_item(conn, source_id, title, url, summary="Die Stadt informiert über neue Regeln."):
    now = utc_now_iso()
    return insert_raw_item(
        conn,
        source_id=source_id,
        url=url,
        url_hash=url_hash(url),
        title=title,
        summary=summary,
        body=summary,
        author=None,
        published_at=now,
        fetched_at=now,
        lang="de",
    )


def add_draft(conn, status, lang="de", slug="neue-meldung", raw_item_id=None, channels=None):
    return insert_draft(
        conn,
        Draft(
            id=None,
            raw_item_id=raw_item_id,
            lang=lang,
            title="Neue Meldung aus München",
            lead="Kurzer Überblick zur Meldung.",
            body="<p>Details.</p>",
            category="lokales",
            tags=["münchen"],
            risk_flags=[],
            seo_title="Neue Meldung",
            meta_description="Kurzer Überblick zur Meldung.",
            slug=slug,
            status=status,
            channels=list(channels or []),
        ),
    )
