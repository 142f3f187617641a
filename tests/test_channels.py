import io
import json

import yaml

from newsdesk import channels as channels_module
from newsdesk.channels import MarkdownSiteChannel, TelegramChannel, build_channels, format_message
from newsdesk.models import Draft


def _draft(**overrides):
    values = dict(
        id=42,
        raw_item_id=7,
        lang="de",
        title="Neue Regeln & Fristen",
        lead="Was sich ab Juni ändert.",
        body="<p>Details.</p>",
        category="migration",
        tags=["aufenthalt", "münchen", "u-bahn"],
        risk_flags=[],
        seo_title="Neue Regeln",
        meta_description="Was sich ab Juni ändert.",
        slug="neue-regeln",
        status="auto_ready",
        sources=[{"name": "BAMF", "url": "https://bamf.example/1", "date": "01.05.2024", "title": "x"}],
        published_at="2024-05-01T10:00:00.000000+00:00",
    )
    values.update(overrides)
    return Draft(**values)


def _front_matter(path):
    content = path.read_text(encoding="utf-8")
    _, header, body = content.split("---\n", 2)
    return yaml.safe_load(header), body


def test_markdown_site_writes_front_matter(tmp_path):
    channel = MarkdownSiteChannel(str(tmp_path), "https://news.example.org/")

    result = channel.publish(_draft())

    assert result.success
    assert result.url == "https://news.example.org/de/neue-regeln/"
    meta, body = _front_matter(tmp_path / "de" / "neue-regeln.md")
    assert meta["title"] == "Neue Regeln & Fristen"
    assert meta["draft_id"] == 42
    assert meta["tags"] == ["aufenthalt", "münchen", "u-bahn"]
    assert meta["sources"] == [{"name": "BAMF", "url": "https://bamf.example/1", "date": "01.05.2024"}]
    assert "featured_image" not in meta
    assert body.strip().startswith("Was sich ab Juni ändert.")
    assert "<p>Details.</p>" in body


def test_markdown_site_featured_media_and_unpublish(tmp_path):
    channel = MarkdownSiteChannel(str(tmp_path), "https://news.example.org")
    draft = _draft()
    channel.publish(draft)

    assert channel.set_featured_media(draft, "https://cdn.example/bild.jpg").success
    meta, _ = _front_matter(tmp_path / "de" / "neue-regeln.md")
    assert meta["featured_image"] == "https://cdn.example/bild.jpg"

    assert channel.unpublish(draft).success
    assert not (tmp_path / "de" / "neue-regeln.md").exists()


def test_markdown_site_slug_falls_back_to_title(tmp_path):
    channel = MarkdownSiteChannel(str(tmp_path), "https://news.example.org")
    assert channel.url_for(_draft(slug="")) == "https://news.example.org/de/neue-regeln-fristen/"


def test_format_message_escapes_and_links():
    message = format_message(_draft(lang="ua"), "https://news.example.org/ua/neue-regeln/")

    assert message.startswith("<b>Neue Regeln &amp; Fristen</b>")
    assert "#aufenthalt #münchen #ubahn" in message
    assert 'href="https://news.example.org/ua/neue-regeln/"' in message
    assert "Читати далі" in message


def test_format_message_without_url():
    assert "href" not in format_message(_draft())


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def test_telegram_publish_posts_message(monkeypatch):
    sent = {}

    def fake_urlopen(request, timeout=None):
        sent["url"] = request.full_url
        sent["payload"] = json.loads(request.data.decode("utf-8"))
        return FakeResponse(json.dumps({"ok": True, "result": {"message_id": 5}}).encode("utf-8"))

    monkeypatch.setattr(channels_module.urllib.request, "urlopen", fake_urlopen)
    channel = TelegramChannel("123:abc", "-1001234", "https://api.telegram.org/")

    result = channel.publish(_draft(), "https://news.example.org/de/neue-regeln/")

    assert result.success
    assert result.url == "https://t.me/c/1234/5"
    assert sent["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert sent["payload"]["chat_id"] == "-1001234"
    assert sent["payload"]["parse_mode"] == "HTML"


def test_telegram_reports_api_error(monkeypatch):
    def fake_urlopen(request, timeout=None):
        return FakeResponse(json.dumps({"ok": False, "description": "chat not found"}).encode("utf-8"))

    monkeypatch.setattr(channels_module.urllib.request, "urlopen", fake_urlopen)
    result = TelegramChannel("123:abc", "@newsdesk", "https://api.telegram.org").publish(_draft())

    assert not result.success
    assert result.error == "chat not found"


def test_build_channels_skips_telegram_without_token(conn, make_config, monkeypatch):
    monkeypatch.delenv("ND_TELEGRAM_BOT_TOKEN", raising=False)
    config = make_config({"channels": {"telegram": {"enabled": True, "chat_id": "@newsdesk"}}})

    primary, secondaries = build_channels(config, conn)

    assert isinstance(primary, MarkdownSiteChannel)
    assert secondaries == {}


def test_build_channels_with_token(conn, make_config, monkeypatch):
    monkeypatch.setenv("ND_TELEGRAM_BOT_TOKEN", "123:abc")
    config = make_config({"channels": {"telegram": {"enabled": True, "chat_id": "@newsdesk"}}})

    _, secondaries = build_channels(config, conn)

    assert isinstance(secondaries["telegram"], TelegramChannel)
    assert secondaries["telegram"].message_link(9) == "https://t.me/newsdesk/9"
