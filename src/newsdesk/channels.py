from __future__ import annotations

import html
import json
import logging
import os
import re
import urllib.error
import urllib.request
from abc import ABC, abstractmethod

import yaml

from .config import Config
from .models import ChannelResult, Draft
from .services.credentials import TELEGRAM_TOKEN, TELEGRAM_TOKEN_ENV, resolve_credential
from .utils import log_event, slugify, utc_now_iso

TELEGRAM_MESSAGE_LIMIT = 4096

READ_MORE = {
    "de": "Weiterlesen",
    "ua": "Читати далі",
    "ru": "Читать далее",
    "en": "Read more",
}

_HASHTAG_STRIP = re.compile(r"[^\w]", re.UNICODE)

logger = logging.getLogger("newsdesk.channels")


class PublishChannel(ABC):
    name = "channel"

    @abstractmethod
    def publish(self, draft: Draft, primary_url: str | None = None) -> ChannelResult:
        raise NotImplementedError

    def unpublish(self, draft: Draft) -> ChannelResult:
        return ChannelResult(channel=self.name, success=False, error="unpublish_not_supported")


class PrimaryChannel(PublishChannel):
    """The canonical home of an article; secondaries link to its URL."""

    @abstractmethod
    def set_featured_media(self, draft: Draft, media_url: str) -> ChannelResult:
        raise NotImplementedError


class MarkdownSiteChannel(PrimaryChannel):
    """Writes one Markdown file with YAML front matter per published draft."""

    name = "markdown_site"

    def __init__(self, site_dir: str, base_url: str) -> None:
        self.site_dir = site_dir
        self.base_url = base_url.rstrip("/")

    def publish(self, draft: Draft, primary_url: str | None = None) -> ChannelResult:
        try:
            self._write(draft, draft.featured_media)
        except OSError as exc:
            return ChannelResult(channel=self.name, success=False, error=str(exc))
        return ChannelResult(channel=self.name, success=True, url=self.url_for(draft))

    def unpublish(self, draft: Draft) -> ChannelResult:
        path = self.path_for(draft)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as exc:
            return ChannelResult(channel=self.name, success=False, error=str(exc))
        return ChannelResult(channel=self.name, success=True, url=self.url_for(draft))

    def set_featured_media(self, draft: Draft, media_url: str) -> ChannelResult:
        if not os.path.exists(self.path_for(draft)):
            return ChannelResult(channel=self.name, success=True, url=None)
        try:
            self._write(draft, media_url)
        except OSError as exc:
            return ChannelResult(channel=self.name, success=False, error=str(exc))
        return ChannelResult(channel=self.name, success=True, url=self.url_for(draft))

    def slug_for(self, draft: Draft) -> str:
        return draft.slug or slugify(draft.title) or f"draft-{draft.id}"

    def path_for(self, draft: Draft) -> str:
        return os.path.join(self.site_dir, draft.lang, f"{self.slug_for(draft)}.md")

    def url_for(self, draft: Draft) -> str:
        return f"{self.base_url}/{draft.lang}/{self.slug_for(draft)}/"

    def _write(self, draft: Draft, featured_media: str | None) -> str:
        path = self.path_for(draft)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        frontmatter: dict[str, object] = {
            "title": draft.title,
            "date": draft.published_at or utc_now_iso(),
            "lang": draft.lang,
            "slug": self.slug_for(draft),
            "draft_id": draft.id,
            "category": draft.category,
            "tags": list(draft.tags),
            "keywords": list(draft.keywords),
            "seo_title": draft.seo_title,
            "description": draft.meta_description,
            "sources": [
                {key: source.get(key) for key in ("name", "url", "date") if source.get(key)}
                for source in draft.sources
            ],
            "draft": False,
        }
        if featured_media:
            frontmatter["featured_image"] = featured_media
        content = "---\n"
        content += yaml.safe_dump(
            frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=False
        )
        content += "---\n\n"
        content += "\n\n".join(part.strip() for part in (draft.lead, draft.body) if part and part.strip())
        content += "\n"
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)
        return path


class TelegramChannel(PublishChannel):
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, api_base_url: str, timeout_seconds: int = 30) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def publish(self, draft: Draft, primary_url: str | None = None) -> ChannelResult:
        payload = {
            "chat_id": self.chat_id,
            "text": format_message(draft, primary_url)[:TELEGRAM_MESSAGE_LIMIT],
            "parse_mode": "HTML",
            "disable_web_page_preview": False,
        }
        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                body = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="ignore")
            return ChannelResult(channel=self.name, success=False, error=f"http_error {exc.code}: {raw[:500]}")
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as exc:
            return ChannelResult(channel=self.name, success=False, error=str(exc))
        if not body.get("ok"):
            return ChannelResult(
                channel=self.name,
                success=False,
                error=str(body.get("description") or "telegram_error"),
            )
        message_id = (body.get("result") or {}).get("message_id")
        return ChannelResult(channel=self.name, success=True, url=self.message_link(message_id))

    def message_link(self, message_id: int | None) -> str | None:
        if not message_id:
            return None
        channel = self.chat_id.lstrip("@")
        if channel.startswith("-100"):
            channel = "c/" + channel[4:]
        return f"https://t.me/{channel}/{message_id}"


def format_message(draft: Draft, primary_url: str | None = None) -> str:
    parts = [f"<b>{html.escape(draft.title)}</b>"]
    if draft.lead:
        parts.append(html.escape(draft.lead))
    hashtags = []
    for tag in draft.tags[:5]:
        cleaned = _HASHTAG_STRIP.sub("", tag)
        if cleaned:
            hashtags.append(f"#{cleaned}")
    if hashtags:
        parts.append(" ".join(hashtags))
    if primary_url:
        label = READ_MORE.get(draft.lang, READ_MORE["de"])
        parts.append(f'🔗 <a href="{html.escape(primary_url, quote=True)}">{label}</a>')
    return "\n\n".join(parts)


def build_channels(config: Config, conn=None) -> tuple[PrimaryChannel, dict[str, PublishChannel]]:
    """Primary channel plus the configured secondaries that can run.

    Secondaries without credentials are skipped with a warning.
    """
    channels_cfg = config.channels
    if channels_cfg.primary != MarkdownSiteChannel.name:
        raise ValueError(f"unsupported primary channel {channels_cfg.primary}")
    primary = MarkdownSiteChannel(config.paths.site_dir, channels_cfg.site_base_url)

    secondaries: dict[str, PublishChannel] = {}
    for name in channels_cfg.secondary:
        if name != TelegramChannel.name:
            log_event(logger, logging.WARNING, "channel_unknown", channel=name)
            continue
        telegram = channels_cfg.telegram
        if not telegram.enabled:
            continue
        token = resolve_credential(conn, TELEGRAM_TOKEN, TELEGRAM_TOKEN_ENV)
        if not token or not telegram.chat_id:
            log_event(logger, logging.WARNING, "channel_not_configured", channel=name)
            continue
        secondaries[name] = TelegramChannel(
            token, telegram.chat_id, telegram.api_base_url, config.http.timeout_seconds
        )
    return primary, secondaries
