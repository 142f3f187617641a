from datetime import timedelta

import pytest
from conftest import RecordingPrimary, RecordingSecondary, add_draft

from newsdesk.channels import MarkdownSiteChannel
from newsdesk.errors import InvalidTransitionError, NotFoundError
from newsdesk.models import (
    DRAFT_APPROVED,
    DRAFT_AUTO_READY,
    DRAFT_PENDING,
    DRAFT_PUBLISH_FAILED,
    DRAFT_PUBLISHED,
    DRAFT_REJECTED,
    DRAFT_SCHEDULED,
    DRAFT_UNPUBLISHED,
)
from newsdesk.publish import Publisher
from newsdesk.storage import get_draft
from newsdesk.utils import utc_now, utc_now_iso_offset


@pytest.fixture
def channels():
    return RecordingPrimary(), RecordingSecondary()


@pytest.fixture
def publisher(conn, make_config, channels):
    primary, secondary = channels
    return Publisher(conn, make_config(), primary, {"telegram": secondary})


def test_publish_primary_then_secondaries(conn, publisher, channels):
    _, secondary = channels
    draft_id = add_draft(conn, DRAFT_AUTO_READY)

    result = publisher.publish(draft_id)

    assert result.success
    assert result.url == "https://news.test/de/neue-meldung/"
    assert secondary.calls == [(draft_id, result.url)]
    draft = get_draft(conn, draft_id)
    assert draft.status == DRAFT_PUBLISHED
    assert draft.published_url == result.url
    assert draft.published_at is not None
    history = publisher.channel_history(draft_id)
    assert [record.channel for record in history] == ["markdown_site", "telegram"]
    assert all(record.success for record in history)


def test_primary_failure_skips_secondaries(conn, make_config):
    secondary = RecordingSecondary()
    publisher = Publisher(conn, make_config(), RecordingPrimary(fail=True), {"telegram": secondary})
    draft_id = add_draft(conn, DRAFT_APPROVED)

    result = publisher.publish(draft_id)

    assert not result.success
    assert result.error == "disk full"
    assert secondary.calls == []
    draft = get_draft(conn, draft_id)
    assert draft.status == DRAFT_PUBLISH_FAILED
    assert draft.gate_reason == "disk full"
    assert draft.published_url is None


def test_publish_failed_draft_can_be_retried(conn, make_config):
    primary = RecordingPrimary(fail=True)
    publisher = Publisher(conn, make_config(), primary, {})
    draft_id = add_draft(conn, DRAFT_AUTO_READY)
    publisher.publish(draft_id)

    primary.fail = False
    assert publisher.publish(draft_id).success
    draft = get_draft(conn, draft_id)
    assert draft.status == DRAFT_PUBLISHED
    assert draft.gate_reason is None


def test_secondary_failure_keeps_draft_published(conn, make_config):
    secondary = RecordingSecondary(fail=True)
    publisher = Publisher(conn, make_config(), RecordingPrimary(), {"telegram": secondary})
    draft_id = add_draft(conn, DRAFT_AUTO_READY)

    result = publisher.publish(draft_id)

    assert result.success
    assert [item.success for item in result.results] == [True, False]
    assert get_draft(conn, draft_id).status == DRAFT_PUBLISHED

    secondary.fail = False
    retried = publisher.retry_channel(draft_id, "telegram")
    assert retried.success
    assert len(publisher.channel_history(draft_id)) == 3


def test_publish_limits_secondaries_to_requested_channels(conn, publisher, channels):
    _, secondary = channels
    draft_id = add_draft(conn, DRAFT_AUTO_READY)

    result = publisher.publish(draft_id, ["markdown_site", "mastodon"])

    assert result.success
    assert secondary.calls == []
    assert result.results[1].channel == "mastodon"
    assert result.results[1].error == "channel_not_configured"


def test_publish_requires_publishable_status(conn, publisher):
    draft_id = add_draft(conn, DRAFT_PENDING)
    with pytest.raises(InvalidTransitionError):
        publisher.publish(draft_id)
    with pytest.raises(NotFoundError):
        publisher.publish(999)


def test_scheduled_drafts_publish_when_due(conn, publisher):
    due_id = add_draft(conn, DRAFT_APPROVED, slug="faellig")
    later_id = add_draft(conn, DRAFT_APPROVED, slug="spaeter")
    publisher.schedule(due_id, utc_now_iso_offset(seconds=-60))
    scheduled = publisher.schedule(later_id, utc_now_iso_offset(seconds=3600), ["telegram"])
    assert scheduled.status == DRAFT_SCHEDULED
    assert scheduled.channels == ["telegram"]

    results = publisher.process_scheduled()

    assert [result.draft_id for result in results] == [due_id]
    assert get_draft(conn, due_id).status == DRAFT_PUBLISHED
    assert get_draft(conn, later_id).status == DRAFT_SCHEDULED


def test_schedule_requires_approval(conn, publisher):
    draft_id = add_draft(conn, DRAFT_PENDING)
    with pytest.raises(InvalidTransitionError):
        publisher.schedule(draft_id, utc_now_iso_offset(seconds=60))


def test_auto_publish_waits_for_delay(conn, make_config, channels):
    primary, secondary = channels
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    publisher = Publisher(conn, config, primary, {"telegram": secondary})
    ready_id = add_draft(conn, DRAFT_AUTO_READY, slug="bereit")
    add_draft(conn, DRAFT_PENDING, slug="wartet")

    assert publisher.auto_publish() == []

    results = publisher.auto_publish(now=utc_now() + timedelta(minutes=11))
    assert [result.draft_id for result in results] == [ready_id]


def test_auto_publish_respects_budget(conn, make_config, channels):
    primary, secondary = channels
    config = make_config({"pipeline": {"auto_publish_enabled": True}})
    publisher = Publisher(conn, config, primary, {"telegram": secondary})
    add_draft(conn, DRAFT_AUTO_READY)

    results = publisher.auto_publish(
        now=utc_now() + timedelta(minutes=11), should_continue=lambda: False
    )
    assert results == []


def test_approve_and_reject(conn, publisher):
    pending_id = add_draft(conn, DRAFT_PENDING, slug="eins")
    other_id = add_draft(conn, DRAFT_PENDING, slug="zwei")

    approved = publisher.approve(pending_id, editor="anna")
    assert approved.status == DRAFT_APPROVED
    assert approved.edited_by == "anna"
    with pytest.raises(InvalidTransitionError):
        publisher.approve(pending_id)

    rejected = publisher.reject(other_id)
    assert rejected.status == DRAFT_REJECTED
    assert rejected.gate_reason == "Rejected by editor"
    with pytest.raises(InvalidTransitionError):
        publisher.approve(other_id)


def test_published_draft_cannot_be_rejected(conn, publisher):
    draft_id = add_draft(conn, DRAFT_AUTO_READY)
    publisher.publish(draft_id)
    with pytest.raises(InvalidTransitionError):
        publisher.reject(draft_id, reason="Falsche Zahlen")


def test_unpublish(conn, publisher):
    draft_id = add_draft(conn, DRAFT_AUTO_READY)
    publisher.publish(draft_id)

    draft = publisher.unpublish(draft_id, editor="anna")
    assert draft.status == DRAFT_UNPUBLISHED
    with pytest.raises(InvalidTransitionError):
        publisher.unpublish(draft_id)


def test_set_featured_media(conn, publisher):
    draft_id = add_draft(conn, DRAFT_PENDING)
    draft = publisher.set_featured_media(draft_id, "https://cdn.example/bild.jpg")
    assert draft.featured_media == "https://cdn.example/bild.jpg"


def test_same_slug_gets_its_own_page(conn, make_config, tmp_path):
    site_dir = tmp_path / "site"
    primary = MarkdownSiteChannel(str(site_dir), "https://news.test")
    publisher = Publisher(conn, make_config(), primary, {})
    first_id = add_draft(conn, DRAFT_APPROVED, slug="wetter-in-muenchen")
    second_id = add_draft(conn, DRAFT_APPROVED, slug="wetter-in-muenchen")

    first = publisher.publish(first_id)
    second = publisher.publish(second_id)

    assert first.url == "https://news.test/de/wetter-in-muenchen/"
    assert second.url == f"https://news.test/de/wetter-in-muenchen-{second_id}/"
    assert get_draft(conn, second_id).slug == f"wetter-in-muenchen-{second_id}"

    publisher.unpublish(second_id)
    assert get_draft(conn, first_id).status == DRAFT_PUBLISHED
    assert (site_dir / "de" / "wetter-in-muenchen.md").exists()
    assert not (site_dir / "de" / f"wetter-in-muenchen-{second_id}.md").exists()


def test_republishing_keeps_the_slug(conn, make_config, tmp_path):
    primary = MarkdownSiteChannel(str(tmp_path / "site"), "https://news.test")
    publisher = Publisher(conn, make_config(), primary, {})
    draft_id = add_draft(conn, DRAFT_PUBLISH_FAILED, slug="wetter-in-muenchen")

    assert publisher.publish(draft_id).url == "https://news.test/de/wetter-in-muenchen/"
    assert get_draft(conn, draft_id).slug == "wetter-in-muenchen"
