from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .channels import PrimaryChannel, PublishChannel
from .config import Config
from .errors import InvalidTransitionError, NotFoundError
from .models import (
    DRAFT_AI,
    DRAFT_APPROVED,
    DRAFT_AUTO_READY,
    DRAFT_PENDING,
    DRAFT_PUBLISH_FAILED,
    DRAFT_PUBLISHED,
    DRAFT_REJECTED,
    DRAFT_SCHEDULED,
    DRAFT_UNPUBLISHED,
    ChannelResult,
    Draft,
    PublishResult,
)
from .storage import (
    draft_slug_in_use,
    get_draft,
    insert_log,
    insert_publish_record,
    list_drafts_ready_for_auto_publish,
    list_due_scheduled_drafts,
    list_publish_records,
    transition_draft,
    update_draft_fields,
)
from .utils import log_event, slugify, to_iso, utc_now, utc_now_iso

PUBLISHABLE = (DRAFT_AUTO_READY, DRAFT_APPROVED, DRAFT_SCHEDULED, DRAFT_PUBLISH_FAILED)
SCHEDULABLE = (DRAFT_AUTO_READY, DRAFT_APPROVED, DRAFT_PUBLISH_FAILED, DRAFT_SCHEDULED)
REJECTABLE = (
    DRAFT_AI,
    DRAFT_PENDING,
    DRAFT_AUTO_READY,
    DRAFT_APPROVED,
    DRAFT_SCHEDULED,
    DRAFT_PUBLISH_FAILED,
    DRAFT_UNPUBLISHED,
)
DEFAULT_REJECT_REASON = "Rejected by editor"

logger = logging.getLogger("newsdesk.publish")


class Publisher:
    """Moves drafts onto the primary channel first, then the secondaries."""

    def __init__(
        self,
        conn,
        config: Config,
        primary: PrimaryChannel,
        secondaries: dict[str, PublishChannel] | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.primary = primary
        self.secondaries = secondaries or {}

    def publish(self, draft_id: int, channels: Iterable[str] | None = None) -> PublishResult:
        draft = self._require(draft_id)
        if draft.status not in PUBLISHABLE:
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_PUBLISHED)
        names = self._secondary_names(draft, channels)
        draft = self._claim_slug(draft)
        published_at = utc_now_iso()
        rendered = replace(draft, published_at=published_at)

        primary_result = self._attempt(self.primary, rendered, None)
        insert_publish_record(
            self.conn,
            draft_id,
            primary_result.channel,
            primary_result.success,
            primary_result.url,
            primary_result.error,
        )
        if not primary_result.success:
            transition_draft(
                self.conn,
                draft_id,
                [draft.status],
                DRAFT_PUBLISH_FAILED,
                gate_reason=primary_result.error,
            )
            insert_log(
                self.conn,
                "error",
                f"Publishing draft {draft_id} failed on {primary_result.channel}",
                {"draft_id": draft_id, "error": primary_result.error},
            )
            log_event(
                logger,
                logging.WARNING,
                "publish_failed",
                draft_id=draft_id,
                channel=primary_result.channel,
                error=primary_result.error,
            )
            return PublishResult(
                draft_id=draft_id,
                success=False,
                url=None,
                error=primary_result.error,
                results=[primary_result],
            )

        results = [primary_result]
        for name in names:
            result = self._publish_secondary(name, rendered, primary_result.url)
            insert_publish_record(self.conn, draft_id, name, result.success, result.url, result.error)
            results.append(result)

        moved = transition_draft(
            self.conn,
            draft_id,
            [draft.status],
            DRAFT_PUBLISHED,
            published_at=published_at,
            published_url=primary_result.url,
            gate_reason=None,
        )
        if not moved:
            current = self._require(draft_id)
            raise InvalidTransitionError(draft_id, current.status, DRAFT_PUBLISHED)
        failed = [result.channel for result in results if not result.success]
        insert_log(
            self.conn,
            "warning" if failed else "info",
            f"Published draft {draft_id}",
            {"draft_id": draft_id, "url": primary_result.url, "failed_channels": failed},
        )
        log_event(
            logger,
            logging.INFO,
            "draft_published",
            draft_id=draft_id,
            url=primary_result.url,
            failed_channels=",".join(failed) or None,
        )
        return PublishResult(
            draft_id=draft_id,
            success=True,
            url=primary_result.url,
            error=None,
            results=results,
        )

    def _claim_slug(self, draft: Draft) -> Draft:
        """Give the draft a slug no other published draft in its language holds."""
        slug = draft.slug or slugify(draft.title) or f"draft-{draft.id}"
        if draft_slug_in_use(self.conn, draft.lang, slug, draft.id):
            slug = f"{slug}-{draft.id}"
        if slug != draft.slug:
            update_draft_fields(self.conn, draft.id, slug=slug)
            draft = replace(draft, slug=slug)
        return draft

    def retry_channel(self, draft_id: int, channel: str) -> ChannelResult:
        draft = self._require(draft_id)
        if draft.status != DRAFT_PUBLISHED or not draft.published_url:
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_PUBLISHED)
        result = self._publish_secondary(channel, draft, draft.published_url)
        insert_publish_record(self.conn, draft_id, channel, result.success, result.url, result.error)
        return result

    def schedule(
        self,
        draft_id: int,
        scheduled_at: str,
        channels: Iterable[str] | None = None,
    ) -> Draft:
        draft = self._require(draft_id)
        fields: dict[str, object] = {"scheduled_at": scheduled_at}
        if channels is not None:
            fields["channels"] = list(channels)
        if not transition_draft(self.conn, draft_id, SCHEDULABLE, DRAFT_SCHEDULED, **fields):
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_SCHEDULED)
        log_event(logger, logging.INFO, "draft_scheduled", draft_id=draft_id, scheduled_at=scheduled_at)
        return self._require(draft_id)

    def process_scheduled(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> list[PublishResult]:
        now = now or utc_now()
        limit = limit or self.config.pipeline.batch_size
        due = list_due_scheduled_drafts(self.conn, to_iso(now), limit)
        return self._publish_batch(due, should_continue)

    def auto_publish(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> list[PublishResult]:
        pipeline = self.config.pipeline
        if not pipeline.auto_publish_enabled:
            return []
        now = now or utc_now()
        cutoff = to_iso(now - timedelta(minutes=pipeline.auto_publish_delay))
        ready = list_drafts_ready_for_auto_publish(
            self.conn,
            (DRAFT_AUTO_READY, DRAFT_APPROVED),
            cutoff,
            limit or pipeline.batch_size,
        )
        return self._publish_batch(ready, should_continue)

    def approve(self, draft_id: int, editor: str | None = None) -> Draft:
        draft = self._require(draft_id)
        if not transition_draft(
            self.conn, draft_id, [DRAFT_PENDING], DRAFT_APPROVED, edited_by=editor
        ):
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_APPROVED)
        log_event(logger, logging.INFO, "draft_approved", draft_id=draft_id, editor=editor)
        return self._require(draft_id)

    def reject(self, draft_id: int, reason: str | None = None, editor: str | None = None) -> Draft:
        draft = self._require(draft_id)
        if not transition_draft(
            self.conn,
            draft_id,
            REJECTABLE,
            DRAFT_REJECTED,
            gate_reason=reason or DEFAULT_REJECT_REASON,
            edited_by=editor,
        ):
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_REJECTED)
        log_event(logger, logging.INFO, "draft_rejected", draft_id=draft_id, editor=editor)
        return self._require(draft_id)

    def unpublish(self, draft_id: int, editor: str | None = None) -> Draft:
        draft = self._require(draft_id)
        if draft.status != DRAFT_PUBLISHED:
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_UNPUBLISHED)
        result = self.primary.unpublish(draft)
        if not result.success:
            log_event(
                logger,
                logging.WARNING,
                "unpublish_channel_failed",
                draft_id=draft_id,
                error=result.error,
            )
        if not transition_draft(
            self.conn, draft_id, [DRAFT_PUBLISHED], DRAFT_UNPUBLISHED, edited_by=editor
        ):
            raise InvalidTransitionError(draft_id, draft.status, DRAFT_UNPUBLISHED)
        insert_log(self.conn, "info", f"Unpublished draft {draft_id}", {"draft_id": draft_id})
        return self._require(draft_id)

    def set_featured_media(self, draft_id: int, media_url: str) -> Draft:
        draft = self._require(draft_id)
        update_draft_fields(self.conn, draft_id, featured_media=media_url)
        if draft.status == DRAFT_PUBLISHED:
            result = self.primary.set_featured_media(replace(draft, featured_media=media_url), media_url)
            if not result.success:
                log_event(
                    logger,
                    logging.WARNING,
                    "featured_media_failed",
                    draft_id=draft_id,
                    error=result.error,
                )
        return self._require(draft_id)

    def channel_history(self, draft_id: int):
        self._require(draft_id)
        return list_publish_records(self.conn, draft_id)

    def _publish_batch(
        self,
        drafts: list[Draft],
        should_continue: Callable[[], bool] | None,
    ) -> list[PublishResult]:
        results: list[PublishResult] = []
        for draft in drafts:
            if should_continue is not None and not should_continue():
                break
            try:
                results.append(self.publish(draft.id, draft.channels or None))
            except (InvalidTransitionError, NotFoundError) as exc:
                log_event(logger, logging.INFO, "publish_skipped", draft_id=draft.id, reason=str(exc))
        return results

    def _publish_secondary(self, name: str, draft: Draft, primary_url: str | None) -> ChannelResult:
        channel = self.secondaries.get(name)
        if channel is None:
            return ChannelResult(channel=name, success=False, error="channel_not_configured")
        result = self._attempt(channel, draft, primary_url)
        if not result.success:
            log_event(
                logger,
                logging.WARNING,
                "secondary_publish_failed",
                draft_id=draft.id,
                channel=name,
                error=result.error,
            )
        return result

    def _secondary_names(self, draft: Draft, channels: Iterable[str] | None) -> list[str]:
        if channels is not None:
            requested = list(channels)
        elif draft.channels:
            requested = list(draft.channels)
        else:
            requested = list(self.secondaries)
        names: list[str] = []
        for name in requested:
            if name != self.primary.name and name not in names:
                names.append(name)
        return names

    def _attempt(self, channel: PublishChannel, draft: Draft, primary_url: str | None) -> ChannelResult:
        try:
            return channel.publish(draft, primary_url)
        except Exception as exc:  # noqa: BLE001
            return ChannelResult(channel=channel.name, success=False, error=str(exc))

    def _require(self, draft_id: int) -> Draft:
        draft = get_draft(self.conn, draft_id)
        if draft is None:
            raise NotFoundError(f"draft {draft_id} not found")
        return draft
