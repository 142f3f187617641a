from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import (
    Config,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .errors import ComponentUnavailableError, FetchError, InvalidTransitionError, NotFoundError
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .ingest import check_feed
from .llm.router import create_text_generator
from .processor import DraftProcessor
from .publish import Publisher
from .scheduler import HOOKS, Scheduler
from .services.credentials import delete_credential, list_credentials, set_credential
from .services.sources_service import (
    create_source,
    delete_source,
    source_to_dict,
    update_source,
)
from .storage import (
    count_rows_by_status,
    get_draft,
    get_source,
    init_db,
    list_drafts,
    list_jobs,
    list_logs,
    list_sources,
    list_trust_history,
)
from .utils import configure_logging, log_event

app = FastAPI(title="Newsdesk Admin API")

logger = logging.getLogger("newsdesk.admin")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("ND_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class SourceRequest(BaseModel):
    id: str | None = None
    name: str | None = None
    url: str | None = None
    lang: str | None = None
    category: str | None = None
    trust_score: float | None = Field(default=None, ge=0, le=1)
    fetch_interval_minutes: int | None = Field(default=None, ge=1)
    enabled: bool | None = None


class RejectRequest(BaseModel):
    reason: str | None = None
    editor: str | None = None


class EditorRequest(BaseModel):
    editor: str | None = None


class PublishRequest(BaseModel):
    channels: list[str] | None = None


class ScheduleRequest(BaseModel):
    scheduled_at: str
    channels: list[str] | None = None


class RetryRequest(BaseModel):
    channel: str


class FeaturedMediaRequest(BaseModel):
    media_url: str


class ManualArticleRequest(BaseModel):
    title: str
    lead: str
    body: str
    source_lang: str | None = None
    target_langs: list[str] | None = None
    category: str = "nachrichten"
    tags: list[str] = Field(default_factory=list)
    sources: list[dict] = Field(default_factory=list)
    created_by: str | None = None


class FeedCheckRequest(BaseModel):
    url: str


class UrlArticleRequest(BaseModel):
    url: str
    source_lang: str | None = None
    target_langs: list[str] | None = None
    category: str = "nachrichten"
    created_by: str | None = None


class CredentialRequest(BaseModel):
    value: str


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Newsdesk Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.on_event("startup")
def _startup() -> None:
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError:
        return
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(config))


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/admin/credentials", dependencies=[Depends(_require_admin_token)])
def credentials_list() -> list[dict[str, object]]:
    return list_credentials(_get_conn())


@app.put("/admin/credentials/{name}", dependencies=[Depends(_require_admin_token)])
def credentials_set(name: str, payload: CredentialRequest) -> dict[str, object]:
    try:
        return set_credential(_get_conn(), name, payload.value)
    except (ConfigError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/admin/credentials/{name}", dependencies=[Depends(_require_admin_token)])
def credentials_delete(name: str) -> dict[str, str]:
    if not delete_credential(_get_conn(), name):
        raise HTTPException(status_code=404, detail="credential_not_found")
    return {"status": "deleted"}


@app.get("/sources")
def sources_list() -> list[dict[str, object]]:
    conn = _get_conn()
    return [source_to_dict(source) for source in list_sources(conn)]


@app.post("/sources")
def sources_create(
    payload: SourceRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return source_to_dict(create_source(conn, payload.model_dump(exclude_none=True)))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/sources/check", dependencies=[Depends(_require_admin_token)])
def sources_check(payload: FeedCheckRequest) -> JSONResponse:
    conn = _get_conn()
    result = check_feed(_load_config(conn), payload.url)
    return JSONResponse(asdict(result), status_code=200 if result.success else 400)


@app.get("/sources/{source_id}")
def sources_read(source_id: str) -> dict[str, object]:
    conn = _get_conn()
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    data = source_to_dict(source)
    data["trust_history"] = list_trust_history(conn, source_id, limit=20)
    return data


@app.put("/sources/{source_id}")
@app.patch("/sources/{source_id}")
def sources_update(
    source_id: str,
    payload: SourceRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return source_to_dict(
            update_source(conn, source_id, payload.model_dump(exclude_unset=True, exclude_none=True))
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/sources/{source_id}")
def sources_delete(source_id: str, _: None = Depends(_require_admin_token)) -> dict[str, str]:
    conn = _get_conn()
    try:
        delete_source(conn, source_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return {"status": "deleted"}


@app.post("/triggers/{hook}", dependencies=[Depends(_require_admin_token)])
def trigger_hook(hook: str) -> dict[str, object]:
    if hook not in HOOKS:
        raise HTTPException(status_code=404, detail="unknown_hook")
    conn = _get_conn()
    scheduler = _build_scheduler(conn, _load_config(conn))
    result = scheduler.trigger(hook)
    log_event(logger, logging.INFO, "hook_triggered", hook=hook, success=result.success)
    return asdict(result)


@app.get("/cron", dependencies=[Depends(_require_admin_token)])
def cron_status() -> dict[str, object]:
    conn = _get_conn()
    scheduler = _build_scheduler(conn, _load_config(conn))
    return {
        "hooks": scheduler.cron_status(),
        "queue": count_rows_by_status(conn, "queue"),
        "drafts": count_rows_by_status(conn, "drafts"),
        "raw_items": count_rows_by_status(conn, "raw_items"),
    }


@app.post("/cron/clear-locks", dependencies=[Depends(_require_admin_token)])
def cron_clear_locks() -> dict[str, object]:
    conn = _get_conn()
    scheduler = _build_scheduler(conn, _load_config(conn))
    return {"cleared": scheduler.clear_locks()}


@app.get("/jobs", dependencies=[Depends(_require_admin_token)])
def jobs(status: str | None = None, job_type: str | None = None, limit: int = 20) -> list[dict[str, object]]:
    conn = _get_conn()
    return [asdict(job) for job in list_jobs(conn, status=status, job_type=job_type, limit=limit)]


@app.get("/logs", dependencies=[Depends(_require_admin_token)])
def logs(level: str | None = None, limit: int = 100) -> list[dict[str, object]]:
    return list_logs(_get_conn(), level=level, limit=limit)


drafts_router = APIRouter(prefix="/drafts", dependencies=[Depends(_require_admin_token)])


@drafts_router.get("")
def drafts_list(status: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    conn = _get_conn()
    return [asdict(draft) for draft in list_drafts(conn, status=status, limit=limit)]


@drafts_router.post("/manual")
def drafts_manual(payload: ManualArticleRequest) -> dict[str, object]:
    conn = _get_conn()
    config = _load_config(conn)
    try:
        processor = DraftProcessor(conn, config, _build_generator(conn, config))
        drafts = processor.submit_manual_article(
            payload.title,
            payload.lead,
            payload.body,
            source_lang=payload.source_lang,
            target_langs=payload.target_langs,
            category=payload.category,
            tags=payload.tags,
            sources=payload.sources,
            created_by=payload.created_by,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"drafts": drafts}


@drafts_router.post("/from-url")
def drafts_from_url(payload: UrlArticleRequest) -> dict[str, object]:
    conn = _get_conn()
    config = _load_config(conn)
    processor = DraftProcessor(conn, config, _build_generator(conn, config))
    try:
        drafts = processor.submit_article_from_url(
            payload.url,
            source_lang=payload.source_lang,
            target_langs=payload.target_langs,
            category=payload.category,
            created_by=payload.created_by,
        )
    except (FetchError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"drafts": drafts}


@drafts_router.get("/{draft_id}")
def drafts_read(draft_id: int) -> dict[str, object]:
    conn = _get_conn()
    draft = get_draft(conn, draft_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="draft_not_found")
    data = asdict(draft)
    data["publish_history"] = [asdict(record) for record in _publisher(conn).channel_history(draft_id)]
    return data


@drafts_router.post("/{draft_id}/approve")
def drafts_approve(draft_id: int, payload: EditorRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    editor = payload.editor if payload else None
    return _draft_action(lambda: _publisher(conn).approve(draft_id, editor))


@drafts_router.post("/{draft_id}/reject")
def drafts_reject(draft_id: int, payload: RejectRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    payload = payload or RejectRequest()
    return _draft_action(lambda: _publisher(conn).reject(draft_id, payload.reason, payload.editor))


@drafts_router.post("/{draft_id}/unpublish")
def drafts_unpublish(draft_id: int, payload: EditorRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    editor = payload.editor if payload else None
    return _draft_action(lambda: _publisher(conn).unpublish(draft_id, editor))


@drafts_router.post("/{draft_id}/schedule")
def drafts_schedule(draft_id: int, payload: ScheduleRequest) -> dict[str, object]:
    conn = _get_conn()
    return _draft_action(
        lambda: _publisher(conn).schedule(draft_id, payload.scheduled_at, payload.channels)
    )


@drafts_router.post("/{draft_id}/publish")
def drafts_publish(draft_id: int, payload: PublishRequest | None = None) -> dict[str, object]:
    conn = _get_conn()
    channels = payload.channels if payload else None
    return _draft_action(lambda: _publisher(conn).publish(draft_id, channels))


@drafts_router.post("/{draft_id}/retry")
def drafts_retry(draft_id: int, payload: RetryRequest) -> dict[str, object]:
    conn = _get_conn()
    return _draft_action(lambda: _publisher(conn).retry_channel(draft_id, payload.channel))


@drafts_router.put("/{draft_id}/featured-media")
def drafts_featured_media(draft_id: int, payload: FeaturedMediaRequest) -> dict[str, object]:
    conn = _get_conn()
    return _draft_action(lambda: _publisher(conn).set_featured_media(draft_id, payload.media_url))


app.include_router(drafts_router)


def _draft_action(action) -> dict[str, object]:
    try:
        return asdict(action())
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _setup_logging() -> None:
    configure_logging("newsdesk.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newsdesk")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db()
    bootstrap_runtime_config(conn)
    return conn


def _load_config(conn) -> Config:
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _build_scheduler(conn, config: Config) -> Scheduler:
    return Scheduler(conn, config)


def _build_generator(conn, config: Config):
    return create_text_generator(config, conn)


def _build_publisher(conn, config: Config) -> Publisher:
    return _build_scheduler(conn, config).publisher


def _publisher(conn) -> Publisher:
    try:
        return _build_publisher(conn, _load_config(conn))
    except ComponentUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def main() -> None:
    import uvicorn

    uvicorn.run(
        "newsdesk.admin:app",
        host=os.environ.get("ND_ADMIN_HOST", "0.0.0.0"),
        port=int(os.environ.get("ND_ADMIN_PORT", "8001")),
    )


if __name__ == "__main__":
    main()
