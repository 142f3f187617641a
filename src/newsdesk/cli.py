from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict

import yaml

from .config import (
    Config,
    ConfigError,
    get_runtime_config,
    load_config,
    load_runtime_config,
    merge_config,
    set_runtime_config,
)
from .errors import FetchError, InvalidTransitionError, NotFoundError
from .ingest import PROCESS_ITEM_JOB, check_feed
from .llm.router import check_provider, create_text_generator
from .processor import DraftProcessor
from .scheduler import HOOKS, PUBLISH_DRAFT_JOB, Scheduler, build_scheduler
from .security.secrets import MASTER_KEY_ENV, generate_master_key
from .services.credentials import list_credentials, set_credential
from .services.sources_service import import_sources_file, seed_default_sources
from .storage import (
    enqueue_job,
    get_draft,
    get_source,
    init_db,
    list_drafts,
    list_jobs,
    list_sources,
    upsert_source,
)
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("newsdesk")


def _open_runtime(logger: logging.Logger):
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return conn, None
    return conn, config


def _print_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n")


def _publisher(conn, config: Config):
    return Scheduler(conn, config).publisher


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    result = Scheduler(conn, config).trigger(args.hook)
    _print_json(asdict(result))
    return 0 if result.success else 1


def _cmd_scheduler(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        scheduler = build_scheduler()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        results = [scheduler.run_hook(hook) for hook in HOOKS]
        return 0 if all(result.success for result in results) else 1
    return scheduler.run_loop(args.sleep)


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    sources_path = args.path
    if sources_path is None:
        if os.path.exists("/config/sources.yml"):
            sources_path = "/config/sources.yml"
        else:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                error="no sources.yml found",
                hint="Pass a path or run `newsdesk sources seed`",
            )
            return 1
    log_event(logger, logging.INFO, "sources_import_path", path=sources_path)
    try:
        sources = import_sources_file(conn, sources_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "sources_imported", count=len(sources))
    return 0


def _cmd_sources_seed(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    seeded = seed_default_sources(conn)
    log_event(logger, logging.INFO, "sources_seeded", count=len(seeded))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    sources = list_sources(conn, enabled_only=False)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `newsdesk sources import /config/sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            enabled=source.enabled,
            url=source.url,
            trust_score=source.trust_score,
            interval_minutes=source.fetch_interval_minutes,
            error_count=source.error_count,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    _, config = _open_runtime(logger)
    if config is None:
        return 1
    result = check_feed(config, args.url)
    _print_json(asdict(result))
    return 0 if result.success else 1


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    if args.check:
        _, config = _open_runtime(logger)
        if config is None:
            return 1
        result = check_feed(config, args.url)
        if not result.success:
            log_event(logger, logging.ERROR, "source_check_failed", url=args.url, error=result.message)
            return 1
        log_event(logger, logging.INFO, "source_check_ok", url=args.url, items=result.item_count)
    source_dict = {
        "id": args.id,
        "name": args.name,
        "url": args.url,
        "lang": args.lang,
        "category": args.category,
        "trust_score": args.trust_score,
        "fetch_interval_minutes": args.interval_minutes,
        "enabled": args.enabled,
    }
    try:
        source = upsert_source(conn, source_dict)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "source_added", source_id=source.id)
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    source = get_source(conn, args.source_id)
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    _print_json(asdict(source))
    return 0


def _cmd_drafts_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    for draft in list_drafts(conn, status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "draft",
            draft_id=draft.id,
            lang=draft.lang,
            status=draft.status,
            category=draft.category,
            title=json.dumps(draft.title, ensure_ascii=False),
            gate_reason=draft.gate_reason,
        )
    return 0


def _cmd_drafts_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    draft = get_draft(conn, args.draft_id)
    if draft is None:
        log_event(logger, logging.ERROR, "draft_not_found", draft_id=args.draft_id)
        return 1
    _print_json(asdict(draft))
    return 0


def _cmd_drafts_action(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    publisher = _publisher(conn, config)
    try:
        if args.drafts_command == "approve":
            draft = publisher.approve(args.draft_id, args.editor)
            _print_json(asdict(draft))
        elif args.drafts_command == "reject":
            draft = publisher.reject(args.draft_id, args.reason, args.editor)
            _print_json(asdict(draft))
        elif args.drafts_command == "unpublish":
            draft = publisher.unpublish(args.draft_id, args.editor)
            _print_json(asdict(draft))
        elif args.drafts_command == "schedule":
            draft = publisher.schedule(args.draft_id, args.at, args.channel or None)
            _print_json(asdict(draft))
        else:
            result = publisher.publish(args.draft_id, args.channel or None)
            _print_json(asdict(result))
            return 0 if result.success else 1
    except NotFoundError as exc:
        log_event(logger, logging.ERROR, "draft_not_found", error=str(exc))
        return 1
    except InvalidTransitionError as exc:
        log_event(logger, logging.ERROR, "invalid_transition", error=str(exc))
        return 1
    return 0


def _cmd_drafts_submit(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    try:
        with open(args.body_file, "r", encoding="utf-8") as handle:
            body = handle.read()
    except OSError as exc:
        log_event(logger, logging.ERROR, "manual_submit_error", error=str(exc))
        return 1
    processor = DraftProcessor(conn, config, create_text_generator(config, conn))
    try:
        drafts = processor.submit_manual_article(
            args.title,
            args.lead,
            body,
            source_lang=args.lang,
            target_langs=args.target or None,
            category=args.category,
            tags=args.tag,
            created_by=args.editor,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "manual_submit_error", error=str(exc))
        return 1
    _print_json(drafts)
    return 0


def _cmd_drafts_from_url(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    processor = DraftProcessor(conn, config, create_text_generator(config, conn))
    try:
        drafts = processor.submit_article_from_url(
            args.url,
            source_lang=args.lang,
            target_langs=args.target or None,
            category=args.category,
            created_by=args.editor,
        )
    except (FetchError, ValueError) as exc:
        log_event(logger, logging.ERROR, "url_submit_error", url=args.url, error=str(exc))
        return 1
    _print_json(drafts)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    if args.job_type == PROCESS_ITEM_JOB:
        if args.raw_item_id is None:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--raw-item-id is required")
            return 1
        payload: dict[str, object] = {"raw_item_id": args.raw_item_id}
    else:
        if args.draft_id is None:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--draft-id is required")
            return 1
        payload = {"draft_id": args.draft_id}
    job_id = enqueue_job(
        conn,
        args.job_type,
        payload,
        priority=args.priority,
        max_attempts=config.scheduler.max_attempts,
    )
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    for job in list_jobs(conn, status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            priority=job.priority,
            attempts=job.attempts,
            scheduled_at=job.scheduled_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_credentials_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    value = args.value if args.value is not None else sys.stdin.readline().strip()
    try:
        stored = set_credential(conn, args.name, value)
    except (ConfigError, ValueError) as exc:
        log_event(logger, logging.ERROR, "credential_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "credential_set", name=stored["name"], last4=stored["last4"])
    return 0


def _cmd_credentials_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    for item in list_credentials(conn):
        log_event(logger, logging.INFO, "credential", name=item["name"], last4=item["last4"])
    return 0


def _cmd_credentials_keygen(args: argparse.Namespace, logger: logging.Logger) -> int:
    sys.stdout.write(generate_master_key() + "\n")
    log_event(logger, logging.INFO, "master_key_generated", env=MASTER_KEY_ENV)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        _print_json(get_runtime_config(conn))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        load_config(args.path)
        with open(args.path, "r", encoding="utf-8") as handle:
            overrides = yaml.safe_load(handle) or {}
        set_runtime_config(conn, merge_config(get_runtime_config(conn), overrides))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    init_db()
    log_event(logger, logging.INFO, "db_migrated")
    return 0


def _cmd_cron_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    _print_json(Scheduler(conn, config).cron_status())
    return 0


def _cmd_cron_clear_locks(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    count = Scheduler(conn, config).clear_locks()
    log_event(logger, logging.INFO, "locks_cleared", count=count)
    return 0


def _cmd_llm_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_runtime(logger)
    if config is None:
        return 1
    result = check_provider(config.llm, conn)
    _print_json(result)
    return 0 if result.get("ok") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsdesk", description="Newsdesk CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one scheduler hook now")
    run_parser.add_argument("hook", choices=HOOKS, help="Hook to run")
    run_parser.set_defaults(func=_cmd_run)

    scheduler_parser = subparsers.add_parser("scheduler", help="Run the scheduler loop")
    scheduler_parser.add_argument("--once", action="store_true", help="Run every hook once and exit")
    scheduler_parser.add_argument("--sleep", type=int, default=5, help="Seconds between timer checks")
    scheduler_parser.set_defaults(func=_cmd_scheduler)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_seed = sources_subparsers.add_parser("seed", help="Insert the default sources")
    sources_seed.set_defaults(func=_cmd_sources_seed)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_subparsers.add_parser("add", help="Add or update a source")
    sources_add.add_argument("--id", help="Source id (defaults to a slug of the name)")
    sources_add.add_argument("--name", required=True, help="Source name")
    sources_add.add_argument("--url", required=True, help="Feed URL")
    sources_add.add_argument("--lang", default="de", help="Feed language")
    sources_add.add_argument("--category", default="media", help="Source category")
    sources_add.add_argument("--trust-score", type=float, default=0.7, help="Initial trust 0..1")
    sources_add.add_argument("--interval-minutes", type=int, default=15, help="Fetch interval")
    sources_add.add_argument("--enabled", dest="enabled", action="store_true", default=True)
    sources_add.add_argument("--disabled", dest="enabled", action="store_false")
    sources_add.add_argument("--check", action="store_true", help="Validate the feed before adding it")
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_check = sources_subparsers.add_parser("check", help="Fetch and parse a feed without adding it")
    sources_check.add_argument("url", help="Feed URL")
    sources_check.set_defaults(func=_cmd_sources_check)

    sources_show = sources_subparsers.add_parser("show", help="Show a source")
    sources_show.add_argument("source_id", help="Source id")
    sources_show.set_defaults(func=_cmd_sources_show)

    drafts_parser = subparsers.add_parser("drafts", help="Review and publish drafts")
    drafts_subparsers = drafts_parser.add_subparsers(dest="drafts_command", required=True)

    drafts_list = drafts_subparsers.add_parser("list", help="List drafts")
    drafts_list.add_argument("--status", help="Only drafts in this status")
    drafts_list.add_argument("--limit", type=int, default=20)
    drafts_list.set_defaults(func=_cmd_drafts_list)

    drafts_show = drafts_subparsers.add_parser("show", help="Show a draft")
    drafts_show.add_argument("draft_id", type=int)
    drafts_show.set_defaults(func=_cmd_drafts_show)

    for name, help_text in (
        ("approve", "Approve a pending draft"),
        ("reject", "Reject a draft"),
        ("unpublish", "Take a published draft offline"),
        ("publish", "Publish a draft now"),
        ("schedule", "Schedule a draft"),
    ):
        action = drafts_subparsers.add_parser(name, help=help_text)
        action.add_argument("draft_id", type=int)
        action.add_argument("--editor", default=os.environ.get("USER"))
        if name == "reject":
            action.add_argument("--reason")
        if name in {"publish", "schedule"}:
            action.add_argument("--channel", action="append", default=[], help="Secondary channel (repeatable)")
        if name == "schedule":
            action.add_argument("--at", required=True, help="ISO timestamp (UTC)")
        action.set_defaults(func=_cmd_drafts_action)

    drafts_submit = drafts_subparsers.add_parser("submit", help="Submit an editor-written article")
    drafts_submit.add_argument("--title", required=True)
    drafts_submit.add_argument("--lead", required=True)
    drafts_submit.add_argument("--body-file", required=True, help="File holding the article body")
    drafts_submit.add_argument("--lang", help="Language the article is written in")
    drafts_submit.add_argument("--target", action="append", default=[], help="Target language (repeatable)")
    drafts_submit.add_argument("--category", default="nachrichten")
    drafts_submit.add_argument("--tag", action="append", default=[])
    drafts_submit.add_argument("--editor", default=os.environ.get("USER"))
    drafts_submit.set_defaults(func=_cmd_drafts_submit)

    drafts_from_url = drafts_subparsers.add_parser("from-url", help="Create drafts from a web article")
    drafts_from_url.add_argument("url")
    drafts_from_url.add_argument("--lang", help="Language the page is written in")
    drafts_from_url.add_argument("--target", action="append", default=[], help="Target language (repeatable)")
    drafts_from_url.add_argument("--category", default="nachrichten")
    drafts_from_url.add_argument("--editor", default=os.environ.get("USER"))
    drafts_from_url.set_defaults(func=_cmd_drafts_from_url)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=[PROCESS_ITEM_JOB, PUBLISH_DRAFT_JOB])
    jobs_enqueue.add_argument("--raw-item-id", type=int)
    jobs_enqueue.add_argument("--draft-id", type=int)
    jobs_enqueue.add_argument("--priority", type=int, default=5)
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--status")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    credentials_parser = subparsers.add_parser("credentials", help="Encrypted credentials")
    credentials_subparsers = credentials_parser.add_subparsers(dest="credentials_command", required=True)

    credentials_set = credentials_subparsers.add_parser("set", help="Store a credential")
    credentials_set.add_argument("name", help="e.g. llm_api_key or telegram_bot_token")
    credentials_set.add_argument("--value", help="Secret value (read from stdin when omitted)")
    credentials_set.set_defaults(func=_cmd_credentials_set)

    credentials_list = credentials_subparsers.add_parser("list", help="List stored credentials")
    credentials_list.set_defaults(func=_cmd_credentials_list)

    credentials_keygen = credentials_subparsers.add_parser(
        "keygen", help=f"Print a fresh master key for {MASTER_KEY_ENV}"
    )
    credentials_keygen.set_defaults(func=_cmd_credentials_keygen)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    config_import = config_subparsers.add_parser("import", help="Merge a YAML file into the runtime config")
    config_import.add_argument("path")
    config_import.set_defaults(func=_cmd_config_import)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    cron_parser = subparsers.add_parser("cron", help="Scheduler status")
    cron_subparsers = cron_parser.add_subparsers(dest="cron_command", required=True)

    cron_status = cron_subparsers.add_parser("status", help="Show next runs and locks")
    cron_status.set_defaults(func=_cmd_cron_status)

    cron_clear = cron_subparsers.add_parser("clear-locks", help="Drop all scheduler locks")
    cron_clear.set_defaults(func=_cmd_cron_clear_locks)

    llm_parser = subparsers.add_parser("llm", help="Text generation provider")
    llm_subparsers = llm_parser.add_subparsers(dest="llm_command", required=True)

    llm_check = llm_subparsers.add_parser("check", help="Send a test prompt to the provider")
    llm_check.set_defaults(func=_cmd_llm_check)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
