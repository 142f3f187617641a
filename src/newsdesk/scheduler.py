from __future__ import annotations

import argparse
import logging
import os
import resource
import sys
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from .channels import build_channels
from .config import Config, ConfigError, load_runtime_config
from .errors import ComponentUnavailableError, FetchError, PublishError
from .factcheck import FactChecker
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .ingest import PROCESS_ITEM_JOB, fetch_source
from .llm.base import TextGenerator
from .llm.router import create_text_generator
from .models import ITEM_REJECTED, JOB_COMPLETED, JOB_FAILED, RunResult
from .processor import DraftProcessor
from .publish import Publisher
from .registry import get_due, record_fetch_outcome
from .storage import (
    acquire_lock,
    claim_next_job,
    clear_locks,
    complete_job,
    fail_job,
    get_lock,
    get_setting,
    init_db,
    insert_log,
    purge_expired_locks,
    purge_jobs,
    purge_logs,
    purge_raw_items,
    release_job,
    release_lock,
    set_raw_item_status,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, to_iso, utc_now, utc_now_iso_offset

HOOK_FETCH = "fetch_sources"
HOOK_PROCESS = "process_queue"
HOOK_AUTO_PUBLISH = "auto_publish"
HOOK_SCHEDULED = "process_scheduled"
HOOK_CLEANUP = "cleanup"
HOOKS = (HOOK_FETCH, HOOK_PROCESS, HOOK_AUTO_PUBLISH, HOOK_SCHEDULED, HOOK_CLEANUP)

PUBLISH_DRAFT_JOB = "publish_draft"

# Seconds past each interval boundary, so the periodic hooks never start together.
HOOK_OFFSETS = {
    HOOK_FETCH: 30,
    HOOK_PROCESS: 90,
    HOOK_AUTO_PUBLISH: 150,
    HOOK_SCHEDULED: 210,
}
CLEANUP_HOUR = 3
RETRY_DELAY_SECONDS = 60
LAST_RUN_KEY = "scheduler.last_run"
STATM_PATH = "/proc/self/statm"

logger = logging.getLogger("newsdesk.scheduler")


def current_memory_mb() -> float:
    """Current resident set size of this process in MB."""
    try:
        with open(STATM_PATH, "r", encoding="utf-8") as handle:
            resident_pages = int(handle.read().split()[1])
    except OSError:
        # No procfs (macOS): getrusage only reports the peak.
        usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        if sys.platform == "darwin":
            return usage / (1024 * 1024)
        return usage / 1024
    return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)


class RunBudget:
    """Wall-clock and memory allowance for one hook run."""

    def __init__(
        self,
        max_seconds: int,
        max_memory_mb: int,
        min_free_memory_mb: int,
        clock: Callable[[], float] = time.monotonic,
        memory_usage: Callable[[], float] = current_memory_mb,
    ) -> None:
        self.max_seconds = max_seconds
        self.max_memory_mb = max_memory_mb
        self.min_free_memory_mb = min_free_memory_mb
        self.clock = clock
        self.memory_usage = memory_usage
        self.started = clock()
        self.stop_reason: str | None = None

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> "RunBudget":
        scheduler = config.scheduler
        return cls(
            scheduler.max_execution_seconds,
            scheduler.max_memory_mb,
            scheduler.min_free_memory_mb,
            **kwargs,
        )

    def elapsed(self) -> float:
        return self.clock() - self.started

    def ok(self) -> bool:
        if self.elapsed() >= self.max_seconds:
            self.stop_reason = "time_budget"
            return False
        if self.max_memory_mb - self.memory_usage() <= self.min_free_memory_mb:
            self.stop_reason = "memory_budget"
            return False
        return True


class Scheduler:
    """Runs the periodic hooks, one locked execution per hook at a time."""

    def __init__(
        self,
        conn,
        config: Config,
        generator: TextGenerator | None = None,
        publisher: Publisher | None = None,
        fact_checker: Any | None = None,
        fetcher: Callable[..., Any] = fetch_source,
        budget_factory: Callable[[Config], RunBudget] = RunBudget.from_config,
        holder: str | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self._generator = generator
        self._publisher = publisher
        self._owns_generator = generator is None
        self._owns_publisher = publisher is None
        self.fact_checker = fact_checker or FactChecker(conn)
        self.fetcher = fetcher
        self.budget_factory = budget_factory
        self.holder = holder or f"{os.environ.get('HOSTNAME', 'scheduler')}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    @property
    def generator(self) -> TextGenerator:
        if self._generator is None:
            self._generator = create_text_generator(self.config, self.conn)
        return self._generator

    @property
    def publisher(self) -> Publisher:
        if self._publisher is None:
            try:
                primary, secondaries = build_channels(self.config, self.conn)
            except ValueError as exc:
                raise ComponentUnavailableError(f"publishing channels unavailable: {exc}") from exc
            self._publisher = Publisher(self.conn, self.config, primary, secondaries)
        return self._publisher

    def reload_config(self) -> bool:
        """Pick up a runtime config saved since the last tick.

        Components built from the previous config are dropped so the next
        hook rebuilds them. An invalid stored config keeps the current one.
        """
        try:
            config = load_runtime_config(self.conn)
        except ConfigError as exc:
            log_event(logger, logging.WARNING, "config_reload_failed", error=str(exc))
            return False
        if config == self.config:
            return False
        self.config = config
        if self._owns_generator:
            self._generator = None
        if self._owns_publisher:
            self._publisher = None
        log_event(logger, logging.INFO, "config_reloaded")
        return True

    def trigger(self, hook: str) -> RunResult:
        if hook not in HOOKS:
            raise ValueError(f"unknown hook {hook}")
        return self.run_hook(hook, manual=True)

    def run_hook(self, hook: str, manual: bool = False) -> RunResult:
        handler = self._handlers()[hook]
        lock_name = f"newsdesk_{hook}"
        if not acquire_lock(
            self.conn, lock_name, self.holder, self.config.scheduler.lock_timeout_seconds
        ):
            log_event(logger, logging.INFO, "hook_already_running", hook=hook)
            return RunResult(
                hook=hook,
                success=True,
                counters={},
                errors=[],
                message="already running",
                skipped=True,
            )
        started = time.monotonic()
        try:
            budget = self.budget_factory(self.config)
            result = handler(budget)
        except ConfigError as exc:
            log_event(logger, logging.WARNING, "hook_config_error", hook=hook, error=str(exc))
            insert_log(self.conn, "warning", f"{hook} skipped: {exc}", {"hook": hook, "manual": manual})
            result = RunResult(hook=hook, success=False, counters={}, errors=[], error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("hook %s aborted", hook)
            insert_log(self.conn, "error", f"{hook} aborted: {exc}", {"hook": hook, "manual": manual})
            result = RunResult(hook=hook, success=False, counters={}, errors=[], error=str(exc))
        finally:
            release_lock(self.conn, lock_name, self.holder)

        duration = round(time.monotonic() - started, 3)
        self._record_last_run(result, duration)
        log_event(
            logger,
            logging.INFO if result.success else logging.WARNING,
            "hook_complete",
            hook=hook,
            success=result.success,
            duration=duration,
            errors=len(result.errors),
            **result.counters,
        )
        return result

    def fetch_sources(self, budget: RunBudget) -> RunResult:
        counters = {"sources_due": 0, "sources_fetched": 0, "sources_failed": 0, "new_items": 0}
        errors: list[str] = []
        due = get_due(self.conn)
        counters["sources_due"] = len(due)
        for source in due:
            if not budget.ok():
                return self._early_stop(HOOK_FETCH, counters, errors, budget)
            try:
                outcome = self.fetcher(self.conn, self.config, source, logger)
            except FetchError as exc:
                self._record_source_failure(source.id, str(exc), counters, errors)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("fetch of source %s crashed", source.id)
                self._record_source_failure(source.id, str(exc), counters, errors)
                continue
            record_fetch_outcome(self.conn, source.id)
            counters["sources_fetched"] += 1
            counters["new_items"] += outcome.new_item_count
        if counters["sources_fetched"] or counters["sources_failed"]:
            insert_log(
                self.conn,
                "info",
                f"Fetched {counters['sources_fetched']} sources, {counters['new_items']} new items",
                dict(counters),
            )
        return RunResult(hook=HOOK_FETCH, success=True, counters=counters, errors=errors)

    def process_queue(self, budget: RunBudget) -> RunResult:
        counters = {"claimed": 0, "completed": 0, "retried": 0, "failed": 0, "drafts_created": 0}
        errors: list[str] = []
        for _ in range(self.config.pipeline.batch_size):
            if not budget.ok():
                return self._early_stop(HOOK_PROCESS, counters, errors, budget)
            job = claim_next_job(
                self.conn,
                lock_timeout_seconds=self.config.scheduler.lock_timeout_seconds,
            )
            if job is None:
                break
            counters["claimed"] += 1
            try:
                result = self.run_claimed_job(job)
            except (ConfigError, ComponentUnavailableError):
                release_job(self.conn, job.id)
                raise
            except Exception as exc:  # noqa: BLE001
                status = fail_job(
                    self.conn,
                    job.id,
                    str(exc),
                    retry_at=utc_now_iso_offset(seconds=RETRY_DELAY_SECONDS * (job.attempts + 1)),
                )
                errors.append(f"{job.id}: {exc}")
                if status == JOB_FAILED:
                    counters["failed"] += 1
                    self._on_job_exhausted(job)
                else:
                    counters["retried"] += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "job_failed",
                    job_id=job.id,
                    job_type=job.job_type,
                    status=status,
                    error=str(exc),
                )
                continue
            complete_job(self.conn, job.id)
            counters["completed"] += 1
            counters["drafts_created"] += int(result.get("drafts_created", 0))
        return RunResult(hook=HOOK_PROCESS, success=True, counters=counters, errors=errors)

    def run_claimed_job(self, job) -> dict[str, Any]:
        log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
        if job.job_type == PROCESS_ITEM_JOB:
            processor = DraftProcessor(self.conn, self.config, self.generator, self.fact_checker)
            outcome = processor.process_item(
                int(job.payload["raw_item_id"]),
                allow_fallback=job.attempts + 1 >= job.max_attempts,
            )
            return {"status": outcome.status, "drafts_created": len(outcome.draft_ids)}
        if job.job_type == PUBLISH_DRAFT_JOB:
            result = self.publisher.publish(int(job.payload["draft_id"]), job.payload.get("channels"))
            if not result.success:
                raise PublishError(f"publish failed: {result.error}")
            return {"status": "published", "url": result.url}
        raise ValueError(f"unsupported job type {job.job_type}")

    def auto_publish(self, budget: RunBudget) -> RunResult:
        if not self.config.pipeline.auto_publish_enabled:
            return RunResult(
                hook=HOOK_AUTO_PUBLISH,
                success=True,
                counters={},
                errors=[],
                message="Auto-publish disabled",
            )
        results = self.publisher.auto_publish(should_continue=budget.ok)
        return self._publish_summary(HOOK_AUTO_PUBLISH, results, budget)

    def process_scheduled(self, budget: RunBudget) -> RunResult:
        results = self.publisher.process_scheduled(should_continue=budget.ok)
        return self._publish_summary(HOOK_SCHEDULED, results, budget)

    def cleanup(self, budget: RunBudget) -> RunResult:
        now = utc_now()
        retention = self.config.retention

        def before(days: int) -> str:
            return to_iso(now - timedelta(days=days))

        counters = {
            "logs": purge_logs(self.conn, before(retention.log_retention_days)),
            "raw_items": purge_raw_items(
                self.conn,
                before(retention.raw_item_retention_days),
                ("processed", "duplicate", "rejected"),
            ),
            "failed_jobs": purge_jobs(self.conn, JOB_FAILED, before(retention.failed_job_retention_days)),
            "completed_jobs": purge_jobs(
                self.conn, JOB_COMPLETED, before(retention.completed_job_retention_days)
            ),
            "expired_locks": purge_expired_locks(self.conn, to_iso(now)),
            "trust_updates": self.fact_checker.update_all_source_trust(now),
        }
        insert_log(self.conn, "info", "Cleanup finished", dict(counters))
        return RunResult(hook=HOOK_CLEANUP, success=True, counters=counters, errors=[])

    def cron_status(self, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utc_now()
        last_runs = get_setting(self.conn, LAST_RUN_KEY, {}) or {}
        status = []
        for hook in HOOKS:
            lock = get_lock(self.conn, f"newsdesk_{hook}")
            locked = bool(lock and parse_iso(lock["expires_at"]) > now)
            status.append(
                {
                    "hook": hook,
                    "interval_minutes": self.interval_minutes(hook),
                    "next_run": to_iso(self.next_run(hook, now)),
                    "locked": locked,
                    "lock_holder": lock["holder"] if locked else None,
                    "last_run": last_runs.get(hook),
                }
            )
        return status

    def clear_locks(self) -> int:
        count = clear_locks(self.conn)
        insert_log(self.conn, "warning", "Scheduler locks cleared", {"count": count})
        return count

    def interval_minutes(self, hook: str) -> int:
        scheduler = self.config.scheduler
        return {
            HOOK_FETCH: scheduler.fetch_interval,
            HOOK_PROCESS: scheduler.process_interval,
            HOOK_AUTO_PUBLISH: scheduler.auto_publish_interval,
            HOOK_SCHEDULED: scheduler.scheduled_interval,
            HOOK_CLEANUP: 24 * 60,
        }[hook]

    def next_run(self, hook: str, now: datetime) -> datetime:
        if hook == HOOK_CLEANUP:
            local = now.astimezone(ZoneInfo(self.config.app.timezone))
            target = local.replace(hour=CLEANUP_HOUR, minute=0, second=0, microsecond=0)
            if target <= local:
                target += timedelta(days=1)
            return target.astimezone(now.tzinfo)
        period = self.interval_minutes(hook) * 60
        offset = HOOK_OFFSETS[hook] % period
        epoch = int(now.timestamp())
        slot = ((epoch - offset) // period + 1) * period + offset
        return datetime.fromtimestamp(slot, tz=now.tzinfo)

    def run_loop(self, sleep_seconds: int = 5, max_iterations: int | None = None) -> int:
        now = utc_now()
        planned = {hook: self.next_run(hook, now) for hook in HOOKS}
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            if self.reload_config():
                planned = {hook: self.next_run(hook, utc_now()) for hook in HOOKS}
            now = utc_now()
            for hook in HOOKS:
                if planned[hook] <= now:
                    self.run_hook(hook)
                    planned[hook] = self.next_run(hook, utc_now())
            time.sleep(sleep_seconds)
        return 0

    def _handlers(self) -> dict[str, Callable[[RunBudget], RunResult]]:
        return {
            HOOK_FETCH: self.fetch_sources,
            HOOK_PROCESS: self.process_queue,
            HOOK_AUTO_PUBLISH: self.auto_publish,
            HOOK_SCHEDULED: self.process_scheduled,
            HOOK_CLEANUP: self.cleanup,
        }

    def _record_source_failure(
        self, source_id: str, error: str, counters: dict[str, int], errors: list[str]
    ) -> None:
        record_fetch_outcome(self.conn, source_id, error=error)
        counters["sources_failed"] += 1
        errors.append(f"{source_id}: {error}")
        log_event(logger, logging.WARNING, "source_fetch_failed", source_id=source_id, error=error)

    def _on_job_exhausted(self, job) -> None:
        raw_item_id = job.payload.get("raw_item_id")
        if job.job_type == PROCESS_ITEM_JOB and raw_item_id is not None:
            set_raw_item_status(self.conn, int(raw_item_id), ITEM_REJECTED)
        insert_log(
            self.conn,
            "error",
            f"Job {job.id} failed permanently",
            {"job_id": job.id, "job_type": job.job_type, "payload": job.payload},
        )

    def _publish_summary(self, hook: str, results, budget: RunBudget) -> RunResult:
        counters = {
            "published": sum(1 for result in results if result.success),
            "failed": sum(1 for result in results if not result.success),
        }
        errors = [f"draft {result.draft_id}: {result.error}" for result in results if not result.success]
        if budget.stop_reason:
            return self._early_stop(hook, counters, errors, budget)
        return RunResult(hook=hook, success=True, counters=counters, errors=errors)

    def _early_stop(
        self, hook: str, counters: dict[str, int], errors: list[str], budget: RunBudget
    ) -> RunResult:
        log_event(logger, logging.INFO, "hook_stopped_early", hook=hook, reason=budget.stop_reason)
        return RunResult(
            hook=hook,
            success=True,
            counters=counters,
            errors=errors,
            message=f"stopped early: {budget.stop_reason}",
        )

    def _record_last_run(self, result: RunResult, duration: float) -> None:
        last_runs = get_setting(self.conn, LAST_RUN_KEY, {}) or {}
        last_runs[result.hook] = {
            "at": to_iso(utc_now()),
            "success": result.success,
            "duration": duration,
            "counters": result.counters,
            "error": result.error,
            "message": result.message,
        }
        set_setting(self.conn, LAST_RUN_KEY, last_runs)


def _setup_logging() -> logging.Logger:
    return configure_logging("newsdesk.scheduler")


def build_scheduler(conn=None) -> Scheduler:
    conn = conn or init_db()
    config = load_runtime_config(conn)
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(config))
    return Scheduler(conn, config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsdesk-scheduler")
    parser.add_argument("--once", action="store_true", help="Run every hook once and exit")
    parser.add_argument("--hook", choices=HOOKS, help="Run a single hook and exit")
    parser.add_argument(
        "--sleep",
        type=int,
        default=int(os.environ.get("ND_SCHEDULER_SLEEP", "5")),
        help="Seconds between timer checks; the runtime config is re-read on each check",
    )
    return parser


def main() -> int:
    args = build_parser().parse_args()
    logger = _setup_logging()
    try:
        scheduler = build_scheduler()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.hook:
        return 0 if scheduler.run_hook(args.hook, manual=True).success else 1
    if args.once:
        results = [scheduler.run_hook(hook) for hook in HOOKS]
        return 0 if all(result.success for result in results) else 1
    return scheduler.run_loop(args.sleep)


if __name__ == "__main__":
    raise SystemExit(main())
