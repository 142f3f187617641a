from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .errors import ConfigError
from .storage import get_setting, set_setting

__all__ = [
    "CONFIG_KEY",
    "DEFAULT_CONFIG",
    "Config",
    "ConfigError",
    "bootstrap_runtime_config",
    "build_config",
    "get_runtime_config",
    "get_state_db_path",
    "load_config",
    "load_runtime_config",
    "merge_config",
    "set_runtime_config",
    "validate_runtime_config",
]


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str
    default_language: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    site_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class IngestConfig:
    tracking_params: tuple[str, ...]
    max_items_per_feed: int
    duplicate_window_hours: int


@dataclass(frozen=True)
class PipelineConfig:
    target_languages: tuple[str, ...]
    batch_size: int
    categories_require_approval: tuple[str, ...]
    fact_check_threshold: float
    source_trust_threshold: float
    sensitive_keywords: tuple[str, ...]
    auto_publish_enabled: bool
    auto_publish_delay: int
    rewrite_style: str


@dataclass(frozen=True)
class SchedulerConfig:
    fetch_interval: int
    process_interval: int
    auto_publish_interval: int
    scheduled_interval: int
    max_execution_seconds: int
    max_memory_mb: int
    min_free_memory_mb: int
    lock_timeout_seconds: int
    max_attempts: int


@dataclass(frozen=True)
class RetentionConfig:
    log_retention_days: int
    raw_item_retention_days: int
    failed_job_retention_days: int
    completed_job_retention_days: int


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    provider: str
    model: str
    base_url: str
    timeout_seconds: int
    api_key_env: str


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool
    chat_id: str
    api_base_url: str


@dataclass(frozen=True)
class ChannelsConfig:
    primary: str
    site_base_url: str
    secondary: tuple[str, ...]
    telegram: TelegramConfig


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    ingest: IngestConfig
    pipeline: PipelineConfig
    scheduler: SchedulerConfig
    retention: RetentionConfig
    llm: LlmConfig
    channels: ChannelsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Newsdesk",
        "timezone": "Europe/Berlin",
        "default_language": "de",
    },
    "paths": {
        "data_dir": "/data",
        "site_dir": "/data/site/content",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "Newsdesk/0.1 (+feed fetcher)",
        "max_retries": 1,
        "backoff_seconds": 2,
    },
    "ingest": {
        "tracking_params": [
            "utm_source",
            "utm_medium",
            "utm_campaign",
            "utm_term",
            "utm_content",
            "fbclid",
            "gclid",
            "mc_eid",
            "mc_cid",
        ],
        "max_items_per_feed": 50,
        "duplicate_window_hours": 72,
    },
    "pipeline": {
        "target_languages": ["de", "ua", "ru", "en"],
        "batch_size": 5,
        "categories_require_approval": ["politik", "wirtschaft"],
        "fact_check_threshold": 0.6,
        "source_trust_threshold": 0.7,
        "sensitive_keywords": [
            "krieg",
            "konflikt",
            "tod",
            "unfall",
            "krise",
            "skandal",
            "death",
            "accident",
            "crisis",
            "scandal",
            "війна",
            "смерть",
            "война",
            "кризис",
            "скандал",
        ],
        "auto_publish_enabled": False,
        "auto_publish_delay": 10,
        "rewrite_style": "news",
    },
    "scheduler": {
        "fetch_interval": 5,
        "process_interval": 2,
        "auto_publish_interval": 5,
        "scheduled_interval": 5,
        "max_execution_seconds": 120,
        "max_memory_mb": 256,
        "min_free_memory_mb": 32,
        "lock_timeout_seconds": 300,
        "max_attempts": 3,
    },
    "retention": {
        "log_retention_days": 30,
        "raw_item_retention_days": 7,
        "failed_job_retention_days": 3,
        "completed_job_retention_days": 7,
    },
    "llm": {
        "enabled": False,
        "provider": "deepseek",
        "model": "deepseek-chat",
        "base_url": "",
        "timeout_seconds": 60,
        "api_key_env": "ND_LLM_API_KEY",
    },
    "channels": {
        "primary": "markdown_site",
        "site_base_url": "https://news.example.org",
        "secondary": ["telegram"],
        "telegram": {
            "enabled": False,
            "chat_id": "",
            "api_base_url": "https://api.telegram.org",
        },
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("ND_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        seed = _deep_copy(DEFAULT_CONFIG)
        data_dir = os.environ.get("ND_DATA_DIR")
        if data_dir:
            seed["paths"]["data_dir"] = data_dir
            seed["paths"]["site_dir"] = os.path.join(data_dir, "site", "content")
        set_setting(conn, CONFIG_KEY, seed)
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    return _build_config(get_runtime_config(conn))


def load_config(path: str | None = None) -> Config:
    """Build a Config from a YAML file layered over DEFAULT_CONFIG.

    Without a path, ND_CONFIG_PATH is consulted; with neither the defaults
    are used as-is.
    """
    path = path or os.environ.get("ND_CONFIG_PATH")
    if not path:
        return build_config({})
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return build_config(data)


def build_config(overrides: dict[str, Any]) -> Config:
    cfg = merge_config(DEFAULT_CONFIG, overrides)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def merge_config(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    pipeline = cfg["pipeline"]
    for key in ("fact_check_threshold", "source_trust_threshold"):
        if not 0 <= float(pipeline[key]) <= 1:
            errors.append(f"config.runtime.pipeline.{key} must be between 0 and 1")
    if pipeline["batch_size"] < 1:
        errors.append("config.runtime.pipeline.batch_size must be at least 1")
    if not pipeline["target_languages"]:
        errors.append("config.runtime.pipeline.target_languages must not be empty")
    scheduler = cfg["scheduler"]
    for key in (
        "fetch_interval",
        "process_interval",
        "auto_publish_interval",
        "scheduled_interval",
        "max_execution_seconds",
        "lock_timeout_seconds",
        "max_attempts",
    ):
        if scheduler[key] < 1:
            errors.append(f"config.runtime.scheduler.{key} must be at least 1")
    if scheduler["min_free_memory_mb"] >= scheduler["max_memory_mb"]:
        errors.append("config.runtime.scheduler.min_free_memory_mb must be below max_memory_mb")
    if cfg["llm"]["provider"] not in {"openai_compatible", "deepseek", "anthropic"}:
        errors.append("config.runtime.llm.provider must be openai_compatible, deepseek or anthropic")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    ingest_cfg = cfg["ingest"]
    pipeline_cfg = cfg["pipeline"]
    scheduler_cfg = cfg["scheduler"]
    retention_cfg = cfg["retention"]
    llm_cfg = cfg["llm"]
    channels_cfg = cfg["channels"]
    telegram_cfg = channels_cfg["telegram"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        timezone=str(app_cfg["timezone"]),
        default_language=str(app_cfg["default_language"]),
    )
    paths = PathsConfig(
        data_dir=str(paths_cfg["data_dir"]),
        site_dir=str(paths_cfg["site_dir"]),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=int(http_cfg["backoff_seconds"]),
    )
    ingest = IngestConfig(
        tracking_params=tuple(ingest_cfg["tracking_params"]),
        max_items_per_feed=int(ingest_cfg["max_items_per_feed"]),
        duplicate_window_hours=int(ingest_cfg["duplicate_window_hours"]),
    )
    pipeline = PipelineConfig(
        target_languages=tuple(pipeline_cfg["target_languages"]),
        batch_size=int(pipeline_cfg["batch_size"]),
        categories_require_approval=tuple(
            item.lower() for item in pipeline_cfg["categories_require_approval"]
        ),
        fact_check_threshold=float(pipeline_cfg["fact_check_threshold"]),
        source_trust_threshold=float(pipeline_cfg["source_trust_threshold"]),
        sensitive_keywords=tuple(item.lower() for item in pipeline_cfg["sensitive_keywords"]),
        auto_publish_enabled=bool(pipeline_cfg["auto_publish_enabled"]),
        auto_publish_delay=int(pipeline_cfg["auto_publish_delay"]),
        rewrite_style=str(pipeline_cfg["rewrite_style"]),
    )
    scheduler = SchedulerConfig(
        fetch_interval=int(scheduler_cfg["fetch_interval"]),
        process_interval=int(scheduler_cfg["process_interval"]),
        auto_publish_interval=int(scheduler_cfg["auto_publish_interval"]),
        scheduled_interval=int(scheduler_cfg["scheduled_interval"]),
        max_execution_seconds=int(scheduler_cfg["max_execution_seconds"]),
        max_memory_mb=int(scheduler_cfg["max_memory_mb"]),
        min_free_memory_mb=int(scheduler_cfg["min_free_memory_mb"]),
        lock_timeout_seconds=int(scheduler_cfg["lock_timeout_seconds"]),
        max_attempts=int(scheduler_cfg["max_attempts"]),
    )
    retention = RetentionConfig(
        log_retention_days=int(retention_cfg["log_retention_days"]),
        raw_item_retention_days=int(retention_cfg["raw_item_retention_days"]),
        failed_job_retention_days=int(retention_cfg["failed_job_retention_days"]),
        completed_job_retention_days=int(retention_cfg["completed_job_retention_days"]),
    )
    llm = LlmConfig(
        enabled=bool(llm_cfg["enabled"]),
        provider=str(llm_cfg["provider"]),
        model=str(llm_cfg["model"]),
        base_url=str(llm_cfg["base_url"]),
        timeout_seconds=int(llm_cfg["timeout_seconds"]),
        api_key_env=str(llm_cfg["api_key_env"]),
    )
    channels = ChannelsConfig(
        primary=str(channels_cfg["primary"]),
        site_base_url=str(channels_cfg["site_base_url"]).rstrip("/"),
        secondary=tuple(channels_cfg["secondary"]),
        telegram=TelegramConfig(
            enabled=bool(telegram_cfg["enabled"]),
            chat_id=str(telegram_cfg["chat_id"]),
            api_base_url=str(telegram_cfg["api_base_url"]).rstrip("/"),
        ),
    )
    return Config(
        app=app,
        paths=paths,
        http=http,
        ingest=ingest,
        pipeline=pipeline,
        scheduler=scheduler,
        retention=retention,
        llm=llm,
        channels=channels,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
