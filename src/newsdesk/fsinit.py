from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from .config import Config


def set_umask_from_env() -> None:
    umask_value = os.environ.get("ND_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def ensure_runtime_dirs(paths: Iterable[str]) -> None:
    for path in paths:
        if not path:
            continue
        _ensure_dir(Path(path))


def build_default_paths(config: Config) -> list[str]:
    site_dir = config.paths.site_dir
    paths = [config.paths.data_dir, os.path.join(config.paths.data_dir, "logs"), site_dir]
    paths.extend(os.path.join(site_dir, lang) for lang in config.pipeline.target_languages)
    return paths


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return
    try:
        path.chmod(0o775)
    except PermissionError:
        return
