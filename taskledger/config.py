"""Settings loaded from environment variables.

Every knob has a default so nothing is required at import time. Variables use
the ``TASKLEDGER_`` prefix, e.g. ``TASKLEDGER_DATA_DIR``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

ENV_PREFIX = "TASKLEDGER"

DEFAULT_STORAGE_DIR = ".taskledger"
DEFAULT_COMPLETION_THRESHOLD = 80
DEFAULT_MIN_SUMMARY_LENGTH = 30
DEFAULT_DELETED_PAGE_SIZE = 50
DEFAULT_HISTORY_LIMIT = 50


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger("taskledger.config").warning(
            "Ignoring malformed integer %s=%r, using %s", name, raw, default
        )
        return default


def _env_path(name: str) -> Optional[Path]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return Path(raw).expanduser()


@dataclass(slots=True)
class LedgerSettings:
    """Runtime configuration for a ledger instance."""

    data_dir: Path
    storage_dir: str = DEFAULT_STORAGE_DIR
    completion_threshold: int = DEFAULT_COMPLETION_THRESHOLD
    min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH
    deleted_page_size: int = DEFAULT_DELETED_PAGE_SIZE
    history_limit: int = DEFAULT_HISTORY_LIMIT
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def base_dir(self) -> Path:
        return self.data_dir / self.storage_dir


def get_settings(data_dir: Path | str | None = None) -> LedgerSettings:
    """Build settings from the environment; ``data_dir`` overrides TASKLEDGER_DATA_DIR."""
    if data_dir is not None:
        root = Path(data_dir).expanduser()
    else:
        root = _env_path(_k("DATA_DIR")) or Path.cwd()

    return LedgerSettings(
        data_dir=root.resolve(),
        storage_dir=_env(_k("STORAGE_DIR"), DEFAULT_STORAGE_DIR).strip() or DEFAULT_STORAGE_DIR,
        completion_threshold=_env_int(_k("COMPLETION_THRESHOLD"), DEFAULT_COMPLETION_THRESHOLD),
        min_summary_length=_env_int(_k("MIN_SUMMARY_LENGTH"), DEFAULT_MIN_SUMMARY_LENGTH),
        deleted_page_size=_env_int(_k("DELETED_PAGE_SIZE"), DEFAULT_DELETED_PAGE_SIZE),
        history_limit=_env_int(_k("HISTORY_LIMIT"), DEFAULT_HISTORY_LIMIT),
        log_level=_env(_k("LOG_LEVEL"), "INFO").upper(),
        log_file=_env_path(_k("LOG_FILE")),
    )
