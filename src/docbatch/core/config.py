from __future__ import annotations

import multiprocessing as mp
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path
    staging_dir: Path


DEFAULT_DATA_DIRNAME = ".docbatch"
DEFAULT_EXTRACTOR = "docbatch.infrastructure.extractors.plain_text:extract"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("DOCBATCH_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / "docbatch.db",
        staging_dir=data_dir / "staging",
    )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = str(raw).strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(0, parsed)


def _env_positive_int(name: str, default: int) -> int:
    value = _env_non_negative_int(name, default)
    return value if value > 0 else default


def _env_non_negative_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(0.0, parsed)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True)
class ProcessingSettings:
    max_concurrent_workers: int = 2
    background_workers_enabled: bool = True
    worker_start_method: str = "spawn"
    worker_idle_timeout_seconds: int = 300
    cancel_ack_timeout_seconds: float = 5.0
    retention_seconds: int = 24 * 60 * 60
    cleanup_interval_seconds: int = 60 * 60
    inter_file_delay_seconds: float = 0.1
    seconds_per_file_estimate: int = 45
    max_file_bytes: int = 50 * 1024 * 1024
    extractor: str = DEFAULT_EXTRACTOR
    resume_on_startup: bool = True

    @classmethod
    def from_env(cls) -> ProcessingSettings:
        defaults = cls()
        return cls(
            max_concurrent_workers=_env_positive_int(
                "DOCBATCH_MAX_CONCURRENT_WORKERS", defaults.max_concurrent_workers
            ),
            background_workers_enabled=_env_bool(
                "DOCBATCH_BACKGROUND_WORKERS_ENABLED", defaults.background_workers_enabled
            ),
            worker_start_method=_env_str("DOCBATCH_WORKER_START_METHOD", defaults.worker_start_method),
            worker_idle_timeout_seconds=_env_non_negative_int(
                "DOCBATCH_WORKER_IDLE_TIMEOUT_SECONDS", defaults.worker_idle_timeout_seconds
            ),
            cancel_ack_timeout_seconds=_env_non_negative_float(
                "DOCBATCH_CANCEL_ACK_TIMEOUT_SECONDS", defaults.cancel_ack_timeout_seconds
            ),
            retention_seconds=_env_non_negative_int("DOCBATCH_RETENTION_SECONDS", defaults.retention_seconds),
            cleanup_interval_seconds=_env_positive_int(
                "DOCBATCH_CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval_seconds
            ),
            inter_file_delay_seconds=_env_non_negative_float(
                "DOCBATCH_INTER_FILE_DELAY_SECONDS", defaults.inter_file_delay_seconds
            ),
            seconds_per_file_estimate=_env_non_negative_int(
                "DOCBATCH_SECONDS_PER_FILE_ESTIMATE", defaults.seconds_per_file_estimate
            ),
            max_file_bytes=_env_positive_int("DOCBATCH_MAX_FILE_BYTES", defaults.max_file_bytes),
            extractor=_env_str("DOCBATCH_EXTRACTOR", defaults.extractor),
            resume_on_startup=_env_bool("DOCBATCH_RESUME_ON_STARTUP", defaults.resume_on_startup),
        )

    def background_execution_supported(self) -> bool:
        if not self.background_workers_enabled:
            return False
        return self.worker_start_method in mp.get_all_start_methods()
