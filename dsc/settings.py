from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DSC_DB_PATH", "dsc.db")
    reconcile_interval_s: int = _env_int("DSC_RECONCILE_INTERVAL_S", 15)
    workloads_file: str | None = os.getenv("DSC_WORKLOADS_FILE")

    # Metrics sampling
    metrics_url: str | None = os.getenv("DSC_METRICS_URL")
    sample_interval_s: int = _env_int("DSC_SAMPLE_INTERVAL_S", 15)
    metric_timeout_s: int = _env_int("DSC_METRIC_TIMEOUT_S", 30)
    stale_cycles: int = _env_int("DSC_STALE_CYCLES", 3)
    sample_window: int = _env_int("DSC_SAMPLE_WINDOW", 256)

    # Scaling policy defaults
    stabilization_window_s: int = _env_int("DSC_STABILIZATION_WINDOW_S", 300)
    stability_tolerance: float = _env_float("DSC_STABILITY_TOLERANCE", 0.10)

    # Rollout defaults
    rollout_ready_timeout_s: int = _env_int("DSC_ROLLOUT_READY_TIMEOUT_S", 300)
    batch_percent: int = _env_int("DSC_BATCH_PERCENT", 25)

    # Executor
    executor_kind: str = os.getenv("DSC_EXECUTOR_KIND", "http")  # http|docker
    executor_url: str = os.getenv("DSC_EXECUTOR_URL", "http://localhost:9000")
    executor_timeout_s: float = _env_float("DSC_EXECUTOR_TIMEOUT_S", 10.0)
    backoff_base_s: float = _env_float("DSC_BACKOFF_BASE_S", 1.0)
    backoff_cap_s: float = _env_float("DSC_BACKOFF_CAP_S", 30.0)
    backoff_attempts: int = _env_int("DSC_BACKOFF_ATTEMPTS", 5)
    docker_network: str = os.getenv("DSC_DOCKER_NETWORK", "dsc")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DSC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DSC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DSC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DSC_SMTP_USER")
    smtp_password: str | None = os.getenv("DSC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DSC_EMAIL_FROM")
    email_to: str | None = os.getenv("DSC_EMAIL_TO")


settings = Settings()
