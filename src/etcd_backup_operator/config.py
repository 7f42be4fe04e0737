from __future__ import annotations

from dataclasses import dataclass
import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class OperatorConfig:
    watch_namespace: str | None = _env_optional("EBO_WATCH_NAMESPACE")
    kubeconfig_path: str | None = _env_optional("EBO_KUBECONFIG_PATH")
    context: str | None = _env_optional("EBO_KUBE_CONTEXT")
    in_cluster: bool = _env_flag("EBO_IN_CLUSTER")
    worker_count: int = int(os.getenv("EBO_WORKER_COUNT", "2"))
    watch_timeout_seconds: int = int(os.getenv("EBO_WATCH_TIMEOUT_SECONDS", "300"))
    retry_delay_seconds: float = float(os.getenv("EBO_RETRY_DELAY_SECONDS", "5"))
    resync_interval_seconds: float = float(os.getenv("EBO_RESYNC_INTERVAL_SECONDS", "60"))
    log_level: str = os.getenv("EBO_LOG_LEVEL", "INFO")
    default_backup_image: str = os.getenv("EBO_DEFAULT_BACKUP_IMAGE", "etcd-backup:latest")


def validate_config(config: OperatorConfig) -> None:
    if config.worker_count <= 0:
        raise ValueError("worker_count must be positive")
    if config.watch_timeout_seconds <= 0:
        raise ValueError("watch_timeout_seconds must be positive")
    if config.retry_delay_seconds <= 0:
        raise ValueError("retry_delay_seconds must be positive")
    if config.resync_interval_seconds <= 0:
        raise ValueError("resync_interval_seconds must be positive")


def configure_logging(level: str) -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)
    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(resolved, logging.INFO))
