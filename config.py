"""Laufzeit-Einstellungen aus Umgebungsvariablen (und optionaler .env-Datei)."""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class Settings:
    namespace: str = "default"
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 8080
    log_level: str = "INFO"
    watch_timeout_seconds: int = 30
    list_page_size: int = 500
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    shutdown_grace_seconds: int = 5


def _int(key: str, default: int, min_val: int = 1, max_val: int | None = None) -> int:
    raw = os.getenv(key, str(default))
    try:
        val = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    if val < min_val or (max_val is not None and val > max_val):
        raise ValueError(f"{key}={val} is out of range")
    return val


def _float(key: str, default: float) -> float:
    raw = os.getenv(key, str(default))
    try:
        val = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
    if val <= 0:
        raise ValueError(f"{key} must be positive, got {val}")
    return val


def load_settings(dotenv: bool = True) -> Settings:
    """Liest die Settings aus den Umgebungsvariablen.

    Wirft ValueError, wenn eine Variable gesetzt, aber unbrauchbar ist.
    """
    if dotenv:
        load_dotenv(override=False)

    namespace = os.getenv("POD_NAMESPACE", "default").strip()
    if not namespace:
        raise ValueError("POD_NAMESPACE must not be empty")

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}, got {log_level!r}")

    backoff_initial = _float("BACKOFF_INITIAL_SECONDS", 1.0)
    backoff_max = _float("BACKOFF_MAX_SECONDS", 30.0)
    if backoff_max < backoff_initial:
        raise ValueError("BACKOFF_MAX_SECONDS must not be smaller than BACKOFF_INITIAL_SECONDS")

    settings = Settings(
        namespace=namespace,
        metrics_host=os.getenv("METRICS_HOST", "0.0.0.0"),
        metrics_port=_int("METRICS_PORT", 8080, max_val=65535),
        log_level=log_level,
        watch_timeout_seconds=_int("WATCH_TIMEOUT_SECONDS", 30),
        list_page_size=_int("LIST_PAGE_SIZE", 500),
        backoff_initial_seconds=backoff_initial,
        backoff_max_seconds=backoff_max,
        shutdown_grace_seconds=_int("SHUTDOWN_GRACE_SECONDS", 5),
    )
    logger.debug(f"Loaded settings: {settings}")
    return settings
