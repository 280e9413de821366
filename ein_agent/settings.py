from __future__ import annotations

"""
settings.py

Environment-driven configuration and logging setup shared by every module.

Logging policy:
- INFO: one line per screen / capture / gateway call
- DEBUG: strategy-level detail (enable via EIN_LOG_LEVEL=DEBUG)
- WARNING: fallbacks taken, best-effort calls that failed
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


# -----------------------------------------------------------------------------
# Env helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip()


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def _parse_log_level(s: str, default: int = logging.INFO) -> int:
    if not s:
        return default
    s = s.strip().upper()
    return {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
    }.get(s, default)


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    if level is None:
        level = _parse_log_level(_env_str("EIN_LOG_LEVEL", "INFO"), default=logging.INFO)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    ch = logging.StreamHandler()
    ch.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    return logger


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
DEFAULT_FORM_URL = "https://sa.www4.irs.gov/modiein/individual/index.jsp"


@dataclass
class Settings:
    form_url: str = DEFAULT_FORM_URL

    # browser
    headless: bool = True
    browser_channel: Optional[str] = None
    stealth_mode: bool = True
    viewport: Tuple[int, int] = (1280, 900)
    default_timeout_ms: int = 15_000
    page_load_timeout_ms: int = 30_000

    # resilience
    settle_delay_s: float = 1.0
    interaction_attempts: int = 3
    backoff_base_s: float = 0.25
    backoff_max_s: float = 1.5
    optional_control_timeout_ms: int = 5_000

    # capture
    download_timeout_s: float = 30.0
    download_poll_s: float = 0.5
    capture_all_strategies: bool = False
    capture_review_page: bool = True

    # local paths
    staging_root: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "ein_agent_staging"))
    results_dir: str = "ein_results"
    recovery_log_path: str = "logs/recovery.jsonl"

    # gateways
    storage_backend: str = "local"
    local_artifact_dir: str = "artifacts"
    azure_connection_string: str = ""
    azure_container: str = ""
    notify_url: str = ""
    notify_token: str = ""
    notify_timeout_s: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            form_url=_env_str("EIN_FORM_URL", d.form_url),
            headless=_env_bool("BROWSER_HEADLESS", d.headless),
            browser_channel=(_env_str("BROWSER_CHANNEL", "") or None),
            stealth_mode=_env_bool("BROWSER_STEALTH_MODE", d.stealth_mode),
            viewport=(
                _env_int("BROWSER_VIEWPORT_WIDTH", d.viewport[0]),
                _env_int("BROWSER_VIEWPORT_HEIGHT", d.viewport[1]),
            ),
            default_timeout_ms=_env_int("BROWSER_DEFAULT_TIMEOUT_MS", d.default_timeout_ms),
            page_load_timeout_ms=_env_int("BROWSER_PAGE_LOAD_TIMEOUT_MS", d.page_load_timeout_ms),
            settle_delay_s=_env_float("EIN_SETTLE_DELAY_S", d.settle_delay_s),
            interaction_attempts=max(1, _env_int("EIN_INTERACTION_ATTEMPTS", d.interaction_attempts)),
            backoff_base_s=_env_float("EIN_BACKOFF_BASE_S", d.backoff_base_s),
            backoff_max_s=_env_float("EIN_BACKOFF_MAX_S", d.backoff_max_s),
            optional_control_timeout_ms=_env_int("EIN_OPTIONAL_CONTROL_TIMEOUT_MS", d.optional_control_timeout_ms),
            download_timeout_s=_env_float("EIN_DOWNLOAD_TIMEOUT_S", d.download_timeout_s),
            download_poll_s=_env_float("EIN_DOWNLOAD_POLL_S", d.download_poll_s),
            capture_all_strategies=_env_bool("EIN_CAPTURE_ALL_STRATEGIES", d.capture_all_strategies),
            capture_review_page=_env_bool("EIN_CAPTURE_REVIEW_PAGE", d.capture_review_page),
            staging_root=_env_str("EIN_STAGING_ROOT", d.staging_root),
            results_dir=_env_str("EIN_RESULTS_DIR", d.results_dir),
            recovery_log_path=_env_str("EIN_RECOVERY_LOG", d.recovery_log_path),
            storage_backend=_env_str("EIN_STORAGE_BACKEND", d.storage_backend).lower(),
            local_artifact_dir=_env_str("EIN_LOCAL_ARTIFACT_DIR", d.local_artifact_dir),
            azure_connection_string=_env_str("AZURE_STORAGE_CONNECTION_STRING", ""),
            azure_container=_env_str("AZURE_CONTAINER_NAME", ""),
            notify_url=_env_str("EIN_NOTIFY_URL", ""),
            notify_token=_env_str("EIN_NOTIFY_TOKEN", ""),
            notify_timeout_s=_env_float("EIN_NOTIFY_TIMEOUT_S", d.notify_timeout_s),
        )
