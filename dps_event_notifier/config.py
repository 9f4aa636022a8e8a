"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from typing import List, Optional
from pathlib import Path

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str) -> list[str]:
    raw = _get_env(name, "") or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Portal ------------------------------------------------------------------

# Base URL of the portal. Should not include a trailing slash.
PORTAL_BASE_URL: str = _get_env("PORTAL_BASE_URL", "https://publicsite.dps.texas.gov")
PORTAL_LOGIN_PATH: str = _get_env("PORTAL_LOGIN_PATH", "/login")
PORTAL_EVENTS_PATH: str = _get_env("PORTAL_EVENTS_PATH", "/events")

# Portal account. Never logged.
DPS_USERNAME: Optional[str] = _get_env("DPS_USERNAME")
DPS_PASSWORD: Optional[str] = _get_env("DPS_PASSWORD")

PORTAL_TIMEOUT_SECONDS: float = _parse_float(_get_env("PORTAL_TIMEOUT_SECONDS"), 30.0)
PORTAL_MAX_ATTEMPTS: int = _parse_int(_get_env("PORTAL_MAX_ATTEMPTS"), 4)

# Token bucket shared by every portal request.
PORTAL_RATE_PER_SECOND: float = _parse_float(_get_env("PORTAL_RATE_PER_SECOND"), 0.5)
PORTAL_BURST: int = _parse_int(_get_env("PORTAL_BURST"), 2)

# Zone every event timestamp is normalized to. Naive portal times are read in it.
TIMEZONE: str = _get_env("TIMEZONE", "America/Chicago")

# ---- Scheduler ---------------------------------------------------------------

POLL_INTERVAL_MINUTES: float = _parse_float(_get_env("POLL_INTERVAL_MINUTES"), 15.0)
SHUTDOWN_GRACE_SECONDS: float = _parse_float(_get_env("SHUTDOWN_GRACE_SECONDS"), 30.0)

# ---- Store -------------------------------------------------------------------

SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "events.db")

# ---- Dispatch ----------------------------------------------------------------

DISPATCH_MAX_ATTEMPTS: int = _parse_int(_get_env("DISPATCH_MAX_ATTEMPTS"), 4)
DISPATCH_BASE_DELAY_SECONDS: float = _parse_float(_get_env("DISPATCH_BASE_DELAY_SECONDS"), 2.0)
DISPATCH_MAX_DELAY_SECONDS: float = _parse_float(_get_env("DISPATCH_MAX_DELAY_SECONDS"), 60.0)
DISPATCH_MAX_WORKERS: int = _parse_int(_get_env("DISPATCH_MAX_WORKERS"), 8)

# One bucket per channel, so a slow webhook cannot starve email.
CHANNEL_RATE_PER_SECOND: float = _parse_float(_get_env("CHANNEL_RATE_PER_SECOND"), 1.0)
CHANNEL_BURST: int = _parse_int(_get_env("CHANNEL_BURST"), 5)
CHANNEL_MAX_WAIT_SECONDS: float = _parse_float(_get_env("CHANNEL_MAX_WAIT_SECONDS"), 30.0)

# What an updated event re-notifies: "all" channels, or only "undelivered" ones.
RENOTIFY_UPDATED: str = (_get_env("RENOTIFY_UPDATED", "all") or "all").strip().lower()

# ---- Email -------------------------------------------------------------------

EMAIL_ENABLED: bool = _parse_bool(_get_env("EMAIL_ENABLED", "true"), True)
EMAIL_SMTP_HOST: str = _get_env("EMAIL_SMTP_HOST", "smtp.gmail.com")
EMAIL_SMTP_PORT: int = _parse_int(_get_env("EMAIL_SMTP_PORT"), 587)  # 587 (TLS) or 465 (SSL)
EMAIL_USE_TLS: bool = _parse_bool(_get_env("EMAIL_USE_TLS", "true"), True)
GMAIL_EMAIL: Optional[str] = _get_env("GMAIL_EMAIL")
GMAIL_APP_PASSWORD: Optional[str] = _get_env("GMAIL_APP_PASSWORD")
EMAIL_FROM: Optional[str] = _get_env("EMAIL_FROM") or GMAIL_EMAIL
EMAIL_TO: List[str] = _get_list("EMAIL_TO") or ([GMAIL_EMAIL] if GMAIL_EMAIL else [])
EMAIL_SUBJECT_PREFIX: str = _get_env("EMAIL_SUBJECT_PREFIX", "[DPS]")

# ---- PDF export --------------------------------------------------------------

PDF_ENABLED: bool = _parse_bool(_get_env("PDF_ENABLED", "false"), False)
# "package.module:callable" taking a list of event dicts and returning PDF bytes.
PDF_RENDERER: Optional[str] = _get_env("PDF_RENDERER")
PDF_FILENAME: str = _get_env("PDF_FILENAME", "dps-events.pdf")

# ---- Messaging webhook -------------------------------------------------------

MESSAGING_ENABLED: bool = _parse_bool(_get_env("MESSAGING_ENABLED", "false"), False)
MESSAGING_WEBHOOK_URL: Optional[str] = _get_env("MESSAGING_WEBHOOK_URL")
MESSAGING_TOKEN: Optional[str] = _get_env("MESSAGING_TOKEN")

# ---- Process -----------------------------------------------------------------

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

HEALTH_HOST: str = _get_env("HEALTH_HOST", "0.0.0.0")
PORT: int = _parse_int(_get_env("PORT"), 8080)

# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    missing: list[str] = []
    if not DPS_USERNAME:
        missing.append("DPS_USERNAME")
    if not DPS_PASSWORD:
        missing.append("DPS_PASSWORD")
    if EMAIL_ENABLED or PDF_ENABLED:
        for name, value in (
            ("GMAIL_EMAIL", GMAIL_EMAIL),
            ("GMAIL_APP_PASSWORD", GMAIL_APP_PASSWORD),
            ("EMAIL_TO", EMAIL_TO),
        ):
            if not value:
                missing.append(name)
    if PDF_ENABLED and not PDF_RENDERER:
        missing.append("PDF_RENDERER")
    if MESSAGING_ENABLED and not MESSAGING_WEBHOOK_URL:
        missing.append("MESSAGING_WEBHOOK_URL")
    if RENOTIFY_UPDATED not in ("all", "undelivered"):
        raise RuntimeError("RENOTIFY_UPDATED must be 'all' or 'undelivered'.")
    if missing:
        # dict.fromkeys keeps order and drops repeats
        names = ", ".join(dict.fromkeys(missing))
        raise RuntimeError(f"Missing required settings: {names}. See .env.example for details.")


__all__ = [
    # Portal
    "PORTAL_BASE_URL", "PORTAL_LOGIN_PATH", "PORTAL_EVENTS_PATH",
    "DPS_USERNAME", "DPS_PASSWORD",
    "PORTAL_TIMEOUT_SECONDS", "PORTAL_MAX_ATTEMPTS",
    "PORTAL_RATE_PER_SECOND", "PORTAL_BURST",
    "TIMEZONE",
    # Scheduler & store
    "POLL_INTERVAL_MINUTES", "SHUTDOWN_GRACE_SECONDS", "SQLITE_DB_PATH",
    # Dispatch
    "DISPATCH_MAX_ATTEMPTS", "DISPATCH_BASE_DELAY_SECONDS", "DISPATCH_MAX_DELAY_SECONDS",
    "DISPATCH_MAX_WORKERS", "CHANNEL_RATE_PER_SECOND", "CHANNEL_BURST",
    "CHANNEL_MAX_WAIT_SECONDS", "RENOTIFY_UPDATED",
    # Email
    "EMAIL_ENABLED", "EMAIL_SMTP_HOST", "EMAIL_SMTP_PORT", "EMAIL_USE_TLS",
    "GMAIL_EMAIL", "GMAIL_APP_PASSWORD", "EMAIL_FROM", "EMAIL_TO", "EMAIL_SUBJECT_PREFIX",
    # PDF
    "PDF_ENABLED", "PDF_RENDERER", "PDF_FILENAME",
    # Messaging
    "MESSAGING_ENABLED", "MESSAGING_WEBHOOK_URL", "MESSAGING_TOKEN",
    # Process
    "LOG_LEVEL", "HEALTH_HOST", "PORT",
    # Helpers
    "validate",
]
