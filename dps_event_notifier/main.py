from __future__ import annotations

import logging
import signal
import threading
from typing import List

import requests

from . import config
from .channels import Channel
from .db import EventStore
from .dispatcher import Dispatcher, RetryPolicy
from .emailer import EmailChannel, SmtpSender
from .health import HealthServer
from .monitor import EventMonitor
from .notifier import WebhookChannel
from .pdf import PdfChannel, load_renderer
from .ratelimit import TokenBucket
from .scheduler import Scheduler
from .scraper import Credentials, PortalClient
from .utils import get_zone

def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

def build_channels() -> List[Channel]:
    """Enabled channels, in the order they are listed in the config."""
    logger = logging.getLogger(__name__)
    channels: List[Channel] = []

    mailer = None
    if config.EMAIL_ENABLED or config.PDF_ENABLED:
        sender = SmtpSender(
            config.EMAIL_SMTP_HOST,
            config.EMAIL_SMTP_PORT,
            config.GMAIL_EMAIL or "",
            config.GMAIL_APP_PASSWORD or "",
            use_tls=config.EMAIL_USE_TLS,
        )
        mailer = EmailChannel(
            sender,
            config.EMAIL_FROM or (config.GMAIL_EMAIL or ""),
            config.EMAIL_TO,
            subject_prefix=config.EMAIL_SUBJECT_PREFIX,
        )

    if config.EMAIL_ENABLED and mailer is not None:
        channels.append(mailer)
    else:
        logger.info("Email channel disabled.")

    if config.PDF_ENABLED and mailer is not None:
        channels.append(PdfChannel(load_renderer(config.PDF_RENDERER or ""), mailer,
                                   filename=config.PDF_FILENAME))
    else:
        logger.info("PDF channel disabled.")

    if config.MESSAGING_ENABLED and config.MESSAGING_WEBHOOK_URL:
        channels.append(WebhookChannel(config.MESSAGING_WEBHOOK_URL, config.MESSAGING_TOKEN))
    else:
        logger.info("Messaging channel disabled.")

    return channels

def close_channels(channels: List[Channel]) -> None:
    """Release resources held by channels that own any (HTTP sessions)."""
    for ch in channels:
        close = getattr(ch, "close", None)
        if callable(close):
            close()

def build_monitor(cancel: threading.Event, session: requests.Session | None = None) -> EventMonitor:
    store = EventStore(config.SQLITE_DB_PATH)
    store.init_db()

    client = PortalClient(
        config.PORTAL_BASE_URL,
        Credentials(config.DPS_USERNAME or "", config.DPS_PASSWORD or ""),
        limiter=TokenBucket(config.PORTAL_RATE_PER_SECOND, config.PORTAL_BURST),
        session=session,
        login_path=config.PORTAL_LOGIN_PATH,
        events_path=config.PORTAL_EVENTS_PATH,
        timeout=config.PORTAL_TIMEOUT_SECONDS,
        max_attempts=config.PORTAL_MAX_ATTEMPTS,
    )
    dispatcher = Dispatcher(
        store,
        RetryPolicy(
            max_attempts=config.DISPATCH_MAX_ATTEMPTS,
            base_delay=config.DISPATCH_BASE_DELAY_SECONDS,
            max_delay=config.DISPATCH_MAX_DELAY_SECONDS,
        ),
        max_workers=config.DISPATCH_MAX_WORKERS,
        cancel=cancel,
        channel_rate=config.CHANNEL_RATE_PER_SECOND,
        channel_burst=config.CHANNEL_BURST,
        channel_max_wait=config.CHANNEL_MAX_WAIT_SECONDS,
    )
    return EventMonitor(
        client,
        store,
        dispatcher,
        build_channels(),
        zone=get_zone(config.TIMEZONE),
        renotify=config.RENOTIFY_UPDATED,
    )

def main() -> None:
    """Initialise and run the monitoring loop."""
    config.validate()
    setup_logging()
    logger = logging.getLogger(__name__)

    cancel = threading.Event()
    logger.info("Initializing database at %s…", config.SQLITE_DB_PATH)
    monitor = build_monitor(cancel)
    if not monitor.channels:
        logger.warning("No notification channels enabled; events will be recorded but not sent.")

    scheduler = Scheduler(monitor.run_cycle, cancel=cancel)
    health = HealthServer(scheduler, config.HEALTH_HOST, config.PORT)
    if not health.start():
        logger.warning("Health endpoint unavailable; continuing without it")

    done = threading.Event()

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down…", signum)
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    interval = config.POLL_INTERVAL_MINUTES * 60
    logger.info(
        "Starting event monitor for %s every %s minutes (channels: %s).",
        config.PORTAL_BASE_URL,
        config.POLL_INTERVAL_MINUTES,
        ", ".join(ch.name for ch in monitor.channels) or "none",
    )
    scheduler.start(interval)

    done.wait()
    scheduler.stop(grace=config.SHUTDOWN_GRACE_SECONDS)
    health.stop()
    close_channels(monitor.channels)

if __name__ == "__main__":
    main()
