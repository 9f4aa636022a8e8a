"""
DPS event monitoring service package.

This package contains modules for fetching event listings from the DPS
portal, persisting seen events, notifying by email, PDF export and chat
webhook, and coordinating the polling loop.  See .env.example for configuration.
"""

__all__ = [
    "channels",
    "config",
    "db",
    "dispatcher",
    "emailer",
    "errors",
    "health",
    "main",
    "monitor",
    "normalizer",
    "notifier",
    "pdf",
    "ratelimit",
    "scheduler",
    "scraper",
    "utils",
]
