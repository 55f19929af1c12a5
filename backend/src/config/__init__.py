"""
Configuration module for the ServiceBell backend.

Provides centralized, environment-driven settings for:
- Web Push (VAPID) credentials
- Outbox retry and dispatch tuning
- Device sync and maintenance windows
"""

from backend.src.config.settings import AppSettings, get_settings

__all__ = [
    "AppSettings",
    "get_settings",
]
