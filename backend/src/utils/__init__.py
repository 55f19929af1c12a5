"""
Utility modules for the ServiceBell backend.

This package contains shared utilities used across the application:
- logging_config: Named loggers with JSON/console formatting
- change_feed: In-process fan-out of realtime row changes
- rate_limit: Shared slowapi limiter
"""

from backend.src.utils.change_feed import ChangeFeed

__all__ = [
    "ChangeFeed",
]
