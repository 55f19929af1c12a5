"""
Shared slowapi rate limiter.

Keyed by client address; counters live in RATE_LIMIT_STORAGE_URI
("memory://" by default, Redis for multi-worker deployments).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from backend.src.config.settings import get_settings


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().rate_limit_storage_uri,
)
