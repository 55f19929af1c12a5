"""
Middleware components for the ServiceBell backend.

This module provides:
- TenantContext: Dataclass representing the authenticated recipient and restaurant
- get_tenant_context: FastAPI dependency verifying the caller's access token
- require_auth: FastAPI dependency for requiring authentication
- require_cron_secret: FastAPI dependency guarding maintenance endpoints
"""

from backend.src.middleware.tenant import TenantContext, get_tenant_context
from backend.src.middleware.auth import require_auth, require_cron_secret

__all__ = [
    "TenantContext",
    "get_tenant_context",
    "require_auth",
    "require_cron_secret",
]
