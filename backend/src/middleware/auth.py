"""
Authentication dependencies for API routes.

Provides:
- require_auth: Requires an authenticated recipient (see tenant.py)
- require_cron_secret: Guards maintenance endpoints with the shared cron secret

These are thin wrappers for clearer API semantics.
"""

import hmac

from fastapi import Depends, HTTPException, Request, status

from backend.src.config.settings import get_settings
from backend.src.middleware.tenant import TenantContext, get_tenant_context
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")


async def require_auth(
    ctx: TenantContext = Depends(get_tenant_context)
) -> TenantContext:
    """
    FastAPI dependency that requires authentication.

    Returns:
        TenantContext with the recipient and tenant of the caller

    Raises:
        HTTPException 401: If not authenticated
    """
    # get_tenant_context already raises 401 if not authenticated
    return ctx


async def require_cron_secret(request: Request) -> None:
    """
    FastAPI dependency for scheduler-invoked endpoints.

    Expects ``Authorization: Bearer <SERVICEBELL_CRON_SECRET>``.

    Raises:
        HTTPException 503: If no cron secret is configured
        HTTPException 401: If the header is missing or does not match
    """
    settings = get_settings()
    if not settings.cron_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret is not configured",
        )

    auth_header = request.headers.get("Authorization", "")
    supplied = auth_header[7:] if auth_header.startswith("Bearer ") else ""
    if not supplied or not hmac.compare_digest(supplied.encode(), settings.cron_secret.encode()):
        logger.warning("Cron request rejected", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


__all__ = [
    "require_auth",
    "require_cron_secret",
    "TenantContext",
]
