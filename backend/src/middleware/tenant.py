"""
Tenant context dependency for multi-tenancy support.

Provides:
- TenantContext: Dataclass with the authenticated recipient and restaurant
- get_tenant_context: FastAPI dependency resolving it from the request

Authentication itself belongs to the external auth service. It issues HS256
access tokens carrying ``sub`` (user id) and ``tenant_id`` (restaurant id);
this module only verifies them with the shared JWT_SECRET_KEY.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt

from backend.src.config.settings import get_settings
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

TOKEN_ALGORITHM = "HS256"


@dataclass
class TenantContext:
    """
    Represents the authenticated caller of a request.

    Attributes:
        tenant_id: Restaurant id used to scope subscriptions and intents
        user_id: Recipient id (the token subject)
        token_id: Token identifier (``jti``), when the issuer sets one

    Usage:
        @router.post("/sync")
        async def sync(ctx: TenantContext = Depends(require_auth)):
            service.pull(recipient_id=ctx.user_id)
    """

    tenant_id: str
    user_id: str
    token_id: Optional[str] = None

    def __post_init__(self):
        """Validate required fields."""
        if not self.tenant_id or not self.user_id:
            raise ValueError("tenant_id and user_id are required")


def decode_access_token(token: str, secret: str) -> TenantContext:
    """
    Verify an access token and build the tenant context.

    Raises:
        ValueError: If the token is invalid, expired or misses a claim
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"invalid token: {e}") from e

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if not user_id or not tenant_id:
        raise ValueError("token is missing sub or tenant_id")
    return TenantContext(tenant_id=str(tenant_id), user_id=str(user_id), token_id=payload.get("jti"))


async def get_tenant_context(request: Request) -> TenantContext:
    """
    FastAPI dependency to extract tenant context from the request.

    Reads ``Authorization: Bearer <token>``; for the change stream, where
    EventSource clients cannot set headers, an ``access_token`` query
    parameter is accepted as well.

    Raises:
        HTTPException 401: If no valid token is present
        HTTPException 503: If token verification is not configured
    """
    settings = get_settings()
    if not settings.jwt_configured:
        logger.error("JWT_SECRET_KEY is not configured; rejecting authenticated request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    token = None
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:]
    elif request.url.path.endswith("/changes/stream"):
        token = request.query_params.get("access_token")

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(token, settings.jwt_secret_key)
    except ValueError as e:
        logger.warning(
            "Access token rejected",
            extra={"path": request.url.path, "reason": str(e)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
