"""
Realtime change stream endpoints.

Devices keep a long-lived ``GET /api/changes/stream`` request open and
receive their restaurant's row changes as Server-Sent Events:

    event: ready
    data: {"channel": "kitchen", "tenant_id": "rest_1"}

    data: {"table": "orders", "type": "INSERT", "new": {...}, "sequence": 7, ...}

    : keepalive

Domain services report changes through ``POST /api/changes/publish``.
"""

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Optional, Set

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from backend.src.middleware.auth import TenantContext, require_auth
from backend.src.schemas.changes import ChangePublishRequest, ChangePublishResponse
from backend.src.utils.change_feed import ChangeFeed
from backend.src.utils.logging_config import get_logger


logger = get_logger("changes")

router = APIRouter(
    prefix="/changes",
    tags=["Changes"],
)

KEEPALIVE_SECONDS = 15.0


def get_change_feed(request: Request) -> ChangeFeed:
    """Get the change feed from application state."""
    return request.app.state.change_feed


def format_sse(data: dict, event: Optional[str] = None) -> str:
    """Encode one Server-Sent Event frame."""
    frame = f"event: {event}\n" if event else ""
    return frame + f"data: {json.dumps(data, default=str)}\n\n"


async def stream_changes(
    feed: ChangeFeed,
    tenant_id: str,
    channel: str,
    tables: Optional[Set[str]] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one subscriber until the client goes away.

    Args:
        feed: Change feed to subscribe to
        tenant_id: Restaurant whose changes are streamed
        channel: Name echoed back in the ready frame
        tables: Only relay changes of these tables (all when None)
        is_disconnected: Polled between events to end the stream
        keepalive: Seconds of silence before a keepalive comment is sent
    """
    loop = asyncio.get_running_loop()
    queue = await feed.subscribe(tenant_id)
    try:
        yield format_sse({"channel": channel, "tenant_id": tenant_id}, event="ready")
        last_frame_at = loop.time()
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            # Filtered-out changes do not count as traffic for the keepalive window
            remaining = keepalive - (loop.time() - last_frame_at)
            if remaining <= 0:
                yield ": keepalive\n\n"
                last_frame_at = loop.time()
                continue
            try:
                change = await asyncio.wait_for(queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            if tables and change.get("table") not in tables:
                continue
            yield format_sse(change)
            last_frame_at = loop.time()
    finally:
        feed.unsubscribe(tenant_id, queue)
        logger.info(
            "Change stream closed",
            extra={"tenant_id": tenant_id, "channel": channel},
        )


@router.get(
    "/stream",
    summary="Stream row changes",
    response_class=StreamingResponse,
)
async def change_stream(
    request: Request,
    channel: str = Query("default", max_length=100),
    tables: Optional[str] = Query(None, description="Comma-separated table names"),
    ctx: TenantContext = Depends(require_auth),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """
    Open a Server-Sent Events stream of the caller's restaurant changes.

    EventSource clients that cannot set headers may pass the access token
    as the ``access_token`` query parameter.
    """
    table_set = {t.strip() for t in tables.split(",") if t.strip()} if tables else None
    logger.info(
        "Change stream opened",
        extra={"tenant_id": ctx.tenant_id, "channel": channel, "tables": sorted(table_set or [])},
    )
    return StreamingResponse(
        stream_changes(
            feed,
            ctx.tenant_id,
            channel,
            tables=table_set,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/publish",
    response_model=ChangePublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish a row change",
)
async def publish_change(
    body: ChangePublishRequest,
    ctx: TenantContext = Depends(require_auth),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Relay a row change to every open stream of the caller's restaurant."""
    delivered = await feed.publish(ctx.tenant_id, body.model_dump())
    return ChangePublishResponse(subscribers=delivered)
