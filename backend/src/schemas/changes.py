"""
Pydantic schemas for the realtime change stream.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class ChangePublishRequest(BaseModel):
    """
    A row change reported by a domain service.

    ``new`` is the row after the change (absent for DELETE); ``old`` the
    row before it (absent for INSERT).
    """

    model_config = {
        "json_schema_extra": {
            "example": {
                "table": "orders",
                "type": "UPDATE",
                "new": {"id": 42, "restaurant_id": "rest_1", "status": "ready"},
                "old": {"id": 42, "restaurant_id": "rest_1", "status": "preparing"},
            }
        }
    }

    table: str = Field(..., min_length=1, max_length=64)
    type: Literal["INSERT", "UPDATE", "DELETE"]
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None


class ChangePublishResponse(BaseModel):
    subscribers: int = Field(..., description="Streams the change was queued for")
