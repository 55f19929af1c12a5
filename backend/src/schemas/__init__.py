"""
Pydantic schemas for API request/response validation.

Schemas live per API area; import them from their module
(``backend.src.schemas.notifications``, ``backend.src.schemas.changes``).
"""
