"""
Utility functions for the campaign execution engine.

Includes:
- UTC datetime helpers
- Pagination helpers
- JSON-safe serialization
"""

from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current UTC time as a **naive** datetime.

    All timestamp columns are ``TIMESTAMP WITHOUT TIME ZONE``, so every
    comparison against stored values must also be naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page


def safe_serialize(obj: Any, depth: int = 0) -> Any:
    """Recursively ensure all values are JSON-serializable."""
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [safe_serialize(v, depth + 1) for v in obj]
    if hasattr(obj, "value"):
        return obj.value
    return str(obj)
