"""
Validation utilities for search and indexing input.
"""
from typing import Any

from ..config import SEARCH_MAX_QUERY_CHARS
from .error_handlers import EmptyQuery, InvalidEntityId, ValidationError, get_error_message


def validate_entity_id(value: Any) -> int:
    """Entity ids are positive integers. Numeric strings are accepted."""
    if value is None or isinstance(value, bool):
        raise InvalidEntityId(value)

    if not isinstance(value, int):
        try:
            value = int(str(value).strip())
        except (ValueError, TypeError):
            raise InvalidEntityId(value) from None

    if value <= 0:
        raise InvalidEntityId(value)

    return value


def validate_query_text(value: Any, max_length: int = SEARCH_MAX_QUERY_CHARS) -> str:
    """Trimmed query text, 1..max_length characters."""
    if value is None:
        raise EmptyQuery()

    if not isinstance(value, str):
        raise ValidationError("query must be a string")

    value = value.strip()

    if not value:
        raise EmptyQuery()

    if len(value) > max_length:
        raise ValidationError(
            get_error_message("query_too_long"),
            details={"maxLength": max_length, "length": len(value)},
        )

    return value
