"""
Centralized error taxonomy and user-friendly error messages.

Every vector-service failure is an AppError carrying:
  - code:        stable machine-readable identifier (e.g. SEARCH_STORE_ERROR)
  - retryable:   whether a bounded retry with backoff may succeed
  - status_code: HTTP status used when the error reaches the API surface
"""
import logging
from typing import Any

from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error."""
    code = "APP_ERROR"
    retryable = False

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.message,
            "errorCode": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    """Validation error."""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


# -------------------- Embedding --------------------

class EmbeddingError(AppError):
    code = "EMBEDDING_ERROR"

    def __init__(self, message: str = "Embedding generation failed", status_code: int = 503, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class InvalidEmbeddingInput(EmbeddingError):
    code = "EMBEDDING_INVALID_INPUT"

    def __init__(self, message: str = "Embedding input text is empty or invalid", details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


class EmbeddingProviderUnavailable(EmbeddingError):
    code = "EMBEDDING_PROVIDER_UNAVAILABLE"
    retryable = True


class EmbeddingTokenLimitExceeded(EmbeddingError):
    code = "EMBEDDING_TOKEN_LIMIT"
    retryable = True


class EmbeddingProviderAPIError(EmbeddingError):
    code = "EMBEDDING_API_ERROR"

    def __init__(self, message: str, *, http_status: int | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.http_status = http_status
        # Rate limits and server-side failures are transient; 4xx and malformed bodies are not.
        self.retryable = http_status is not None and (http_status == 429 or 500 <= http_status <= 599)


# -------------------- Search --------------------

class SearchError(AppError):
    code = "SEARCH_ERROR"

    def __init__(self, message: str = "Search failed", status_code: int = 503, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class EmptyQuery(SearchError):
    code = "SEARCH_EMPTY_QUERY"

    def __init__(self, message: str = "Search query cannot be empty"):
        super().__init__(message, status_code=400)


class IndexNotReady(SearchError):
    code = "SEARCH_INDEX_NOT_READY"
    retryable = True


class SearchStoreError(SearchError):
    code = "SEARCH_STORE_ERROR"
    retryable = True


# -------------------- Indexing --------------------

class IndexingError(AppError):
    code = "INDEX_ERROR"

    def __init__(self, message: str = "Indexing failed", status_code: int = 500, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class InvalidEntityId(IndexingError):
    code = "INDEX_INVALID_ENTITY_ID"

    def __init__(self, entity_id: Any):
        super().__init__(f"Entity id must be a positive integer: {entity_id}", status_code=400)


class EntityNotFound(IndexingError):
    code = "INDEX_ENTITY_NOT_FOUND"

    def __init__(self, entity_id: int):
        super().__init__(f"Entity {entity_id} not found", status_code=404, details={"entityId": entity_id})
        self.entity_id = entity_id


class DimensionMismatch(IndexingError):
    code = "INDEX_DIMENSION_MISMATCH"

    def __init__(self, *, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            status_code=422,
            details={"expected": expected, "actual": actual},
        )


class IndexStorageError(IndexingError):
    code = "INDEX_STORAGE_ERROR"
    retryable = True

    def __init__(self, message: str = "Index storage failed"):
        super().__init__(message, status_code=503)


# -------------------- Cache (always soft) --------------------

class CacheError(AppError):
    code = "CACHE_ERROR"


class CacheSerializationError(CacheError):
    code = "CACHE_SERIALIZATION_ERROR"


class CacheConnectionError(CacheError):
    code = "CACHE_CONNECTION_ERROR"
    retryable = True


# -------------------- System --------------------

class SystemFailure(AppError):
    code = "SYSTEM_ERROR"


class OperationTimeout(SystemFailure):
    code = "SYSTEM_TIMEOUT"
    retryable = True

    def __init__(self, message: str = "Operation timed out"):
        super().__init__(message, status_code=503)


class UnexpectedError(SystemFailure):
    code = "SYSTEM_UNEXPECTED_ERROR"

    def __init__(self, message: str = "Unexpected error"):
        super().__init__(message, status_code=500)


# User-friendly error messages
ERROR_MESSAGES = {
    # Search
    "search_unavailable": "Search is temporarily unavailable. Please try again in a few moments.",
    "empty_query": "Please enter something to search for.",
    "query_too_long": "Search query is too long.",

    # Indexing
    "entity_not_found": "Member not found. It may have been removed.",
    "invalid_entity_id": "Member id must be a positive integer.",
    "index_failed": "Indexing failed. Please retry later.",
    "dimension_mismatch": "Embedding has an unexpected size and was rejected.",

    # Events
    "invalid_event": "Event payload is invalid.",

    # General
    "not_found": "The requested resource was not found.",
    "server_error": "Something went wrong on our end. Please try again later.",
    "database_error": "Database connection issue. Please try again later.",
    "validation_error": "Please check your input and try again.",
}


def get_error_message(error_key: str, default: str | None = None) -> str:
    """Get a user-friendly error message."""
    return ERROR_MESSAGES.get(error_key, default or ERROR_MESSAGES["server_error"])


def public_error_message(error: AppError, operation: str = "search") -> str:
    """
    Message safe to show to API callers. Provider and storage details stay in the logs.
    """
    if isinstance(error, EmptyQuery):
        return get_error_message("empty_query")
    if isinstance(error, EntityNotFound):
        return get_error_message("entity_not_found")
    if isinstance(error, InvalidEntityId):
        return get_error_message("invalid_entity_id")
    if isinstance(error, DimensionMismatch):
        return get_error_message("dimension_mismatch")
    if operation == "index":
        return get_error_message("index_failed")
    if isinstance(error, (EmbeddingError, SearchError, SystemFailure)):
        return get_error_message("search_unavailable")
    return error.message or get_error_message("server_error")


def create_error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None
) -> JSONResponse:
    """Create a standardized error response."""
    content = {
        "success": False,
        "error": message,
    }

    if details:
        content["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content
    )
