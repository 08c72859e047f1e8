"""
Custom exception classes for the application.

Protocol errors end the exchange request with a two-line failure body.
Reconciliation errors are collected per entity and never abort a batch.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "MALFORMED_DOCUMENT")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# PROTOCOL ERRORS
# ===================

class ExchangeError(AppError):
    """Error reported to the ERP as a failure response (400)."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=details
        )


class AuthenticationFailedError(ExchangeError):
    """Credentials missing or wrong (401)."""

    def __init__(self):
        super().__init__(
            code="AUTHENTICATION_FAILED",
            message="Authentication required",
            status_code=401
        )


class ExchangeDisabledError(ExchangeError):
    """Exchange switched off in settings."""

    def __init__(self):
        super().__init__(
            code="EXCHANGE_DISABLED",
            message="Exchange is disabled",
            status_code=503
        )


class UnknownExchangeTypeError(ExchangeError):
    """The type query parameter is not catalog or sale."""

    def __init__(self, exchange_type: str):
        super().__init__(
            code="UNKNOWN_EXCHANGE_TYPE",
            message="Unknown exchange type",
            details={"type": exchange_type, "valid": ["catalog", "sale"]}
        )


class UnknownModeError(ExchangeError):
    """The mode query parameter is not valid for the exchange type."""

    def __init__(self, exchange_type: str, mode: str):
        super().__init__(
            code="UNKNOWN_MODE",
            message=f"Unknown {exchange_type} mode",
            details={"type": exchange_type, "mode": mode}
        )


class SessionExpiredError(ExchangeError):
    """Session token unknown or past its TTL."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__(
            code="SESSION_EXPIRED",
            message="Session expired, authenticate again",
            status_code=401,
            details={"session_id": session_id}
        )


class InvalidExchangeTransitionError(ExchangeError):
    """Exchange step requested out of order."""

    def __init__(self, current_state: str, new_state: str):
        super().__init__(
            code="INVALID_EXCHANGE_TRANSITION",
            message=f"Cannot move exchange from {current_state} to {new_state}",
            details={
                "current_state": current_state,
                "new_state": new_state,
            }
        )


class MissingFilenameError(ExchangeError):
    """File request without a filename."""

    def __init__(self):
        super().__init__(
            code="FILENAME_REQUIRED",
            message="Filename is required"
        )


class InvalidFilenameError(ExchangeError):
    """Filename escapes the exchange directory."""

    def __init__(self, filename: str):
        super().__init__(
            code="INVALID_FILENAME",
            message=f"Invalid filename: {filename}",
            details={"filename": filename}
        )


class EmptyPayloadError(ExchangeError):
    """File request without a body."""

    def __init__(self, filename: Optional[str] = None):
        super().__init__(
            code="EMPTY_PAYLOAD",
            message="No data received",
            details={"filename": filename}
        )


class ExchangeFileNotFoundError(ExchangeError):
    """Nothing to import."""

    def __init__(self, filename: Optional[str] = None):
        super().__init__(
            code="EXCHANGE_FILE_NOT_FOUND",
            message=f"File not found: {filename}" if filename else "No files to import",
            status_code=404,
            details={"filename": filename}
        )


# ===================
# DOCUMENT ERRORS
# ===================

class MalformedDocumentError(ValidationError):
    """Exchange document is not well-formed XML or cannot be decoded."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="MALFORMED_DOCUMENT",
            message=message,
            details=details
        )


# ===================
# RECONCILIATION ERRORS
# ===================

class ParentNotFoundError(NotFoundError):
    """Variation references a product that was never mapped."""

    def __init__(self, parent_guid: str):
        super().__init__(
            resource="Parent product",
            identifier=parent_guid,
            code="PARENT_NOT_FOUND"
        )


class ParentNotVariableError(ValidationError):
    """Variation parent exists but is a simple product."""

    def __init__(self, parent_guid: str, product_type: Optional[str] = None):
        super().__init__(
            code="PARENT_NOT_VARIABLE",
            message="Parent is not a variable product",
            details={"parent_guid": parent_guid, "product_type": product_type}
        )


class EntitySaveError(DatabaseError):
    """Store returned no local ID for an upsert."""

    def __init__(self, entity_type: str, guid: str):
        super().__init__(
            operation="upsert",
            message=f"Failed to save {entity_type}",
            details={"entity_type": entity_type, "guid": guid}
        )
