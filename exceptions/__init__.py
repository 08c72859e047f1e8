"""
Custom exceptions module.

Protocol errors render as the two-line failure response.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    DatabaseError,

    # Protocol
    ExchangeError,
    AuthenticationFailedError,
    ExchangeDisabledError,
    UnknownExchangeTypeError,
    UnknownModeError,
    SessionExpiredError,
    InvalidExchangeTransitionError,
    MissingFilenameError,
    InvalidFilenameError,
    EmptyPayloadError,
    ExchangeFileNotFoundError,

    # Documents
    MalformedDocumentError,

    # Reconciliation
    ParentNotFoundError,
    ParentNotVariableError,
    EntitySaveError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "DatabaseError",

    # Protocol
    "ExchangeError",
    "AuthenticationFailedError",
    "ExchangeDisabledError",
    "UnknownExchangeTypeError",
    "UnknownModeError",
    "SessionExpiredError",
    "InvalidExchangeTransitionError",
    "MissingFilenameError",
    "InvalidFilenameError",
    "EmptyPayloadError",
    "ExchangeFileNotFoundError",

    # Documents
    "MalformedDocumentError",

    # Reconciliation
    "ParentNotFoundError",
    "ParentNotVariableError",
    "EntitySaveError",
]
