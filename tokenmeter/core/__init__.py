"""
tokenmeter Core Module

Contains the error taxonomy and runtime settings shared by every layer.
"""

from .errors import (
    # Error types
    ErrorType,
    ErrorDetails,
    TokenMeterException,

    # Infra errors
    InfraError,
    RecordingFailedError,
    DatabaseUnavailableError,

    # Semantic errors
    SemanticError,
    InvalidRequestError,
    MissingIdentityError,
    PermissionDeniedError,
    UserNotFoundError,
    QuotaExceededError,
)

from .config import (
    QuotaSettings,
    get_settings,
    set_settings,
)

__all__ = [
    # Errors
    "ErrorType",
    "ErrorDetails",
    "TokenMeterException",
    "InfraError",
    "RecordingFailedError",
    "DatabaseUnavailableError",
    "SemanticError",
    "InvalidRequestError",
    "MissingIdentityError",
    "PermissionDeniedError",
    "UserNotFoundError",
    "QuotaExceededError",

    # Settings
    "QuotaSettings",
    "get_settings",
    "set_settings",
]
