"""
tokenmeter - Error Definitions

Error taxonomy with infra vs semantic classification.

Semantic errors mean the caller must change something (identity, request,
or wait for a quota window to reset). Infra errors mean the engine could not
do its job; a failed usage recording is always fatal so unmetered
consumption never slips through silently.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    param: Optional[str] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.param:
            result["param"] = self.param
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class TokenMeterException(Exception):
    """Base exception for all tokenmeter errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)


# ============================================================
# Infra Errors
# ============================================================

class InfraError(TokenMeterException):
    """Base class for infrastructure errors."""
    pass


class RecordingFailedError(InfraError):
    """
    Usage could not be persisted.

    Carries everything needed to replay the missed event by hand.
    """

    def __init__(
        self,
        user_id: str,
        tokens: int,
        model_name: str,
        usage_type: str = "",
        request_id: str = "",
        reason: str = "",
    ):
        self.user_id = user_id
        self.tokens = tokens
        self.model_name = model_name
        self.usage_type = usage_type
        self.reason = reason
        super().__init__(
            ErrorDetails(
                code="recording_failed",
                message=f"Failed to record {tokens} tokens of {model_name} usage for user {user_id}",
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=False,
                details={
                    "user_id": user_id,
                    "tokens": tokens,
                    "model": model_name,
                    "usage_type": usage_type,
                    "reason": reason,
                },
            ),
            status_code=500,
        )


class DatabaseUnavailableError(InfraError):
    """Storage layer is not configured or not reachable."""

    def __init__(self, message: str = "Database not available", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="database_unavailable",
                message=message,
                type=ErrorType.INFRA,
                request_id=request_id,
                retryable=True,
                retry_after=5,
            ),
            status_code=503,
        )


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(TokenMeterException):
    """Base class for semantic errors (client must fix request)."""
    pass


class MissingIdentityError(SemanticError):
    """No authenticated caller identity was forwarded."""

    def __init__(self, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="missing_identity",
                message="Authenticated user identity required (X-User-Id header)",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=401
        )


class PermissionDeniedError(SemanticError):
    """Caller is authenticated but not allowed to perform the action."""

    def __init__(self, message: str = "Admin permission required", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="permission_denied",
                message=message,
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False
            ),
            status_code=403
        )


class UserNotFoundError(SemanticError):
    """Referenced user does not exist."""

    def __init__(self, user_id: str, request_id: str = ""):
        self.user_id = user_id
        super().__init__(
            ErrorDetails(
                code="user_not_found",
                message=f"User '{user_id}' not found",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False,
                details={"user_id": user_id}
            ),
            status_code=404
        )


class InvalidRequestError(SemanticError):
    """Request validation failed."""

    def __init__(
        self,
        message: str,
        param: str = "",
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="invalid_request",
                message=message,
                type=ErrorType.SEMANTIC,
                param=param or None,
                request_id=request_id,
                retryable=False
            ),
            status_code=400
        )


class QuotaExceededError(SemanticError):
    """
    User's daily or monthly token quota is exhausted.

    Only raised at the HTTP boundary; the admission check itself returns a
    denial instead of raising.
    """

    def __init__(
        self,
        reason: str,
        scope: str,
        reset_at: Optional[datetime] = None,
        retry_after: Optional[int] = None,
        usage: Optional[Dict[str, Any]] = None,
        request_id: str = ""
    ):
        self.reason = reason
        self.scope = scope
        details: Dict[str, Any] = {"scope": scope}
        if reset_at is not None:
            details["reset_at"] = reset_at.isoformat()
        if usage:
            details["usage"] = usage

        super().__init__(
            ErrorDetails(
                code=reason.lower(),
                message=f"Your {scope} token quota is exhausted",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=True,  # Retry once the window resets
                retry_after=retry_after,
                details=details
            ),
            status_code=429
        )
