"""
tokenmeter - Error System Tests

Verifies:
- Infra vs semantic classification is correct
- Canonical {"error": {...}} shape
- HTTP status codes and error codes per error class
- Quota denials carry reset and usage context
"""

from datetime import datetime, timezone

import pytest

from tokenmeter.core.errors import (
    TokenMeterException,
    InfraError,
    SemanticError,
    ErrorType,
    ErrorDetails,
    RecordingFailedError,
    DatabaseUnavailableError,
    MissingIdentityError,
    PermissionDeniedError,
    UserNotFoundError,
    InvalidRequestError,
    QuotaExceededError,
)


# ============================================================
# Error Classification Tests
# ============================================================

class TestErrorClassification:
    """Test infra vs semantic error classification."""

    def test_recording_failed_is_infra_and_fatal(self):
        error = RecordingFailedError("u_1", 120, "gpt-4", usage_type="chat", reason="timeout")
        assert isinstance(error, InfraError)
        assert error.error.type == ErrorType.INFRA
        assert error.error.retryable is False
        assert error.status_code == 500

    def test_database_unavailable_is_retryable(self):
        error = DatabaseUnavailableError()
        assert isinstance(error, InfraError)
        assert error.error.retryable is True
        assert error.error.retry_after == 5
        assert error.status_code == 503

    def test_quota_exceeded_is_semantic_but_retryable(self):
        error = QuotaExceededError("DAILY_QUOTA_EXCEEDED", "daily", retry_after=60)
        assert isinstance(error, SemanticError)
        assert error.error.type == ErrorType.SEMANTIC
        assert error.error.retryable is True

    @pytest.mark.parametrize("error,status,code", [
        (MissingIdentityError(), 401, "missing_identity"),
        (PermissionDeniedError(), 403, "permission_denied"),
        (UserNotFoundError("u_404"), 404, "user_not_found"),
        (InvalidRequestError("bad"), 400, "invalid_request"),
        (QuotaExceededError("MONTHLY_QUOTA_EXCEEDED", "monthly"), 429, "monthly_quota_exceeded"),
        (RecordingFailedError("u_1", 1, "m"), 500, "recording_failed"),
        (DatabaseUnavailableError(), 503, "database_unavailable"),
    ])
    def test_status_and_code(self, error, status, code):
        assert isinstance(error, TokenMeterException)
        assert error.status_code == status
        assert error.error.code == code

    def test_message_is_exception_text(self):
        error = UserNotFoundError("u_404")
        assert str(error) == "User 'u_404' not found"


# ============================================================
# Error Details Tests
# ============================================================

class TestErrorDetails:
    """Test ErrorDetails serialization."""

    def test_to_dict_includes_required_fields(self):
        details = ErrorDetails(
            code="invalid_request",
            message="tokens must be positive",
            type=ErrorType.SEMANTIC,
            request_id="req_1",
        )

        body = details.to_dict()

        assert body == {
            "error": {
                "code": "invalid_request",
                "message": "tokens must be positive",
                "type": "semantic_error",
                "request_id": "req_1",
                "retryable": False,
            }
        }

    def test_to_dict_includes_optional_fields_when_set(self):
        details = ErrorDetails(
            code="daily_quota_exceeded",
            message="exhausted",
            type=ErrorType.SEMANTIC,
            param="tokens",
            retryable=True,
            retry_after=0,
            details={"scope": "daily"},
        )

        error = details.to_dict()["error"]

        assert error["param"] == "tokens"
        assert error["retry_after"] == 0
        assert error["details"] == {"scope": "daily"}

    def test_invalid_request_param(self):
        assert InvalidRequestError("bad", param="estimated_tokens").error.param == "estimated_tokens"
        assert InvalidRequestError("bad").error.param is None

    def test_recording_failed_details_allow_replay(self):
        error = RecordingFailedError(
            "u_1", 120, "gpt-4", usage_type="image", request_id="req_9", reason="boom",
        )

        body = error.error.to_dict()["error"]

        assert body["request_id"] == "req_9"
        assert body["details"] == {
            "user_id": "u_1",
            "tokens": 120,
            "model": "gpt-4",
            "usage_type": "image",
            "reason": "boom",
        }
        assert "120" in body["message"]


# ============================================================
# Quota Exceeded Tests
# ============================================================

class TestQuotaExceededError:
    """Test quota denial errors."""

    def test_code_is_lowercased_reason(self):
        error = QuotaExceededError("DAILY_QUOTA_EXCEEDED", "daily")
        assert error.error.code == "daily_quota_exceeded"
        assert error.reason == "DAILY_QUOTA_EXCEEDED"
        assert error.scope == "daily"

    def test_reset_and_usage_in_details(self):
        reset_at = datetime(2024, 3, 16, tzinfo=timezone.utc)
        usage = {"daily_used": 1000, "daily_limit": 1000}

        error = QuotaExceededError(
            "DAILY_QUOTA_EXCEEDED",
            "daily",
            reset_at=reset_at,
            retry_after=43200,
            usage=usage,
            request_id="req_q",
        )

        body = error.error.to_dict()["error"]
        assert body["retry_after"] == 43200
        assert body["request_id"] == "req_q"
        assert body["details"]["reset_at"] == "2024-03-16T00:00:00+00:00"
        assert body["details"]["usage"] == usage
        assert body["message"] == "Your daily token quota is exhausted"

    def test_minimal_details(self):
        error = QuotaExceededError("MONTHLY_QUOTA_EXCEEDED", "monthly")
        body = error.error.to_dict()["error"]
        assert body["details"] == {"scope": "monthly"}
        assert "retry_after" not in body
