"""
tokenmeter - API System Tests

End-to-end HTTP tests through the FastAPI app with an in-memory engine:
- Health, readiness and metrics endpoints
- Identity headers and canonical error responses
- Usage views, metering calls and admin endpoints
"""

from unittest.mock import AsyncMock

import pytest

from tokenmeter.api.models import CheckQuotaRequest, RecordUsageRequest, UpdateQuotaRequest
from tokenmeter.db.models import UsageType


FREE = {"X-User-Id": "u_free", "X-User-Role": "free"}
PRO = {"X-User-Id": "u_pro", "X-User-Role": "pro"}
ADMIN = {"X-User-Id": "u_admin", "X-User-Role": "admin"}


def _record(client, headers, tokens, model="gpt-4", **extra):
    response = client.post(
        "/v1/metering/record",
        json={"tokens": tokens, "model": model, **extra},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================
# Request models
# ============================================================

class TestRequestModels:
    """Tests for pydantic request models."""

    def test_record_defaults_to_chat(self):
        request = RecordUsageRequest(tokens=5, model="gpt-4")
        assert request.usage_type == UsageType.CHAT
        assert request.request_id is None

    @pytest.mark.parametrize("payload", [
        {"tokens": 0, "model": "gpt-4"},
        {"tokens": 5, "model": "  "},
        {"tokens": 5, "model": "gpt-4", "usage_type": "audio"},
    ])
    def test_record_rejects_invalid(self, payload):
        with pytest.raises(ValueError):
            RecordUsageRequest(**payload)

    def test_check_accepts_empty_body(self):
        request = CheckQuotaRequest()
        assert request.estimated_tokens is None
        assert request.text is None

    def test_update_quota_requires_a_limit(self):
        with pytest.raises(ValueError):
            UpdateQuotaRequest()
        assert UpdateQuotaRequest(monthly_limit=-1).monthly_limit == -1
        with pytest.raises(ValueError):
            UpdateQuotaRequest(daily_limit=-2)


# ============================================================
# Service endpoints
# ============================================================

class TestServiceEndpoints:
    """Tests for /health, /ready and /metrics."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["mode"] == "test"

    def test_ready(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    def test_not_ready_when_store_unreachable(self, client, store, monkeypatch):
        monkeypatch.setattr(store, "ping", AsyncMock(return_value=False))
        response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposition(self, client):
        client.get("/v1/usage", headers=FREE)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "tokenmeter_requests_total" in response.text


# ============================================================
# Identity and errors
# ============================================================

class TestIdentity:
    """Tests for identity headers and canonical errors."""

    def test_missing_identity_is_401(self, client):
        response = client.get("/v1/usage", headers={"X-Request-Id": "req_custom"})
        assert response.status_code == 401
        body = response.json()
        assert body["error"]["code"] == "missing_identity"
        assert body["error"]["type"] == "semantic_error"
        assert body["error"]["request_id"] == "req_custom"
        assert response.headers["X-Error-Code"] == "missing_identity"
        assert response.headers["X-Request-Id"] == "req_custom"

    def test_success_carries_correlation_headers(self, client):
        response = client.get("/v1/usage", headers={**FREE, "X-Request-Id": "req_abc"})
        assert response.status_code == 200
        assert response.headers["X-Request-Id"] == "req_abc"
        assert response.headers["X-Trace-Id"]

    def test_first_seen_user_gets_free_quota(self, client):
        response = client.get("/v1/usage", headers={"X-User-Id": "newcomer"})
        assert response.status_code == 200
        current = response.json()["current"]
        assert current["daily_limit"] == 1000
        assert current["monthly_limit"] == 30000

    def test_unknown_role_header_reads_as_free(self, client):
        response = client.get("/v1/usage", headers={"X-User-Id": "odd", "X-User-Role": "wizard"})
        assert response.json()["current"]["is_unlimited"] is False


# ============================================================
# Usage endpoints
# ============================================================

class TestUsageEndpoints:
    """Tests for /v1/usage."""

    def test_current_usage_and_summary(self, client):
        _record(client, FREE, 400)
        body = client.get("/v1/usage", headers=FREE).json()

        assert body["user_id"] == "u_free"
        assert body["current"]["daily_used"] == 400
        assert body["current"]["monthly_used"] == 400
        assert body["current"]["daily_reset_at"] == "2024-03-16T00:00:00+00:00"
        assert body["summary"]["total_tokens"] == 400
        assert body["summary"]["window_days"] == 7

    def test_pro_user_is_unlimited(self, client):
        body = client.get("/v1/usage", headers=PRO).json()
        assert body["current"]["is_unlimited"] is True
        assert body["current"]["daily_limit"] == -1

    def test_history_paging(self, client):
        _record(client, FREE, 100, request_id="first")
        _record(client, FREE, 200, request_id="second")

        body = client.get("/v1/usage/history?limit=1", headers=FREE).json()
        assert body["limit"] == 1
        assert body["offset"] == 0
        assert len(body["history"]) == 1
        # Same timestamp under the fixed clock: the later id wins
        assert body["history"][0]["request_id"] == "second"

    def test_history_invalid_limit(self, client):
        response = client.get("/v1/usage/history?limit=0", headers=FREE)
        assert response.status_code == 400
        assert response.json()["error"]["param"] == "limit"

    def test_summary_window(self, client):
        _record(client, FREE, 150, model="claude-3-sonnet", usage_type="search")
        body = client.get("/v1/usage/summary?days=30", headers=FREE).json()
        assert body["window_days"] == 30
        assert body["model_totals"] == {"claude-3-sonnet": 150}
        assert body["type_totals"] == {"search": 150}

    def test_summary_window_too_large(self, client):
        response = client.get("/v1/usage/summary?days=1000000", headers=FREE)
        assert response.status_code == 400
        assert response.json()["error"]["param"] == "days"


# ============================================================
# Metering endpoints
# ============================================================

class TestMeteringEndpoints:
    """Tests for /v1/metering."""

    def test_check_allowed(self, client):
        response = client.post("/v1/metering/check", json={"estimated_tokens": 10}, headers=FREE)
        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["estimated_tokens"] == 10
        assert body["usage"]["daily_limit"] == 1000

    def test_check_estimates_from_text(self, client):
        response = client.post("/v1/metering/check", json={"text": "hello"}, headers=FREE)
        assert response.json()["estimated_tokens"] == 2

    def test_check_without_estimate(self, client):
        response = client.post("/v1/metering/check", json={}, headers=FREE)
        assert response.json()["estimated_tokens"] == 0

    def test_check_denied_is_429_with_scope(self, client):
        _record(client, FREE, 1000)
        response = client.post("/v1/metering/check", json={"estimated_tokens": 1}, headers=FREE)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "daily_quota_exceeded"
        assert error["retryable"] is True
        assert error["details"]["scope"] == "daily"
        assert error["details"]["reset_at"] == "2024-03-16T00:00:00+00:00"
        assert error["details"]["usage"]["daily_used"] == 1000
        assert response.headers["Retry-After"] == "43200"
        assert response.headers["X-Error-Type"] == "semantic_error"

    def test_check_negative_estimate_is_400(self, client):
        response = client.post("/v1/metering/check", json={"estimated_tokens": -1}, headers=FREE)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    def test_record_returns_event(self, client):
        body = _record(client, FREE, 400, request_id="req_call_site")
        assert body["object"] == "usage_event"
        assert body["tokens_used"] == 400
        assert body["model_name"] == "gpt-4"
        assert body["usage_type"] == "chat"
        assert body["request_id"] == "req_call_site"
        assert body["cost"] == pytest.approx(0.018)

    def test_record_defaults_request_id_to_http_request(self, client):
        response = client.post(
            "/v1/metering/record",
            json={"tokens": 5, "model": "gpt-4"},
            headers={**FREE, "X-Request-Id": "req_http"},
        )
        assert response.json()["request_id"] == "req_http"

    def test_record_invalid_usage_type_is_400(self, client):
        response = client.post(
            "/v1/metering/record",
            json={"tokens": 5, "model": "gpt-4", "usage_type": "audio"},
            headers=FREE,
        )
        assert response.status_code == 400
        assert response.json()["error"]["param"] == "usage_type"

    def test_record_failure_is_500(self, client, store, monkeypatch):
        monkeypatch.setattr(store, "record_usage", AsyncMock(side_effect=RuntimeError("db gone")))
        response = client.post(
            "/v1/metering/record",
            json={"tokens": 5, "model": "gpt-4"},
            headers=FREE,
        )
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "recording_failed"
        assert error["type"] == "infra_error"
        assert error["details"]["user_id"] == "u_free"


# ============================================================
# Admin endpoints
# ============================================================

class TestAdminEndpoints:
    """Tests for /v1/admin."""

    @pytest.mark.parametrize("method,path", [
        ("get", "/v1/admin/users"),
        ("get", "/v1/admin/users/u_free"),
        ("get", "/v1/admin/stats"),
        ("post", "/v1/admin/sync-quotas"),
    ])
    def test_non_admin_forbidden(self, client, method, path):
        response = getattr(client, method)(path, headers=FREE)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "permission_denied"

    def test_list_users(self, client):
        body = client.get(
            "/v1/admin/users?sort_by=username&sort_order=asc", headers=ADMIN
        ).json()
        assert body["total"] == 3
        assert [u["username"] for u in body["users"]] == ["ada", "freddie", "prue"]

    def test_list_users_bad_sort(self, client):
        response = client.get("/v1/admin/users?sort_by=password", headers=ADMIN)
        assert response.status_code == 400

    def test_user_detail(self, client):
        _record(client, FREE, 250)
        body = client.get("/v1/admin/users/u_free", headers=ADMIN).json()
        assert body["user"]["email"] == "free@example.com"
        assert body["stats"]["total_tokens"] == 250
        assert body["quota"]["daily_used"] == 250
        assert body["recent_usage"][0]["tokens_used"] == 250

    def test_user_detail_unknown(self, client):
        response = client.get("/v1/admin/users/ghost", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "user_not_found"

    def test_update_quota(self, client):
        response = client.patch(
            "/v1/admin/users/u_free/quota", json={"daily_limit": 5000}, headers=ADMIN
        )
        assert response.status_code == 200
        quota = response.json()["quota"]
        assert quota["daily_limit"] == 5000
        assert quota["monthly_limit"] == 30000

        usage = client.get("/v1/usage", headers=FREE).json()
        assert usage["current"]["daily_limit"] == 5000

    @pytest.mark.parametrize("payload", [{}, {"daily_limit": -2}])
    def test_update_quota_invalid(self, client, payload):
        response = client.patch("/v1/admin/users/u_free/quota", json=payload, headers=ADMIN)
        assert response.status_code == 400

    def test_stats(self, client, store):
        _record(client, FREE, 300)
        body = client.get("/v1/admin/stats", headers=ADMIN).json()
        assert body["total_users"] == 3
        assert body["total_tokens_used"] == 300
        assert body["top_models"] == [{"model": "gpt-4", "tokens": 300, "percentage": 100.0}]

    def test_sync_quotas(self, client):
        client.patch("/v1/admin/users/u_free/quota", json={"daily_limit": 7}, headers=ADMIN)
        body = client.post("/v1/admin/sync-quotas", headers=ADMIN).json()
        assert body["success"] is True
        assert body["updated_count"] == 1
        assert body["created_count"] == 0
        assert body["daily_limit"] == 1000

        usage = client.get("/v1/usage", headers=FREE).json()
        assert usage["current"]["daily_limit"] == 1000
