"""
tokenmeter - Usage System Tests

Covers:
- Pricing catalog and cost estimation
- Token estimation
- Usage recording (counters, events, failures, concurrency)
- History, summaries and system statistics
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tokenmeter.core.errors import (
    InvalidRequestError,
    RecordingFailedError,
    UserNotFoundError,
)
from tokenmeter.db.memory import InMemoryUsageStore
from tokenmeter.db.models import Role, UsageEvent, UsageType, User
from tokenmeter.usage.aggregator import MAX_SUMMARY_WINDOW_DAYS
from tokenmeter.usage import (
    DEFAULT_MODEL_PRICES,
    CostCalculator,
    EntitlementPolicy,
    QuotaEngine,
    TokenEstimator,
    UsageSummary,
    estimate_tokens,
    parse_usage_type,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class YieldingStore(InMemoryUsageStore):
    """In-memory store that hands control back to the event loop on every call."""

    def __init__(self):
        super().__init__()
        self.calls = []

    async def get_quota(self, user_id):
        self.calls.append("get_quota")
        await asyncio.sleep(0)
        return await super().get_quota(user_id)

    async def record_usage(self, event):
        self.calls.append("record_usage")
        await asyncio.sleep(0)
        return await super().record_usage(event)


# ============================================================
# Pricing Tests
# ============================================================

class TestCostCalculator:
    """Tests for CostCalculator."""

    def test_even_split_cost(self):
        calculator = CostCalculator()
        # 500 in * 0.03/1k + 500 out * 0.06/1k
        assert calculator.cost(1000, "gpt-4") == Decimal("0.04500000")
        assert calculator.cost(1000, "gpt-3.5-turbo") == Decimal("0.00100000")

    def test_cost_split_uses_real_counts(self):
        calculator = CostCalculator()
        assert calculator.cost_split(1000, 0, "gpt-4") == Decimal("0.03000000")
        assert calculator.cost_split(0, 1000, "gpt-4") == Decimal("0.06000000")

    def test_unknown_model_costs_nothing(self):
        assert CostCalculator().cost(5000, "mystery-model") == Decimal("0")

    def test_lookup_is_case_insensitive(self):
        calculator = CostCalculator()
        assert calculator.cost(1000, "GPT-4") == calculator.cost(1000, "gpt-4")

    def test_rounds_half_up_to_eight_places(self):
        # 1 token of gpt-3.5-turbo: 0.5 * 0.0005/1k + 0.5 * 0.0015/1k = 0.000001
        assert CostCalculator().cost(1, "gpt-3.5-turbo") == Decimal("0.00000100")
        # 3 tokens of claude-3-sonnet = 0.0000270, kept exactly
        assert CostCalculator().cost(3, "claude-3-sonnet") == Decimal("0.00002700")

    def test_overrides_replace_and_extend_defaults(self):
        calculator = CostCalculator(overrides={
            "gpt-4": {"input": 0.01, "output": 0.01},
            "house-model": {"input": 0.002, "output": 0.004},
        })
        assert calculator.cost(1000, "gpt-4") == Decimal("0.01000000")
        assert calculator.cost(1000, "house-model") == Decimal("0.00300000")
        # The module defaults are untouched
        assert DEFAULT_MODEL_PRICES["gpt-4"].input_per_1k == Decimal("0.03")

    def test_from_settings(self):
        from tokenmeter.core.config import QuotaSettings

        settings = QuotaSettings(model_cost_overrides={"x": {"input": 1, "output": 1}})
        assert CostCalculator.from_settings(settings).cost(1000, "x") == Decimal("1.00000000")

    def test_list_models_sorted(self):
        names = [p.model_name for p in CostCalculator().list_models()]
        assert names == sorted(names)
        assert "llama-3" in names


# ============================================================
# Estimator Tests
# ============================================================

class TestTokenEstimator:
    """Tests for the character-class heuristic."""

    def test_empty_text(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0

    def test_alphanumeric_quarter_token(self):
        # 5 * 0.25 = 1.25, rounded up
        assert estimate_tokens("hello") == 2

    def test_cjk_two_tokens(self):
        assert estimate_tokens("你好") == 4

    def test_mixed_text(self):
        estimate = TokenEstimator().estimate("a b")
        assert estimate.alnum_chars == 2
        assert estimate.other_chars == 1
        assert estimate.total_tokens == 1

    def test_to_dict(self):
        data = TokenEstimator().estimate("hi!").to_dict()
        assert data == {"total_tokens": 1, "cjk_chars": 0, "alnum_chars": 2, "other_chars": 1}


# ============================================================
# Recorder Tests
# ============================================================

class TestUsageRecorder:
    """Tests for UsageRecorder."""

    @pytest.mark.asyncio
    async def test_record_increments_counters_and_appends_event(self, engine, store):
        event = await engine.record("u_free", 400, "gpt-4", request_id="req_1")

        assert event.id is not None
        assert event.tokens_used == 400
        assert event.usage_type == UsageType.CHAT
        assert event.cost == Decimal("0.01800000")
        assert event.created_at == _utc(2024, 3, 15, 12)

        quota = await store.get_quota("u_free")
        assert quota.daily_used == 400
        assert quota.monthly_used == 400
        assert len(await store.list_events("u_free", 10)) == 1

    @pytest.mark.asyncio
    async def test_record_generates_request_id(self, engine):
        event = await engine.record("u_free", 10, "gpt-4")
        assert len(event.request_id) == 36

    @pytest.mark.asyncio
    async def test_record_does_not_clamp_over_limit(self, engine, store):
        await engine.record("u_free", 1500, "gpt-4")
        assert (await store.get_quota("u_free")).daily_used == 1500

    @pytest.mark.asyncio
    async def test_unlimited_user_events_recorded_without_counting(self, engine, store):
        await engine.record("u_pro", 9000, "gpt-4", usage_type="image")
        quota = await store.get_quota("u_pro")
        assert quota.daily_used == 0
        events = await store.list_events("u_pro", 10)
        assert events[0].usage_type == UsageType.IMAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tokens", [0, -5])
    async def test_non_positive_tokens_rejected(self, engine, tokens):
        with pytest.raises(InvalidRequestError):
            await engine.record("u_free", tokens, "gpt-4")

    def test_parse_usage_type(self):
        assert parse_usage_type("video") == UsageType.VIDEO
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_usage_type("audio")
        assert exc_info.value.error.param == "usage_type"

    @pytest.mark.asyncio
    async def test_unknown_user_fails_recording(self, engine):
        with pytest.raises(RecordingFailedError) as exc_info:
            await engine.record("ghost", 10, "gpt-4")
        assert isinstance(exc_info.value.__cause__, UserNotFoundError)

    @pytest.mark.asyncio
    async def test_store_failure_is_fatal_and_counted(self, engine, store, metrics, monkeypatch):
        monkeypatch.setattr(store, "record_usage", AsyncMock(side_effect=RuntimeError("disk full")))

        with pytest.raises(RecordingFailedError) as exc_info:
            await engine.record("u_free", 250, "gpt-4", usage_type="search", request_id="req_9")

        error = exc_info.value.error
        assert exc_info.value.status_code == 500
        assert error.code == "recording_failed"
        assert error.retryable is False
        assert error.request_id == "req_9"
        assert error.details["tokens"] == 250
        assert error.details["model"] == "gpt-4"
        assert error.details["reason"] == "disk full"
        assert metrics.registry.get_sample_value(
            "tokenmeter_recording_failures_total", {"usage_type": "search"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_success_metrics(self, engine, metrics):
        await engine.record("u_free", 1000, "gpt-4")
        registry = metrics.registry
        assert registry.get_sample_value(
            "tokenmeter_tokens_recorded_total", {"model": "gpt-4", "usage_type": "chat"}
        ) == 1000.0
        assert registry.get_sample_value(
            "tokenmeter_cost_usd_total", {"model": "gpt-4"}
        ) == pytest.approx(0.045)

    @pytest.mark.asyncio
    async def test_concurrent_records_lose_no_updates(self, clock):
        """Every record reads its quota before any of them writes."""
        store = YieldingStore()
        store.add_user(User(id="u_free", username="freddie", role=Role.FREE))
        engine = QuotaEngine(store, EntitlementPolicy(1000, 30000), CostCalculator(), clock)
        await engine.check_quota("u_free")
        store.calls.clear()

        n, k = 25, 7
        await asyncio.gather(*(engine.record("u_free", k, "gpt-4") for _ in range(n)))

        assert store.calls[:n] == ["get_quota"] * n
        quota = await store.get_quota("u_free")
        assert quota.daily_used == n * k
        assert quota.monthly_used == n * k
        assert len(await store.list_events("u_free", 100)) == n

    def test_threaded_store_increments(self, engine, store):
        asyncio.run(engine.check_quota("u_free"))
        threads, per_thread, k = 8, 100, 3

        def worker():
            for _ in range(per_thread):
                asyncio.run(store.record_usage(
                    UsageEvent(user_id="u_free", tokens_used=k, model_name="gpt-4")
                ))

        with ThreadPoolExecutor(max_workers=threads) as pool:
            for future in [pool.submit(worker) for _ in range(threads)]:
                future.result()

        quota = asyncio.run(store.get_quota("u_free"))
        assert quota.daily_used == threads * per_thread * k
        assert quota.monthly_used == threads * per_thread * k


# ============================================================
# Reporting Tests
# ============================================================

@pytest_asyncio.fixture
async def three_events(engine, clock):
    """200 + 300 + 150 tokens over three days plus one event outside the window."""
    clock.set(_utc(2024, 3, 1, 9))
    await engine.record("u_free", 999, "gpt-4")
    clock.set(_utc(2024, 3, 13, 10))
    await engine.record("u_free", 200, "gpt-4")
    clock.set(_utc(2024, 3, 14, 10))
    await engine.record("u_free", 300, "claude-3-sonnet", usage_type="search")
    clock.set(_utc(2024, 3, 15, 12))
    await engine.record("u_free", 150, "gpt-4")
    return engine


class TestUsageSummary:
    """Tests for trailing-window summaries."""

    @pytest.mark.asyncio
    async def test_seven_day_summary(self, three_events):
        summary = await three_events.reporter.summary("u_free", window_days=7)

        assert summary.total_tokens == 650
        assert summary.event_count == 3
        assert sum(summary.model_totals.values()) == 650
        assert summary.model_totals == {"gpt-4": 350, "claude-3-sonnet": 300}
        assert summary.type_totals == {"chat": 350, "search": 300}
        assert summary.daily_totals == {
            "2024-03-13": 200,
            "2024-03-14": 300,
            "2024-03-15": 150,
        }
        assert summary.total_cost == Decimal("0.01845")

    @pytest.mark.asyncio
    async def test_wider_window_includes_older_events(self, three_events):
        summary = await three_events.reporter.summary("u_free", window_days=30)
        assert summary.total_tokens == 1649
        assert summary.event_count == 4

    @pytest.mark.asyncio
    async def test_empty_summary(self, engine):
        summary = await engine.reporter.summary("u_pro")
        assert summary.to_dict() == {
            "window_days": 7,
            "daily_totals": {},
            "model_totals": {},
            "type_totals": {},
            "total_tokens": 0,
            "total_cost": 0.0,
            "event_count": 0,
        }

    @pytest.mark.asyncio
    async def test_invalid_window(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.reporter.summary("u_free", window_days=0)

    @pytest.mark.asyncio
    async def test_window_upper_bound(self, engine):
        summary = await engine.reporter.summary("u_free", window_days=MAX_SUMMARY_WINDOW_DAYS)
        assert summary.window_days == MAX_SUMMARY_WINDOW_DAYS

        with pytest.raises(InvalidRequestError) as exc_info:
            await engine.reporter.summary("u_free", window_days=MAX_SUMMARY_WINDOW_DAYS + 1)
        assert exc_info.value.error.param == "days"

    def test_from_events_without_cost(self):
        events = [UsageEvent("u", 5, "m", created_at=_utc(2024, 1, 1, 23, 59))]
        summary = UsageSummary.from_events(events, 7)
        assert summary.total_cost == Decimal(0)
        assert summary.daily_totals == {"2024-01-01": 5}


class TestUsageHistory:
    """Tests for paginated history."""

    @pytest.mark.asyncio
    async def test_most_recent_first(self, three_events):
        history = await three_events.reporter.history("u_free", limit=2)
        assert [e.tokens_used for e in history] == [150, 300]

    @pytest.mark.asyncio
    async def test_offset(self, three_events):
        history = await three_events.reporter.history("u_free", limit=10, offset=2)
        assert [e.tokens_used for e in history] == [200, 999]

    @pytest.mark.asyncio
    async def test_empty_history(self, engine):
        assert await engine.reporter.history("u_admin") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,offset", [(0, 0), (501, 0), (10, -1)])
    async def test_invalid_paging(self, engine, limit, offset):
        with pytest.raises(InvalidRequestError):
            await engine.reporter.history("u_free", limit=limit, offset=offset)


class TestSystemStats:
    """Tests for system-wide statistics."""

    @pytest.mark.asyncio
    async def test_stats_merge_usage_and_chat_days(self, engine, store, clock):
        clock.set(_utc(2024, 3, 14, 10))
        await engine.record("u_free", 200, "gpt-4")
        clock.set(_utc(2024, 3, 15, 12))
        await engine.record("u_pro", 600, "claude-3-opus")
        store.add_chat("c1", "u_free", _utc(2024, 3, 13, 9))
        store.add_chat("c2", "u_pro", _utc(2024, 3, 15, 11))
        store.add_message("c1")
        store.add_message("c1")

        stats = await engine.reporter.system_stats()

        assert stats["total_users"] == 3
        assert stats["active_users"] == 2
        assert stats["total_tokens_used"] == 800
        assert stats["total_chats"] == 2
        assert stats["total_messages"] == 2
        assert stats["average_tokens_per_user"] == 266.67
        assert stats["users_by_role"] == {"free": 1, "pro": 1, "admin": 1}
        assert stats["daily_stats"] == [
            {"date": "2024-03-13", "users": 0, "tokens": 0, "chats": 1},
            {"date": "2024-03-14", "users": 1, "tokens": 200, "chats": 0},
            {"date": "2024-03-15", "users": 1, "tokens": 600, "chats": 1},
        ]
        assert stats["top_models"] == [
            {"model": "claude-3-opus", "tokens": 600, "percentage": 75.0},
            {"model": "gpt-4", "tokens": 200, "percentage": 25.0},
        ]

    @pytest.mark.asyncio
    async def test_empty_system(self, clock):
        engine = QuotaEngine(InMemoryUsageStore(), EntitlementPolicy(), CostCalculator(), clock)
        stats = await engine.reporter.system_stats()
        assert stats["total_users"] == 0
        assert stats["average_tokens_per_user"] == 0.0
        assert stats["users_by_role"] == {"free": 0, "pro": 0, "admin": 0}
        assert stats["daily_stats"] == []
        assert stats["top_models"] == []


class TestAdminReporting:
    """Tests for user listing and detail."""

    @pytest.mark.asyncio
    async def test_list_users_sorted_by_username(self, engine):
        page = await engine.reporter.list_users(sort_by="username", sort_order="asc")
        assert [u["username"] for u in page["users"]] == ["ada", "freddie", "prue"]
        assert page["total"] == 3

    @pytest.mark.asyncio
    async def test_list_users_default_newest_first(self, engine):
        page = await engine.reporter.list_users()
        assert [u["id"] for u in page["users"]] == ["u_admin", "u_pro", "u_free"]

    @pytest.mark.asyncio
    async def test_list_users_search_and_role(self, engine):
        page = await engine.reporter.list_users(search="PRO")
        assert [u["id"] for u in page["users"]] == ["u_pro"]
        page = await engine.reporter.list_users(role="free")
        assert [u["id"] for u in page["users"]] == ["u_free"]

    @pytest.mark.asyncio
    async def test_list_users_derived_totals(self, engine, store):
        await engine.record("u_free", 120, "gpt-4")
        store.add_chat("c1", "u_free", _utc(2024, 3, 15))
        page = await engine.reporter.list_users(role="free")
        row = page["users"][0]
        assert row["total_tokens"] == 120
        assert row["total_chats"] == 1
        assert row["last_active_at"] == "2024-03-15T12:00:00+00:00"

    @pytest.mark.asyncio
    async def test_list_users_pagination(self, engine):
        page = await engine.reporter.list_users(limit=1, offset=1, sort_by="username", sort_order="asc")
        assert [u["username"] for u in page["users"]] == ["freddie"]
        assert page["total"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"limit": 101},
        {"offset": -1},
        {"sort_by": "password"},
        {"sort_order": "sideways"},
        {"role": "enterprise"},
    ])
    async def test_list_users_invalid_arguments(self, engine, kwargs):
        with pytest.raises(InvalidRequestError):
            await engine.reporter.list_users(**kwargs)

    @pytest.mark.asyncio
    async def test_user_detail(self, engine, store):
        await engine.record("u_free", 400, "gpt-4")
        store.add_chat("c1", "u_free", _utc(2024, 3, 15))
        store.add_message("c1")

        detail = await engine.reporter.user_detail("u_free")
        assert detail["user"]["id"] == "u_free"
        assert detail["stats"]["total_tokens"] == 400
        assert detail["stats"]["usage_count"] == 1
        assert detail["stats"]["total_messages"] == 1
        assert detail["stats"]["total_cost"] == pytest.approx(0.018)
        assert detail["quota"]["daily_used"] == 400
        assert len(detail["recent_usage"]) == 1

    @pytest.mark.asyncio
    async def test_user_detail_without_quota_record(self, engine):
        detail = await engine.reporter.user_detail("u_admin")
        assert detail["quota"] is None
        assert detail["recent_usage"] == []

    @pytest.mark.asyncio
    async def test_user_detail_unknown(self, engine):
        with pytest.raises(UserNotFoundError):
            await engine.reporter.user_detail("ghost")
