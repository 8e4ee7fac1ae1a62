"""
tokenmeter - Pytest Configuration

Configures:
- MODE=test for every test
- A fixed UTC clock for deterministic window arithmetic
- A seeded in-memory store, an engine over it, and an HTTP client
"""

import os

os.environ.setdefault("MODE", "test")

import logging
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from tokenmeter.core.config import set_settings
from tokenmeter.db.memory import InMemoryUsageStore
from tokenmeter.db.models import Role, User
from tokenmeter.usage.engine import QuotaEngine, set_engine
from tokenmeter.usage.policy import EntitlementPolicy
from tokenmeter.usage.pricing import CostCalculator


# 2024-03-15 12:00:00 UTC, mid-day and mid-month
FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================
# Clock
# ============================================================

class MutableClock:
    """Clock whose current time tests can move."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now


@pytest.fixture
def clock():
    return MutableClock()


# ============================================================
# Store and engine
# ============================================================

@pytest.fixture
def store():
    """In-memory store with one user per tier."""
    memory = InMemoryUsageStore()
    memory.add_user(User(
        id="u_free",
        email="free@example.com",
        username="freddie",
        role=Role.FREE,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))
    memory.add_user(User(
        id="u_pro",
        email="pro@example.com",
        username="prue",
        role=Role.PRO,
        created_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
    ))
    memory.add_user(User(
        id="u_admin",
        email="admin@example.com",
        username="ada",
        role=Role.ADMIN,
        created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    ))
    return memory


@pytest.fixture
def policy():
    return EntitlementPolicy(free_daily_limit=1000, free_monthly_limit=30000)


@pytest.fixture
def engine(store, policy, clock):
    return QuotaEngine(store=store, policy=policy, calculator=CostCalculator(), clock=clock)


@pytest.fixture
def client(engine, monkeypatch):
    """HTTP client over an app that installs `engine` at startup."""
    monkeypatch.setenv("MODE", "test")
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    from tokenmeter.server import create_app

    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


@pytest.fixture
def metrics():
    """Collector on a private registry, installed as the global one."""
    from prometheus_client import CollectorRegistry
    from tokenmeter.observability import metrics as metrics_module

    previous = (metrics_module._metrics_instance, metrics_module.MetricsCollector._instance)
    registry = CollectorRegistry()
    # ids of collected registries can be reused
    metrics_module.MetricsCollector._initialized_registries.discard(id(registry))
    collector = metrics_module.setup_metrics(registry)
    yield collector
    metrics_module._metrics_instance, metrics_module.MetricsCollector._instance = previous


@pytest.fixture(autouse=True)
def reset_globals():
    """Engine and settings singletons never leak between tests."""
    yield
    set_engine(None)
    set_settings(None)


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
