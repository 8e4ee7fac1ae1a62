"""
tokenmeter - Quota Engine

Wires policy, pricing, scheduler, recorder, admission and reporting over a
single store. Metering call sites use `check_quota` before work and
`record` after it.
"""

from typing import Optional

from ..core.config import QuotaSettings, get_settings
from ..db.store import UsageStore
from .aggregator import UsageReporter
from .limits import QuotaService
from .policy import EntitlementPolicy
from .pricing import CostCalculator
from .recorder import UsageRecorder
from .scheduler import Clock, ResetScheduler


class QuotaEngine:
    """The accounting engine for one store."""

    def __init__(
        self,
        store: UsageStore,
        policy: EntitlementPolicy,
        calculator: CostCalculator,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.policy = policy
        self.calculator = calculator
        self.scheduler = ResetScheduler(store, policy, clock)
        self.recorder = UsageRecorder(store, self.scheduler, calculator)
        self.quotas = QuotaService(store, self.scheduler, policy)
        self.reporter = UsageReporter(store, self.scheduler)

    @classmethod
    def from_settings(
        cls,
        store: UsageStore,
        settings: Optional[QuotaSettings] = None,
        clock: Optional[Clock] = None,
    ) -> "QuotaEngine":
        settings = settings or get_settings()
        return cls(
            store=store,
            policy=EntitlementPolicy.from_settings(settings),
            calculator=CostCalculator.from_settings(settings),
            clock=clock,
        )

    # Metering call-site shortcuts

    async def check_quota(self, user_id: str, estimated_tokens: int = 0):
        return await self.quotas.check_quota(user_id, estimated_tokens)

    async def record(self, user_id: str, tokens: int, model_name: str, usage_type="chat", request_id=None):
        return await self.recorder.record(user_id, tokens, model_name, usage_type, request_id)


# Global engine instance
_engine: Optional[QuotaEngine] = None


def get_engine() -> QuotaEngine:
    """
    Get the global engine.

    Raises:
        RuntimeError: If the engine was not set at startup.
    """
    if _engine is None:
        raise RuntimeError("Quota engine not initialized. Call set_engine() first.")
    return _engine


def get_engine_optional() -> Optional[QuotaEngine]:
    return _engine


def set_engine(engine: Optional[QuotaEngine]) -> None:
    """Set (or clear) the global engine."""
    global _engine
    _engine = engine
