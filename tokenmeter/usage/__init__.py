"""
tokenmeter - Usage Accounting Module

Key Components:
- Policy: tier to daily/monthly limits
- Pricing: per-model cost estimation
- Scheduler: lazy daily/monthly window rollover
- Recorder: usage event append + atomic counter increment
- Limits: admission checks and quota administration
- Aggregator: history, summaries and system statistics
- Estimator: heuristic token counts for pre-flight checks
- Engine: all of the above wired over one store
"""

from .policy import (
    QuotaLimits,
    EntitlementPolicy,
)
from .pricing import (
    ModelPrice,
    CostCalculator,
    DEFAULT_MODEL_PRICES,
)
from .scheduler import (
    ResetScheduler,
    next_daily_reset,
    next_monthly_reset,
    rollover,
)
from .recorder import (
    UsageRecorder,
    parse_usage_type,
)
from .limits import (
    DAILY_QUOTA_EXCEEDED,
    MONTHLY_QUOTA_EXCEEDED,
    UsageSnapshot,
    QuotaCheckResult,
    QuotaSyncResult,
    QuotaService,
)
from .aggregator import (
    UsageSummary,
    UsageReporter,
)
from .estimator import (
    TokenEstimate,
    TokenEstimator,
    estimate_tokens,
)
from .engine import (
    QuotaEngine,
    get_engine,
    get_engine_optional,
    set_engine,
)

__all__ = [
    # Policy
    "QuotaLimits",
    "EntitlementPolicy",
    # Pricing
    "ModelPrice",
    "CostCalculator",
    "DEFAULT_MODEL_PRICES",
    # Scheduler
    "ResetScheduler",
    "next_daily_reset",
    "next_monthly_reset",
    "rollover",
    # Recorder
    "UsageRecorder",
    "parse_usage_type",
    # Limits
    "DAILY_QUOTA_EXCEEDED",
    "MONTHLY_QUOTA_EXCEEDED",
    "UsageSnapshot",
    "QuotaCheckResult",
    "QuotaSyncResult",
    "QuotaService",
    # Aggregator
    "UsageSummary",
    "UsageReporter",
    # Estimator
    "TokenEstimate",
    "TokenEstimator",
    "estimate_tokens",
    # Engine
    "QuotaEngine",
    "get_engine",
    "get_engine_optional",
    "set_engine",
]
