"""
tokenmeter - API Layer

REST endpoints over the quota engine.

Provides:
- User usage views (current counters, history, summary)
- Metering calls (pre-flight check, usage record)
- Administration (users, quota overrides, stats, quota sync)
"""

from .models import (
    CheckQuotaRequest,
    RecordUsageRequest,
    UpdateQuotaRequest,
)
from .dependencies import (
    get_quota_engine,
    add_standard_headers,
)
from .routes import (
    usage_router,
    metering_router,
    admin_router,
)


__all__ = [
    # Routers
    "usage_router",
    "metering_router",
    "admin_router",
    # Request models
    "CheckQuotaRequest",
    "RecordUsageRequest",
    "UpdateQuotaRequest",
    # Dependencies
    "get_quota_engine",
    "add_standard_headers",
]
