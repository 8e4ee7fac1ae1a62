"""
tokenmeter - Quota Admission & Administration

Pre-flight admission checks against daily/monthly token quotas, usage
snapshots, and the administrative operations that change limits.

Denials are returned, not raised: an exhausted quota is an expected,
user-recoverable outcome. The HTTP layer turns a denial into a 429.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.errors import InvalidRequestError
from ..db.models import UNLIMITED, QuotaRecord
from ..db.store import UsageStore
from ..observability.logging import TimedOperation, get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import trace_quota_operation
from .policy import EntitlementPolicy
from .scheduler import ResetScheduler, next_daily_reset, next_monthly_reset

logger = get_logger(__name__)

DAILY_QUOTA_EXCEEDED = "DAILY_QUOTA_EXCEEDED"
MONTHLY_QUOTA_EXCEEDED = "MONTHLY_QUOTA_EXCEEDED"


@dataclass
class UsageSnapshot:
    """Reconciled view of a user's quota counters."""
    daily_used: int
    monthly_used: int
    daily_limit: int
    monthly_limit: int
    daily_reset_at: datetime
    monthly_reset_at: datetime

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit == UNLIMITED

    @classmethod
    def from_record(cls, record: QuotaRecord) -> "UsageSnapshot":
        return cls(
            daily_used=record.daily_used,
            monthly_used=record.monthly_used,
            daily_limit=record.daily_limit,
            monthly_limit=record.monthly_limit,
            daily_reset_at=record.daily_reset_at,
            monthly_reset_at=record.monthly_reset_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily_used": self.daily_used,
            "monthly_used": self.monthly_used,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
            "is_unlimited": self.is_unlimited,
            "daily_reset_at": self.daily_reset_at.isoformat(),
            "monthly_reset_at": self.monthly_reset_at.isoformat(),
        }


@dataclass
class QuotaCheckResult:
    """Result of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    scope: Optional[str] = None  # daily, monthly
    reset_at: Optional[datetime] = None
    retry_after: Optional[int] = None  # Seconds until the blocking window resets
    usage: Optional[UsageSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allowed": self.allowed}
        if not self.allowed:
            result["reason"] = self.reason
            result["scope"] = self.scope
            result["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
            result["retry_after"] = self.retry_after
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        return result


@dataclass
class QuotaSyncResult:
    """Outcome of a bulk policy sync."""
    updated_count: int
    created_count: int
    daily_limit: int
    monthly_limit: int

    @property
    def total_users(self) -> int:
        return self.updated_count + self.created_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated_count": self.updated_count,
            "created_count": self.created_count,
            "total_users": self.total_users,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
        }


def _validate_limit(value: Optional[int], param: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < UNLIMITED:
        raise InvalidRequestError(f"{param} must be -1 (unlimited) or >= 0", param=param)


class QuotaService:
    """Admission checks and quota administration."""

    def __init__(
        self,
        store: UsageStore,
        scheduler: ResetScheduler,
        policy: EntitlementPolicy,
    ):
        self.store = store
        self.scheduler = scheduler
        self.policy = policy

    async def check_quota(self, user_id: str, estimated_tokens: int = 0) -> QuotaCheckResult:
        """
        Decide whether a metered action may proceed.

        Daily is checked before monthly, so a user over both limits is told
        about the daily one. An estimate of 0 asks "is the user already
        over quota".
        """
        if isinstance(estimated_tokens, bool) or not isinstance(estimated_tokens, int):
            raise InvalidRequestError("estimated_tokens must be an integer", param="estimated_tokens")
        if estimated_tokens < 0:
            raise InvalidRequestError("estimated_tokens must be >= 0", param="estimated_tokens")

        with trace_quota_operation(
            "quota.check", user_id=user_id, estimated_tokens=estimated_tokens
        ) as span:
            now = self.scheduler.now()
            record = await self.scheduler.load(user_id, now)
            result = self._evaluate(record, estimated_tokens, now)
            span.set_attribute("tokenmeter.allowed", result.allowed)
            if result.scope:
                span.set_attribute("tokenmeter.scope", result.scope)

        get_metrics().record_quota_check(result.allowed, result.scope)
        if not result.allowed:
            logger.info(
                "Quota check denied",
                user_id=user_id,
                reason=result.reason,
                scope=result.scope,
                estimated_tokens=estimated_tokens,
                daily_used=record.daily_used,
                monthly_used=record.monthly_used,
            )
        return result

    def _evaluate(self, record: QuotaRecord, estimated_tokens: int, now: datetime) -> QuotaCheckResult:
        usage = UsageSnapshot.from_record(record)
        if record.is_unlimited:
            return QuotaCheckResult(allowed=True, usage=usage)

        if record.daily_used + estimated_tokens > record.daily_limit:
            return QuotaCheckResult(
                allowed=False,
                reason=DAILY_QUOTA_EXCEEDED,
                scope="daily",
                reset_at=record.daily_reset_at,
                retry_after=self._seconds_until(record.daily_reset_at, now),
                usage=usage,
            )

        if record.monthly_limit != UNLIMITED and (
            record.monthly_used + estimated_tokens > record.monthly_limit
        ):
            return QuotaCheckResult(
                allowed=False,
                reason=MONTHLY_QUOTA_EXCEEDED,
                scope="monthly",
                reset_at=record.monthly_reset_at,
                retry_after=self._seconds_until(record.monthly_reset_at, now),
                usage=usage,
            )

        return QuotaCheckResult(allowed=True, usage=usage)

    @staticmethod
    def _seconds_until(moment: datetime, now: datetime) -> int:
        return max(1, math.ceil((moment - now).total_seconds()))

    async def get_usage_stats(self, user_id: str) -> UsageSnapshot:
        """Reconciled counters and limits for a user."""
        record = await self.scheduler.load(user_id)
        return UsageSnapshot.from_record(record)

    async def set_user_limits(
        self,
        user_id: str,
        daily_limit: Optional[int] = None,
        monthly_limit: Optional[int] = None,
    ) -> UsageSnapshot:
        """
        Override one user's limits.

        The record is created from policy first when missing; counters and
        reset timestamps are left alone.
        """
        _validate_limit(daily_limit, "daily_limit")
        _validate_limit(monthly_limit, "monthly_limit")

        record = await self.scheduler.load(user_id)
        if daily_limit is not None or monthly_limit is not None:
            updated = await self.store.set_limits(user_id, daily_limit, monthly_limit)
            record = updated or record
            logger.info(
                "Quota limits overridden",
                user_id=user_id,
                daily_limit=record.daily_limit,
                monthly_limit=record.monthly_limit,
            )
        return UsageSnapshot.from_record(record)

    async def sync_quotas_from_policy(self) -> QuotaSyncResult:
        """
        Push the current free-tier limits onto every free user's record.

        Missing records are created; used counters and reset timestamps of
        existing records are untouched. Running it twice changes nothing
        the second time.
        """
        limits = self.policy.free_limits
        now = self.scheduler.now()

        with trace_quota_operation(
            "quota.sync", daily_limit=limits.daily, monthly_limit=limits.monthly
        ):
            try:
                with TimedOperation("quota_sync", logger, extra=limits.to_dict()):
                    updated, created = await self.store.sync_free_limits(
                        limits.daily,
                        limits.monthly,
                        next_daily_reset(now),
                        next_monthly_reset(now),
                    )
            except Exception:
                get_metrics().record_sync(success=False)
                raise

        get_metrics().record_sync(success=True)
        result = QuotaSyncResult(
            updated_count=updated,
            created_count=created,
            daily_limit=limits.daily,
            monthly_limit=limits.monthly,
        )
        logger.info("Quota sync completed", **result.to_dict())
        return result
