"""
tokenmeter - Reset Scheduler

Lazy rollover of daily and monthly quota windows.

There is no background job: whichever request first observes an elapsed
window rolls it forward. Windows are UTC calendar days and months.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..core.errors import UserNotFoundError
from ..db.models import QuotaRecord, as_utc
from ..db.store import UsageStore
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .policy import EntitlementPolicy

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_daily_reset(now: datetime) -> datetime:
    """Midnight UTC of the day after `now` (always strictly later)."""
    now = as_utc(now)
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return today + timedelta(days=1)


def next_monthly_reset(now: datetime) -> datetime:
    """The 1st of the month after `now`, 00:00 UTC."""
    now = as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def _with_utc_resets(record: QuotaRecord) -> QuotaRecord:
    """Copy of `record` whose reset timestamps are timezone-aware UTC."""
    return replace(
        record,
        daily_reset_at=as_utc(record.daily_reset_at),
        monthly_reset_at=as_utc(record.monthly_reset_at),
    )


def rollover(record: QuotaRecord, now: datetime) -> QuotaRecord:
    """
    Pure rollover of a record at `now`.

    Daily and monthly windows are checked independently and may both roll.
    """
    now = as_utc(now)
    result = _with_utc_resets(record)
    if now >= result.daily_reset_at:
        result.daily_used = 0
        result.daily_reset_at = next_daily_reset(now)
    if now >= result.monthly_reset_at:
        result.monthly_used = 0
        result.monthly_reset_at = next_monthly_reset(now)
    return result


class ResetScheduler:
    """
    Reconciles stored quota records with the current time.

    Each rollover is persisted as a compare-and-set on the stored reset
    timestamp; when another request already rolled the window, the stored
    row is re-read instead of overwritten.
    """

    def __init__(
        self,
        store: UsageStore,
        policy: EntitlementPolicy,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.policy = policy
        self.clock = clock or utc_now

    def now(self) -> datetime:
        return as_utc(self.clock())

    async def reconcile(self, record: QuotaRecord, now: Optional[datetime] = None) -> QuotaRecord:
        """Roll elapsed windows forward and return the stored record."""
        now = as_utc(now) if now is not None else self.now()
        current = _with_utc_resets(record)

        if now >= current.daily_reset_at:
            rolled = await self.store.roll_daily(current.user_id, now, next_daily_reset(now))
            if rolled is not None:
                get_metrics().record_rollover("daily")
                logger.debug(
                    "Daily quota window rolled over",
                    user_id=current.user_id,
                    daily_reset_at=rolled.daily_reset_at.isoformat(),
                )
                current = _with_utc_resets(rolled)
            else:
                current = _with_utc_resets(await self.store.get_quota(current.user_id) or current)

        if now >= current.monthly_reset_at:
            rolled = await self.store.roll_monthly(current.user_id, now, next_monthly_reset(now))
            if rolled is not None:
                get_metrics().record_rollover("monthly")
                logger.debug(
                    "Monthly quota window rolled over",
                    user_id=current.user_id,
                    monthly_reset_at=rolled.monthly_reset_at.isoformat(),
                )
                current = _with_utc_resets(rolled)
            else:
                current = _with_utc_resets(await self.store.get_quota(current.user_id) or current)

        return current

    async def load(self, user_id: str, now: Optional[datetime] = None) -> QuotaRecord:
        """
        Get the user's reconciled record, creating it from policy if absent.

        Raises:
            UserNotFoundError: If the user does not exist.
        """
        now = as_utc(now) if now is not None else self.now()
        record = await self.store.get_quota(user_id)

        if record is None:
            user = await self.store.get_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            limits = self.policy.limits_for(user.role)
            record = await self.store.create_quota(
                user_id,
                limits.daily,
                limits.monthly,
                next_daily_reset(now),
                next_monthly_reset(now),
            )
            logger.info(
                "Quota record created",
                user_id=user_id,
                role=user.role.value,
                daily_limit=record.daily_limit,
                monthly_limit=record.monthly_limit,
            )

        return await self.reconcile(record, now)
