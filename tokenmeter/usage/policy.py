"""
tokenmeter - Entitlement Policy

Maps an account tier to its daily and monthly token allowance.
"""

from dataclasses import dataclass
from typing import Any, Dict

from ..core.config import QuotaSettings
from ..db.models import UNLIMITED, Role


@dataclass(frozen=True)
class QuotaLimits:
    """Daily and monthly token limits; -1 means unlimited."""
    daily: int
    monthly: int

    @property
    def is_unlimited(self) -> bool:
        return self.daily == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {"daily_limit": self.daily, "monthly_limit": self.monthly}


class EntitlementPolicy:
    """
    Tier to limits mapping.

    Free users get the configured finite limits, pro and admin are
    unlimited. Unknown tiers are treated as free. Existing quota records
    only pick up a changed free allowance through an explicit sync.
    """

    def __init__(
        self,
        free_daily_limit: int = 1000,
        free_monthly_limit: int = 30000,
    ):
        self.free_limits = QuotaLimits(daily=free_daily_limit, monthly=free_monthly_limit)
        self._unlimited = QuotaLimits(daily=UNLIMITED, monthly=UNLIMITED)

    @classmethod
    def from_settings(cls, settings: QuotaSettings) -> "EntitlementPolicy":
        return cls(
            free_daily_limit=settings.free_daily_limit,
            free_monthly_limit=settings.free_monthly_limit,
        )

    def limits_for(self, tier: Any) -> QuotaLimits:
        role = Role.normalize(tier)
        if role in (Role.PRO, Role.ADMIN):
            return self._unlimited
        return self.free_limits
