"""
tokenmeter - Database Models

Dataclass models for database entities.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


UNLIMITED = -1


class Role(str, Enum):
    """Account tier."""
    FREE = "free"
    PRO = "pro"
    ADMIN = "admin"

    @classmethod
    def normalize(cls, value: Any) -> "Role":
        """Map any stored role value onto a tier; unknown values are free."""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.FREE


class UsageType(str, Enum):
    """Metered action category."""
    CHAT = "chat"
    SEARCH = "search"
    IMAGE = "image"
    VIDEO = "video"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are read as UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    """User account (owned by the authentication subsystem)."""

    id: str
    email: str = ""
    username: str = ""
    role: Role = Role.FREE
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "User":
        """Create User from database record."""
        return cls(
            id=str(record["id"]),
            email=record["email"] or "",
            username=record["username"] or "",
            role=Role.normalize(record["role"]),
            is_active=record["is_active"],
            created_at=record["created_at"],
            last_login_at=record["last_login_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role.value,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "last_login_at": _iso(self.last_login_at),
        }


@dataclass
class QuotaRecord:
    """
    Per-user quota counters.

    A limit of -1 means unlimited. The reset timestamps always point at the
    next window boundary once the record has been reconciled.
    """

    user_id: str
    daily_limit: int
    monthly_limit: int
    daily_reset_at: datetime
    monthly_reset_at: datetime
    daily_used: int = 0
    monthly_used: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit == UNLIMITED

    @classmethod
    def from_record(cls, record) -> "QuotaRecord":
        """Create QuotaRecord from database record."""
        return cls(
            user_id=str(record["user_id"]),
            daily_limit=record["daily_limit"],
            monthly_limit=record["monthly_limit"],
            daily_used=record["daily_used"],
            monthly_used=record["monthly_used"],
            daily_reset_at=as_utc(record["daily_reset_at"]),
            monthly_reset_at=as_utc(record["monthly_reset_at"]),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
            "daily_used": self.daily_used,
            "monthly_used": self.monthly_used,
            "is_unlimited": self.is_unlimited,
            "daily_reset_at": _iso(self.daily_reset_at),
            "monthly_reset_at": _iso(self.monthly_reset_at),
        }


@dataclass
class UsageEvent:
    """Immutable record of one completed metered action."""

    user_id: str
    tokens_used: int
    model_name: str
    usage_type: UsageType = UsageType.CHAT
    request_id: str = ""
    cost: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_record(cls, record) -> "UsageEvent":
        """Create UsageEvent from database record."""
        cost = record["cost"]
        return cls(
            id=record["id"],
            user_id=str(record["user_id"]),
            tokens_used=record["tokens_used"],
            model_name=record["model_name"],
            usage_type=UsageType(record["usage_type"]),
            request_id=record["request_id"] or "",
            cost=Decimal(cost) if cost is not None else None,
            created_at=record["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tokens_used": self.tokens_used,
            "model_name": self.model_name,
            "usage_type": self.usage_type.value,
            "request_id": self.request_id,
            "cost": float(self.cost) if self.cost is not None else None,
            "created_at": _iso(self.created_at),
        }


@dataclass
class UserUsageRow:
    """A user joined with derived activity totals (admin listing)."""

    user: User
    total_tokens: int = 0
    total_chats: int = 0
    last_event_at: Optional[datetime] = None

    @property
    def last_active_at(self) -> Optional[datetime]:
        return self.last_event_at or self.user.last_login_at

    def to_dict(self) -> Dict[str, Any]:
        data = self.user.to_dict()
        data.update({
            "total_tokens": self.total_tokens,
            "total_chats": self.total_chats,
            "last_active_at": _iso(self.last_active_at),
        })
        return data


@dataclass
class UserActivity:
    """Lifetime activity totals for one user."""

    total_tokens: int = 0
    total_cost: Decimal = Decimal(0)
    usage_count: int = 0
    total_chats: int = 0
    total_messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "total_cost": float(self.total_cost),
            "usage_count": self.usage_count,
            "total_chats": self.total_chats,
            "total_messages": self.total_messages,
        }


@dataclass
class SystemTotals:
    """Raw system-wide counts returned by a store."""

    total_users: int = 0
    active_users: int = 0
    total_tokens: int = 0
    total_chats: int = 0
    total_messages: int = 0
    users_by_role: Dict[str, int] = field(default_factory=dict)


@dataclass
class Identity:
    """
    Caller identity for a request.

    Populated by the identity dependency from headers forwarded by the
    authenticating gateway.
    """

    user_id: str
    role: Role = Role.FREE

    # Request tracing
    request_id: str = ""
    trace_id: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
