from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

# Limits, remaining counts and days left use None as the "no cap" sentinel.
UNBOUNDED = None


class PlanTier(str, Enum):
    """Commercial subscription tier."""

    FREE_TRIAL = "free_trial"
    STARTER = "starter"
    PRO = "pro"
    ADMIN = "admin"
    NO_ACTIVE_PLAN = "no_active_plan"

    @classmethod
    def from_plan_name(cls, name: Optional[str]) -> Optional["PlanTier"]:
        """Map a stored plan name ("Starter Plan", "Pro Plan", ...) to a tier.

        Returns None when the name does not identify any tier.
        """
        normalized = str(name or "").strip().lower()
        if not normalized:
            return None
        for tier in cls:
            if normalized == tier.value:
                return tier
        if normalized.replace("_", " ") == "no active plan":
            return cls.NO_ACTIVE_PLAN
        if "admin" in normalized:
            return cls.ADMIN
        if "starter" in normalized:
            return cls.STARTER
        if "pro" in normalized:
            return cls.PRO
        if "trial" in normalized or "free" in normalized:
            return cls.FREE_TRIAL
        return None


class SubscriptionStatus(str, Enum):
    """Raw lifecycle state as reported by the billing source."""

    TRIALING = "trialing"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    NOT_LOGGED_IN = "not_logged_in"

    @classmethod
    def from_raw(cls, raw: Optional[str]) -> Optional["SubscriptionStatus"]:
        normalized = str(raw or "").strip().lower().replace("-", "_")
        aliases = {
            "canceled": cls.CANCELLED,
            "pastdue": cls.PAST_DUE,
            "notloggedin": cls.NOT_LOGGED_IN,
        }
        if normalized in aliases:
            return aliases[normalized]
        for status in cls:
            if normalized == status.value:
                return status
        return None


class UserRole(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


class FeatureKey(str, Enum):
    NOTES = "notes"
    ANALYTICS_FULL = "analyticsFull"
    PROFILE = "profile"


class ResourceKind(str, Enum):
    ACCOUNTS = "accounts"
    STRATEGIES = "strategies"


class RouteRequirement(str, Enum):
    NONE = "none"
    AUTHENTICATED = "authenticated"
    ADMIN = "admin"
    MANAGER = "manager"
    ADMIN_OR_MANAGER = "adminOrManager"


def normalize_limit(value: Union[int, str, None]) -> Optional[int]:
    """Return an int cap, or UNBOUNDED for -1 / "unlimited" / None."""
    if value is None:
        return UNBOUNDED
    if isinstance(value, bool):
        raise ValueError("limit must be an integer")
    if isinstance(value, str):
        if value.strip().lower() == "unlimited":
            return UNBOUNDED
        value = int(value)
    limit = int(value)
    if limit == -1:
        return UNBOUNDED
    if limit < 0:
        raise ValueError(f"limit must be >= 0 or -1 for unlimited, got {limit}")
    return limit


def _require_aware(name: str, value: Optional[datetime]) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class UserIdentity:
    """The authenticated user a session resolves entitlements for."""

    user_id: str
    role: UserRole = UserRole.USER

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "role", UserRole(self.role))


@dataclass(frozen=True)
class SubscriptionRecord:
    """One subscription row for a user, as owned by the billing source."""

    user_id: str
    plan_tier: PlanTier
    status: SubscriptionStatus
    period_start: datetime
    period_end: Optional[datetime]
    created_at: datetime
    plan_name: Optional[str] = None

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        _require_aware("period_start", self.period_start)
        _require_aware("period_end", self.period_end)
        _require_aware("created_at", self.created_at)
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "plan_tier", PlanTier(self.plan_tier))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))


@dataclass(frozen=True)
class PlanCatalogEntry:
    """Entitlements configured for a tier.

    Feature flags left as None fall back to the tier defaults.
    """

    plan_tier: PlanTier
    trading_account_limit: Optional[int]
    strategy_limit: Optional[int]
    notes_access: Optional[bool] = None
    analytics_full_access: Optional[bool] = None
    profile_access: Optional[bool] = None
    plan_name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "plan_tier", PlanTier(self.plan_tier))
        object.__setattr__(self, "trading_account_limit", normalize_limit(self.trading_account_limit))
        object.__setattr__(self, "strategy_limit", normalize_limit(self.strategy_limit))

    def feature_overrides(self) -> Mapping[FeatureKey, bool]:
        flags = {
            FeatureKey.NOTES: self.notes_access,
            FeatureKey.ANALYTICS_FULL: self.analytics_full_access,
            FeatureKey.PROFILE: self.profile_access,
        }
        return {key: bool(value) for key, value in flags.items() if value is not None}

    def limit_for(self, kind: ResourceKind) -> Optional[int]:
        if ResourceKind(kind) is ResourceKind.ACCOUNTS:
            return self.trading_account_limit
        return self.strategy_limit


@dataclass(frozen=True)
class ResourceCounts:
    """Snapshot of how many accounts and strategies the user owns."""

    accounts_count: int = 0
    strategies_count: int = 0

    def __post_init__(self) -> None:
        if self.accounts_count < 0 or self.strategies_count < 0:
            raise ValueError("resource counts cannot be negative")

    def count_for(self, kind: ResourceKind) -> int:
        if ResourceKind(kind) is ResourceKind.ACCOUNTS:
            return self.accounts_count
        return self.strategies_count


@dataclass(frozen=True)
class EntitlementDecision:
    """Canonical access decision every gate reads.

    Replaced wholesale on each resolve; access_blocked is derived, not stored.
    """

    plan_tier: PlanTier
    status: SubscriptionStatus
    is_active: bool
    is_expired: bool
    days_left: Optional[int]
    features: Mapping[FeatureKey, bool]
    limits: Mapping[ResourceKind, Optional[int]]
    remaining: Mapping[ResourceKind, Optional[int]]
    resolved_at: datetime
    plan_name: Optional[str] = None
    is_provisioning_fallback: bool = False
    substituted_tier: Optional[PlanTier] = None

    def __post_init__(self) -> None:
        if self.is_active and self.is_expired:
            raise ValueError("a decision cannot be both active and expired")
        _require_aware("resolved_at", self.resolved_at)
        features = {FeatureKey(key): bool(value) for key, value in self.features.items()}
        limits = {ResourceKind(key): value for key, value in self.limits.items()}
        remaining = {ResourceKind(key): value for key, value in self.remaining.items()}
        object.__setattr__(self, "features", MappingProxyType(features))
        object.__setattr__(self, "limits", MappingProxyType(limits))
        object.__setattr__(self, "remaining", MappingProxyType(remaining))

    @property
    def access_blocked(self) -> bool:
        return self.is_expired and self.plan_tier is not PlanTier.ADMIN

    def has_feature(self, feature_key: Union[FeatureKey, str]) -> bool:
        return bool(self.features.get(FeatureKey(feature_key), False))

    def limit_for(self, kind: Union[ResourceKind, str]) -> Optional[int]:
        return self.limits.get(ResourceKind(kind))

    def remaining_for(self, kind: Union[ResourceKind, str]) -> Optional[int]:
        return self.remaining.get(ResourceKind(kind))

    def to_dict(self) -> dict:
        return {
            "plan_tier": self.plan_tier.value,
            "plan_name": self.plan_name,
            "status": self.status.value,
            "is_active": self.is_active,
            "is_expired": self.is_expired,
            "access_blocked": self.access_blocked,
            "days_left": self.days_left,
            "features": {key.value: value for key, value in self.features.items()},
            "limits": {key.value: value for key, value in self.limits.items()},
            "remaining": {key.value: value for key, value in self.remaining.items()},
            "resolved_at": self.resolved_at.isoformat(),
            "is_provisioning_fallback": self.is_provisioning_fallback,
            "substituted_tier": self.substituted_tier.value if self.substituted_tier else None,
        }
