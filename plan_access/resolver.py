"""
Entitlement resolution: raw subscription state -> EntitlementDecision.

Pure and deterministic given its inputs. The only side effect is logging of
the degraded paths (provisioning fallback, fail-closed tier substitution).

Order of evaluation:
1. No record: explicit Free Trial fallback (new signup still provisioning)
2. Status: expired/cancelled/past_due are expired; active is never expired;
   trialing expires by timestamp, whatever the stored status says
3. Features: tier defaults, then explicit catalog flags
4. Limits: catalog entry for the tier, or the most restrictive entry when
   the catalog has no entry (fail closed)
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from . import alerts
from .models import (
    UNBOUNDED,
    EntitlementDecision,
    FeatureKey,
    PlanCatalogEntry,
    PlanTier,
    ResourceCounts,
    ResourceKind,
    SubscriptionRecord,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 7
SECONDS_PER_DAY = 24 * 60 * 60

_LIMITED = {FeatureKey.NOTES: False, FeatureKey.ANALYTICS_FULL: False, FeatureKey.PROFILE: True}
_FULL = {FeatureKey.NOTES: True, FeatureKey.ANALYTICS_FULL: True, FeatureKey.PROFILE: True}
_NONE = {FeatureKey.NOTES: False, FeatureKey.ANALYTICS_FULL: False, FeatureKey.PROFILE: False}

TIER_FEATURE_DEFAULTS: Mapping[PlanTier, Mapping[FeatureKey, bool]] = {
    PlanTier.FREE_TRIAL: _LIMITED,
    PlanTier.STARTER: _LIMITED,
    PlanTier.PRO: _FULL,
    PlanTier.ADMIN: _FULL,
    PlanTier.NO_ACTIVE_PLAN: _NONE,
}

# Used when the catalog has no entry for a tier and no NO_ACTIVE_PLAN entry either.
RESTRICTED_ENTRY = PlanCatalogEntry(
    plan_tier=PlanTier.NO_ACTIVE_PLAN,
    trading_account_limit=0,
    strategy_limit=0,
    notes_access=False,
    analytics_full_access=False,
    profile_access=False,
    plan_name="No Active Plan",
)

# Rows eligible to be "current"; anything else only counts when nothing else exists.
CURRENT_ROW_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.EXPIRED}
)

_EXPIRED_STATUSES = frozenset(
    {
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.NOT_LOGGED_IN,
    }
)

# Equal created_at: prefer the row that grants more.
_STATUS_PRECEDENCE = {
    SubscriptionStatus.ACTIVE: 3,
    SubscriptionStatus.TRIALING: 2,
    SubscriptionStatus.EXPIRED: 1,
}


def select_current_record(records: Iterable[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """
    Pick the single row that drives the decision.

    Most recent created_at among active/trialing/expired rows. Cancelled (and
    other historical) rows are only considered when no such row exists.
    """
    rows = list(records)
    candidates = [r for r in rows if r.status in CURRENT_ROW_STATUSES] or rows
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda r: (r.created_at, _STATUS_PRECEDENCE.get(r.status, 0)),
    )


def compute_days_left(period_end: datetime, now: datetime) -> int:
    """max(0, ceil((period_end - now) / 1 day))."""
    seconds = (period_end - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def _catalog_entry_for(
    tier: PlanTier,
    catalog: Sequence[PlanCatalogEntry],
    user_id: Optional[str],
) -> Tuple[PlanCatalogEntry, Optional[PlanTier]]:
    """Return (entry, substituted_tier). substituted_tier is None on a direct hit."""
    by_tier: Dict[PlanTier, PlanCatalogEntry] = {}
    for entry in catalog:
        by_tier.setdefault(entry.plan_tier, entry)

    entry = by_tier.get(tier)
    if entry is not None:
        return entry, None

    restricted = by_tier.get(PlanTier.NO_ACTIVE_PLAN, RESTRICTED_ENTRY)
    if tier is PlanTier.NO_ACTIVE_PLAN:
        return restricted, None

    alerts.emit_unknown_plan_tier(tier.value, user_id=user_id)
    return restricted, PlanTier.NO_ACTIVE_PLAN


def _resolve_features(entry: PlanCatalogEntry) -> Dict[FeatureKey, bool]:
    features = dict(TIER_FEATURE_DEFAULTS[entry.plan_tier])
    features.update(entry.feature_overrides())
    return features


def _remaining(limit: Optional[int], count: int) -> Optional[int]:
    if limit is UNBOUNDED:
        return UNBOUNDED
    return max(0, limit - count)


def resolve(
    record: Optional[SubscriptionRecord],
    catalog: Sequence[PlanCatalogEntry],
    counts: ResourceCounts,
    now: datetime,
    *,
    trial_days: int = DEFAULT_TRIAL_DAYS,
    user_id: Optional[str] = None,
) -> EntitlementDecision:
    """
    Compute the canonical EntitlementDecision.

    Args:
        record: Current subscription row (see select_current_record) or None
        catalog: Plan catalog entries
        counts: Current resource usage
        now: Evaluation time (timezone-aware)
        trial_days: Length of the provisioning fallback trial, and of a trial
            row that carries no period end
        user_id: Only used for log context when record is None

    Returns:
        EntitlementDecision. Never raises for well-formed input.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    plan_name: Optional[str]
    if record is None:
        alerts.emit_provisioning_fallback(user_id=user_id, trial_days=trial_days)
        tier = PlanTier.FREE_TRIAL
        status = SubscriptionStatus.TRIALING
        plan_name = "Free Trial"
        days_left: Optional[int] = trial_days
        is_expired = False
        is_fallback = True
    else:
        user_id = record.user_id
        tier = record.plan_tier
        status = record.status
        plan_name = record.plan_name
        is_fallback = False

        if status in _EXPIRED_STATUSES:
            is_expired = True
            days_left = 0
        elif status is SubscriptionStatus.ACTIVE:
            is_expired = False
            days_left = UNBOUNDED if record.period_end is None else compute_days_left(record.period_end, now)
        elif status is SubscriptionStatus.TRIALING:
            period_end = record.period_end or record.period_start + timedelta(days=trial_days)
            days_left = compute_days_left(period_end, now)
            is_expired = days_left <= 0
            if is_expired:
                logger.info(
                    "Trial lapsed by period end while status still reads trialing",
                    extra={"user_id": user_id, "period_end": period_end.isoformat()},
                )
        else:
            raise ValueError(f"unhandled subscription status: {status!r}")

    entry, substituted = _catalog_entry_for(tier, catalog, user_id)
    if plan_name is None:
        plan_name = entry.plan_name if substituted is None else None

    limits = {kind: entry.limit_for(kind) for kind in ResourceKind}
    remaining = {kind: _remaining(limits[kind], counts.count_for(kind)) for kind in ResourceKind}

    return EntitlementDecision(
        plan_tier=tier,
        status=status,
        is_active=not is_expired,
        is_expired=is_expired,
        days_left=days_left,
        features=_resolve_features(entry),
        limits=limits,
        remaining=remaining,
        resolved_at=now,
        plan_name=plan_name,
        is_provisioning_fallback=is_fallback,
        substituted_tier=substituted,
    )
