"""
Collaborator boundaries for the entitlement session.

A record source supplies subscription rows and the plan catalog; a count
source supplies the user's resource usage. Both are async and signal backend
failures with SourceUnavailableError. Row conversion helpers shared by the
concrete sources live here so every backend maps raw rows the same way.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from ..models import (
    PlanCatalogEntry,
    PlanTier,
    ResourceCounts,
    SubscriptionRecord,
    SubscriptionStatus,
)
from ..resolver import select_current_record
from .. import alerts

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SubscriptionRecordSource(ABC):
    """Read-only provider of subscription rows and the plan catalog."""

    @abstractmethod
    async def fetch_subscription_records(self, user_id: str) -> List[SubscriptionRecord]:
        """Return every subscription row for the user, in any order."""

    @abstractmethod
    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        """Return the active plan catalog."""

    async def fetch_current_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        records = await self.fetch_subscription_records(user_id)
        return select_current_record(records)


class ResourceCountSource(ABC):
    """Provider of the user's current account/strategy counts."""

    @abstractmethod
    async def fetch_resource_counts(self, user_id: str) -> ResourceCounts:
        """Return current usage for the user."""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps from the database are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def tier_for_plan_name(plan_name: Optional[str], *, user_id: Optional[str] = None) -> PlanTier:
    tier = PlanTier.from_plan_name(plan_name)
    if tier is None:
        alerts.emit_unknown_plan_tier(str(plan_name), user_id=user_id)
        return PlanTier.NO_ACTIVE_PLAN
    return tier


def status_from_raw(raw_status: Optional[str], *, user_id: Optional[str] = None) -> SubscriptionStatus:
    status = SubscriptionStatus.from_raw(raw_status)
    if status is None:
        logger.warning(
            "Unknown subscription status; treating as expired",
            extra={"user_id": user_id, "status": raw_status},
        )
        return SubscriptionStatus.EXPIRED
    return status


def record_from_row(
    *,
    user_id: str,
    plan_name: Optional[str],
    status: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    created_at: Optional[datetime],
) -> SubscriptionRecord:
    """Build a SubscriptionRecord from a user_subscriptions_new row joined with its plan name."""
    start = as_utc(start_date)
    created = as_utc(created_at)
    return SubscriptionRecord(
        user_id=user_id,
        plan_tier=tier_for_plan_name(plan_name, user_id=user_id),
        status=status_from_raw(status, user_id=user_id),
        period_start=start or created or _EPOCH,
        period_end=as_utc(end_date),
        created_at=created or start or _EPOCH,
        plan_name=plan_name,
    )


def catalog_entry_from_row(
    *,
    plan_name: str,
    trading_account_limit: Optional[int],
    trading_strategy_limit: Optional[int],
    notes_access: Optional[bool],
    analytics_other_access: Optional[bool],
    profile_access: Optional[bool],
) -> Optional[PlanCatalogEntry]:
    """
    Build a catalog entry from a subscription_plans row.

    Returns None for plans whose name maps to no tier. Null limits fail
    closed to zero; -1 means unlimited.
    """
    tier = PlanTier.from_plan_name(plan_name)
    if tier is None:
        logger.warning("Skipping plan with unrecognized name", extra={"plan_name": plan_name})
        return None
    return PlanCatalogEntry(
        plan_tier=tier,
        trading_account_limit=0 if trading_account_limit is None else trading_account_limit,
        strategy_limit=0 if trading_strategy_limit is None else trading_strategy_limit,
        notes_access=notes_access,
        analytics_full_access=analytics_other_access,
        profile_access=profile_access,
        plan_name=plan_name,
    )
