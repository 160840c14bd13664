from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from plan_access import alerts
from plan_access.models import (
    PlanCatalogEntry,
    PlanTier,
    ResourceCounts,
    SubscriptionRecord,
    SubscriptionStatus,
)
from plan_access.sources.base import ResourceCountSource, SubscriptionRecordSource
from plan_access.sources.memory import InMemorySubscriptionSource

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_record(
    status: SubscriptionStatus,
    tier: PlanTier = PlanTier.FREE_TRIAL,
    *,
    period_end: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
    user_id: str = "user-1",
    plan_name: Optional[str] = None,
) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=user_id,
        plan_tier=tier,
        status=status,
        period_start=period_start or NOW - timedelta(days=1),
        period_end=period_end,
        created_at=created_at or NOW - timedelta(days=1),
        plan_name=plan_name,
    )


def make_catalog() -> List[PlanCatalogEntry]:
    return [
        PlanCatalogEntry(PlanTier.FREE_TRIAL, 1, 3, profile_access=True, plan_name="Free Trial"),
        PlanCatalogEntry(PlanTier.STARTER, 5, 10, False, False, True, plan_name="Starter Plan"),
        PlanCatalogEntry(PlanTier.PRO, -1, -1, True, True, True, plan_name="Pro Plan"),
        PlanCatalogEntry(PlanTier.ADMIN, "unlimited", "unlimited", plan_name="Admin"),
    ]


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ControlledSource(SubscriptionRecordSource, ResourceCountSource):
    """In-memory source whose fetches can be held open or made to fail."""

    def __init__(self, catalog=None, records=None, counts=None):
        self.inner = InMemorySubscriptionSource(
            catalog if catalog is not None else make_catalog(), records, counts
        )
        self.release = asyncio.Event()
        self.release.set()
        self.fail_with: Optional[Exception] = None
        self.record_calls = 0
        self.catalog_calls = 0
        self.count_calls = 0

    def hold(self) -> None:
        self.release.clear()

    def resume(self) -> None:
        self.release.set()

    async def fetch_subscription_records(self, user_id):
        self.record_calls += 1
        await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return await self.inner.fetch_subscription_records(user_id)

    async def fetch_plan_catalog(self):
        self.catalog_calls += 1
        return await self.inner.fetch_plan_catalog()

    async def fetch_resource_counts(self, user_id):
        self.count_calls += 1
        return await self.inner.fetch_resource_counts(user_id)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def counts():
    return ResourceCounts(accounts_count=0, strategies_count=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_failure_window():
    alerts.reset_failure_counts()
    yield
    alerts.reset_failure_counts()
