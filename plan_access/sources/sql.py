"""
Subscription record source reading the application database directly.

Mirrors the tables the PostgREST source reads, for workers and services that
hold a database connection instead of an API key. Queries run on a worker
thread so the session's event loop is never blocked.
"""

import asyncio
import logging
from typing import Callable, List

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship

from ..errors import SourceUnavailableError
from ..models import PlanCatalogEntry, ResourceCounts, SubscriptionRecord
from .base import (
    ResourceCountSource,
    SubscriptionRecordSource,
    catalog_entry_from_row,
    record_from_row,
)

logger = logging.getLogger(__name__)

SOURCE_NAME = "database"

Base = declarative_base()


class SubscriptionPlanRow(Base):
    """Plan definition (limits and feature flags)."""

    __tablename__ = "subscription_plans"

    plan_id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    notes_access = Column(Boolean, nullable=True)
    analytics_overview_access = Column(Boolean, nullable=True)
    analytics_other_access = Column(Boolean, nullable=True)
    profile_access = Column(Boolean, nullable=True)
    trading_account_limit = Column(Integer, nullable=True)
    trading_strategy_limit = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=True, default=True)


class UserSubscriptionRow(Base):
    """One subscription row per purchase/trial; history is kept."""

    __tablename__ = "user_subscriptions_new"

    subscription_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    plan_id = Column(String(255), ForeignKey("subscription_plans.plan_id"), nullable=False)
    status = Column(String(50), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)

    plan = relationship(SubscriptionPlanRow, lazy="joined")


class AccountRow(Base):
    __tablename__ = "accounts"

    account_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=True, index=True)


class StrategyRow(Base):
    __tablename__ = "strategies"

    strategy_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=True, index=True)


class SqlSubscriptionSource(SubscriptionRecordSource, ResourceCountSource):
    """Reads subscription state through a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            logger.error(
                "Database read failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise SourceUnavailableError(SOURCE_NAME, f"{operation} failed", e) from e

    def _load_records(self, user_id: str) -> List[SubscriptionRecord]:
        with self._session_factory() as session:
            rows = session.execute(
                select(UserSubscriptionRow)
                .where(UserSubscriptionRow.user_id == user_id)
                .order_by(UserSubscriptionRow.created_at.desc())
            ).scalars().all()
            return [
                record_from_row(
                    user_id=row.user_id,
                    plan_name=row.plan.name if row.plan else None,
                    status=row.status,
                    start_date=row.start_date,
                    end_date=row.end_date,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def _load_catalog(self) -> List[PlanCatalogEntry]:
        with self._session_factory() as session:
            rows = session.execute(
                select(SubscriptionPlanRow).where(SubscriptionPlanRow.is_active.isnot(False))
            ).scalars().all()
            catalog = []
            for row in rows:
                entry = catalog_entry_from_row(
                    plan_name=row.name,
                    trading_account_limit=row.trading_account_limit,
                    trading_strategy_limit=row.trading_strategy_limit,
                    notes_access=row.notes_access,
                    analytics_other_access=row.analytics_other_access,
                    profile_access=row.profile_access,
                )
                if entry is not None:
                    catalog.append(entry)
            return catalog

    def _load_counts(self, user_id: str) -> ResourceCounts:
        with self._session_factory() as session:
            accounts = session.execute(
                select(func.count()).select_from(AccountRow).where(AccountRow.user_id == user_id)
            ).scalar_one()
            strategies = session.execute(
                select(func.count()).select_from(StrategyRow).where(StrategyRow.user_id == user_id)
            ).scalar_one()
            return ResourceCounts(accounts_count=accounts, strategies_count=strategies)

    async def fetch_subscription_records(self, user_id: str) -> List[SubscriptionRecord]:
        return await self._run("load subscription records", self._load_records, user_id)

    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        return await self._run("load plan catalog", self._load_catalog)

    async def fetch_resource_counts(self, user_id: str) -> ResourceCounts:
        return await self._run("load resource counts", self._load_counts, user_id)
