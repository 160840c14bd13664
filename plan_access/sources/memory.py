from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..models import PlanCatalogEntry, ResourceCounts, SubscriptionRecord
from .base import ResourceCountSource, SubscriptionRecordSource


class InMemorySubscriptionSource(SubscriptionRecordSource, ResourceCountSource):
    """Dictionary-backed source for local development and tests."""

    def __init__(
        self,
        catalog: Iterable[PlanCatalogEntry] = (),
        records: Optional[Dict[str, Iterable[SubscriptionRecord]]] = None,
        counts: Optional[Dict[str, ResourceCounts]] = None,
    ) -> None:
        self._catalog: List[PlanCatalogEntry] = list(catalog)
        self._records: Dict[str, List[SubscriptionRecord]] = {
            user_id: list(rows) for user_id, rows in (records or {}).items()
        }
        self._counts: Dict[str, ResourceCounts] = dict(counts or {})

    def add_record(self, record: SubscriptionRecord) -> None:
        self._records.setdefault(record.user_id, []).append(record)

    def set_counts(self, user_id: str, counts: ResourceCounts) -> None:
        self._counts[user_id] = counts

    async def fetch_subscription_records(self, user_id: str) -> List[SubscriptionRecord]:
        return list(self._records.get(user_id, []))

    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        return list(self._catalog)

    async def fetch_resource_counts(self, user_id: str) -> ResourceCounts:
        return self._counts.get(user_id, ResourceCounts())
