"""
Subscription record source backed by the Supabase PostgREST API.

Reads:
- user_subscriptions_new (joined with subscription_plans for the plan name)
- subscription_plans (active plans only)
- accounts / strategies row counts via Prefer: count=exact

SECURITY:
- The service role key bypasses row level security; it is read from the
  environment and never logged
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..errors import SourceUnavailableError
from ..models import PlanCatalogEntry, ResourceCounts, SubscriptionRecord
from .base import (
    ResourceCountSource,
    SubscriptionRecordSource,
    catalog_entry_from_row,
    record_from_row,
)

logger = logging.getLogger(__name__)

SOURCE_NAME = "supabase"
SUBSCRIPTIONS_TABLE = "user_subscriptions_new"
PLANS_TABLE = "subscription_plans"
ACCOUNTS_TABLE = "accounts"
STRATEGIES_TABLE = "strategies"


@dataclass
class SupabaseConfig:
    """Supabase configuration from environment."""
    url: str
    service_key: str
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> Optional["SupabaseConfig"]:
        """Load configuration from environment variables."""
        url = os.getenv("SUPABASE_URL")
        service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

        if not url or not service_key:
            logger.warning(
                "Supabase credentials not fully configured",
                extra={
                    "has_url": bool(url),
                    "has_service_key": bool(service_key),
                }
            )
            return None

        return cls(
            url=url.rstrip("/"),
            service_key=service_key,
            timeout_seconds=float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "10")),
        )


class PlanNameRow(BaseModel):
    name: Optional[str] = None


class SubscriptionRow(BaseModel):
    """Row of user_subscriptions_new with the embedded plan name."""
    subscription_id: str
    user_id: str
    plan_id: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    subscription_plans: Optional[PlanNameRow] = None


class PlanRow(BaseModel):
    """Row of subscription_plans."""
    plan_id: str
    name: str
    notes_access: Optional[bool] = None
    analytics_other_access: Optional[bool] = None
    profile_access: Optional[bool] = None
    trading_account_limit: Optional[int] = None
    trading_strategy_limit: Optional[int] = None
    is_active: Optional[bool] = None


def parse_content_range_total(header: Optional[str]) -> int:
    """Total from a PostgREST Content-Range header ("0-9/42" or "*/0")."""
    if not header or "/" not in header:
        raise ValueError(f"missing or malformed Content-Range header: {header!r}")
    total = header.rsplit("/", 1)[1].strip()
    if total == "*":
        raise ValueError("Content-Range total not provided; was Prefer: count=exact sent?")
    return int(total)


class PostgrestSubscriptionSource(SubscriptionRecordSource, ResourceCountSource):
    """
    Reads subscription state over PostgREST.

    Every transport, status and payload failure surfaces as SourceUnavailableError.
    """

    def __init__(self, config: SupabaseConfig, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize source with Supabase configuration.

        Args:
            config: SupabaseConfig with project URL and service key
            client: Optional preconfigured AsyncClient (tests inject a MockTransport)
        """
        self.config = config
        self._http_client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.config.service_key,
            "Authorization": f"Bearer {self.config.service_key}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _get(
        self,
        table: str,
        params: Dict[str, str],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.config.url}/rest/v1/{table}"
        try:
            response = await self._http_client.get(url, params=params, headers=self._headers(headers))
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.error(
                "PostgREST request failed",
                extra={"table": table, "status_code": e.response.status_code}
            )
            raise SourceUnavailableError(SOURCE_NAME, f"{table} returned {e.response.status_code}", e) from e
        except httpx.HTTPError as e:
            logger.error("PostgREST request error", extra={"table": table, "error": str(e)})
            raise SourceUnavailableError(SOURCE_NAME, f"{table} request failed: {e}", e) from e

    async def fetch_subscription_records(self, user_id: str) -> List[SubscriptionRecord]:
        response = await self._get(
            SUBSCRIPTIONS_TABLE,
            params={
                "select": "subscription_id,user_id,plan_id,status,start_date,end_date,created_at,"
                          "subscription_plans(name)",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
            },
        )
        try:
            rows = [SubscriptionRow.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            raise SourceUnavailableError(SOURCE_NAME, f"malformed {SUBSCRIPTIONS_TABLE} payload", e) from e

        return [
            record_from_row(
                user_id=row.user_id,
                plan_name=row.subscription_plans.name if row.subscription_plans else None,
                status=row.status,
                start_date=row.start_date,
                end_date=row.end_date,
                created_at=row.created_at,
            )
            for row in rows
        ]

    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        response = await self._get(
            PLANS_TABLE,
            params={"select": "*", "is_active": "eq.true"},
        )
        try:
            rows = [PlanRow.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            raise SourceUnavailableError(SOURCE_NAME, f"malformed {PLANS_TABLE} payload", e) from e

        catalog: List[PlanCatalogEntry] = []
        for row in rows:
            if row.is_active is False:
                continue
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

    async def _count(self, table: str, user_id: str) -> int:
        response = await self._get(
            table,
            params={"select": "user_id", "user_id": f"eq.{user_id}"},
            headers={"Prefer": "count=exact", "Range-Unit": "items", "Range": "0-0"},
        )
        try:
            return parse_content_range_total(response.headers.get("content-range"))
        except ValueError as e:
            raise SourceUnavailableError(SOURCE_NAME, f"{table} count unavailable", e) from e

    async def fetch_resource_counts(self, user_id: str) -> ResourceCounts:
        return ResourceCounts(
            accounts_count=await self._count(ACCOUNTS_TABLE, user_id),
            strategies_count=await self._count(STRATEGIES_TABLE, user_id),
        )

    async def aclose(self) -> None:
        await self._http_client.aclose()
