"""
Plan access: entitlement resolution for the trading journal.

This module provides:
- resolve: pure EntitlementDecision computation from a subscription row,
  the plan catalog and resource counts
- EntitlementSession: per-user decision cache with coalesced refreshes,
  stale-while-revalidate reads and a stale-response guard on logout
- AccessGates: route guard, feature gate and resource limit gate
- AccessPolicyLoader: freshness window, fallback trial length, blocked-route
  allow-list and static plan catalog from config/access.json
- Sources: in-memory, Supabase PostgREST and SQLAlchemy backends

Admin tier is never blocked. Blocked users keep the allow-listed routes
(profile, subscription, checkout, payment, community, shared, traders).
"""

from .errors import EntitlementError, FeatureDeniedError, SourceUnavailableError
from .gates import (
    AccessGates,
    FeatureOutcome,
    LimitOutcome,
    RouteOutcome,
    evaluate_feature,
    evaluate_resource_limit,
    evaluate_route,
    is_allowlisted,
)
from .loader import AccessPolicy, AccessPolicyLoader
from .models import (
    UNBOUNDED,
    EntitlementDecision,
    FeatureKey,
    PlanCatalogEntry,
    PlanTier,
    ResourceCounts,
    ResourceKind,
    RouteRequirement,
    SubscriptionRecord,
    SubscriptionStatus,
    UserIdentity,
    UserRole,
)
from .resolver import resolve, select_current_record
from .session import (
    CacheState,
    DecisionSnapshot,
    EntitlementSession,
    ErrorInfo,
    SessionRegistry,
)

__all__ = [
    # Models
    "UNBOUNDED",
    "EntitlementDecision",
    "FeatureKey",
    "PlanCatalogEntry",
    "PlanTier",
    "ResourceCounts",
    "ResourceKind",
    "RouteRequirement",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "UserIdentity",
    "UserRole",
    # Resolver
    "resolve",
    "select_current_record",
    # Session
    "CacheState",
    "DecisionSnapshot",
    "EntitlementSession",
    "ErrorInfo",
    "SessionRegistry",
    # Gates
    "AccessGates",
    "FeatureOutcome",
    "LimitOutcome",
    "RouteOutcome",
    "evaluate_feature",
    "evaluate_resource_limit",
    "evaluate_route",
    "is_allowlisted",
    # Config
    "AccessPolicy",
    "AccessPolicyLoader",
    # Errors
    "EntitlementError",
    "FeatureDeniedError",
    "SourceUnavailableError",
]
