"""
Access gates: thin reads of one DecisionSnapshot.

Every gate answers PENDING when no decision is available yet (uninitialized,
first load in flight, or first load failed) so callers can show a loading
state instead of guessing. While a refresh is loading or has failed, gates
keep answering from the last known decision.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

from .loader import DEFAULT_BLOCKED_ROUTE_ALLOWLIST
from .models import (
    UNBOUNDED,
    EntitlementDecision,
    FeatureKey,
    PlanTier,
    ResourceKind,
    RouteRequirement,
    UserIdentity,
    UserRole,
)
from .session import DecisionSnapshot, EntitlementSession

logger = logging.getLogger(__name__)


class RouteOutcome(str, Enum):
    ALLOW = "allow"
    REDIRECT_TO_AUTH = "redirectToAuth"
    REDIRECT_TO_HOME = "redirectToHome"
    RENDER_WITH_BLOCKING_OVERLAY = "renderWithBlockingOverlay"
    PENDING = "pending"

    @property
    def redirects(self) -> bool:
        return self in (RouteOutcome.REDIRECT_TO_AUTH, RouteOutcome.REDIRECT_TO_HOME)


class FeatureOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PENDING = "pending"


@dataclass(frozen=True)
class LimitOutcome:
    """Result of a creation check; UX only, the server enforces the real limit."""

    pending: bool
    can_create: bool
    remaining: Optional[int] = UNBOUNDED
    limit: Optional[int] = UNBOUNDED

    @classmethod
    def pending_outcome(cls) -> "LimitOutcome":
        return cls(pending=True, can_create=False, remaining=None, limit=None)

    def to_dict(self) -> dict:
        return {
            "pending": self.pending,
            "can_create": self.can_create,
            "remaining": self.remaining,
            "limit": self.limit,
            "unlimited": not self.pending and self.limit is UNBOUNDED,
        }


def is_allowlisted(path: str, allowlist: Iterable[str] = DEFAULT_BLOCKED_ROUTE_ALLOWLIST) -> bool:
    """True when path starts with one of the prefixes reachable while access is blocked."""
    return any(path.startswith(prefix) for prefix in allowlist)


def _satisfies_role(
    requirement: RouteRequirement,
    identity: Optional[UserIdentity],
    decision: EntitlementDecision,
) -> bool:
    if requirement in (RouteRequirement.NONE, RouteRequirement.AUTHENTICATED):
        return True

    # The Admin plan tier carries the admin role with it.
    if decision.plan_tier is PlanTier.ADMIN:
        return True
    role = identity.role if identity else UserRole.USER

    if requirement is RouteRequirement.ADMIN:
        return role is UserRole.ADMIN
    return role in (UserRole.ADMIN, UserRole.MANAGER)


def evaluate_route(
    snapshot: DecisionSnapshot,
    requirement: Union[RouteRequirement, str],
    path: str,
    allowlist: Sequence[str] = DEFAULT_BLOCKED_ROUTE_ALLOWLIST,
) -> RouteOutcome:
    """
    Route guard.

    Order:
    1. No requirement: allow
    2. Signed out: redirect to auth
    3. No decision yet: pending
    4. Blocked but allow-listed path: allow, whatever the requirement
    5. Role requirement not met: redirect home
    6. Blocked: render underneath the blocking overlay
    """
    requirement = RouteRequirement(requirement)
    if requirement is RouteRequirement.NONE:
        return RouteOutcome.ALLOW
    if snapshot.signed_out:
        return RouteOutcome.REDIRECT_TO_AUTH

    decision = snapshot.decision
    if decision is None:
        return RouteOutcome.PENDING

    if decision.access_blocked and is_allowlisted(path, allowlist):
        return RouteOutcome.ALLOW
    if not _satisfies_role(requirement, snapshot.identity, decision):
        return RouteOutcome.REDIRECT_TO_HOME
    if decision.access_blocked:
        return RouteOutcome.RENDER_WITH_BLOCKING_OVERLAY
    return RouteOutcome.ALLOW


def evaluate_feature(snapshot: DecisionSnapshot, feature_key: Union[FeatureKey, str]) -> FeatureOutcome:
    """Feature gate. Denied means "show an upgrade prompt"; the gate never navigates."""
    feature_key = FeatureKey(feature_key)
    decision = snapshot.decision
    if decision is None:
        return FeatureOutcome.PENDING
    return FeatureOutcome.GRANTED if decision.has_feature(feature_key) else FeatureOutcome.DENIED


def evaluate_resource_limit(
    snapshot: DecisionSnapshot,
    kind: Union[ResourceKind, str],
    current_count: int,
) -> LimitOutcome:
    """
    Resource limit gate, evaluated against the count the caller just read.

    remaining is recomputed from current_count rather than taken from the
    decision, whose counts may predate the latest creation.
    """
    kind = ResourceKind(kind)
    if isinstance(current_count, bool) or current_count < 0:
        raise ValueError("current_count must be a non-negative integer")

    decision = snapshot.decision
    if decision is None:
        return LimitOutcome.pending_outcome()

    limit = decision.limit_for(kind)
    if limit is UNBOUNDED:
        return LimitOutcome(pending=False, can_create=True, remaining=UNBOUNDED, limit=UNBOUNDED)
    remaining = max(0, limit - current_count)
    return LimitOutcome(pending=False, can_create=current_count < limit, remaining=remaining, limit=limit)


class AccessGates:
    """All three gates bound to one session, so every check reads the same decision."""

    def __init__(
        self,
        session: EntitlementSession,
        allowlist: Sequence[str] = DEFAULT_BLOCKED_ROUTE_ALLOWLIST,
    ):
        self.session = session
        self.allowlist = tuple(allowlist)

    def evaluate_route(self, requirement: Union[RouteRequirement, str], path: str) -> RouteOutcome:
        outcome = evaluate_route(self.session.get_current_decision(), requirement, path, self.allowlist)
        if outcome.redirects:
            logger.debug(
                "Route redirected",
                extra={"path": path, "requirement": RouteRequirement(requirement).value, "outcome": outcome.value},
            )
        return outcome

    def evaluate_feature(self, feature_key: Union[FeatureKey, str]) -> FeatureOutcome:
        return evaluate_feature(self.session.get_current_decision(), feature_key)

    def evaluate_resource_limit(self, kind: Union[ResourceKind, str], current_count: int) -> LimitOutcome:
        return evaluate_resource_limit(self.session.get_current_decision(), kind, current_count)
