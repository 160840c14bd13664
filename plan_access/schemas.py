"""
Response schemas for the access API.

Limits, remaining counts and days left are null when unbounded.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from .gates import FeatureOutcome, LimitOutcome, RouteOutcome
from .session import DecisionSnapshot


# =============================================================================
# Response Models
# =============================================================================

class DecisionResponse(BaseModel):
    """Resolved entitlements for the caller."""

    plan_tier: str
    plan_name: Optional[str] = None
    status: str
    is_active: bool
    is_expired: bool
    access_blocked: bool
    days_left: Optional[int] = Field(None, description="Null when the plan has no end date")
    features: Dict[str, bool]
    limits: Dict[str, Optional[int]]
    remaining: Dict[str, Optional[int]]
    resolved_at: str
    is_provisioning_fallback: bool = False
    substituted_tier: Optional[str] = None


class ErrorInfoResponse(BaseModel):
    code: str
    message: str
    occurred_at: str


class AccessSnapshotResponse(BaseModel):
    """Response for GET /access."""

    state: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    decision: Optional[DecisionResponse] = None
    error: Optional[ErrorInfoResponse] = None
    is_stale: bool = False
    is_degraded: bool = False
    signed_out: bool = False
    status_message: Optional[str] = Field(None, description="Shown to the user when degraded")

    @classmethod
    def from_snapshot(cls, snapshot: DecisionSnapshot) -> "AccessSnapshotResponse":
        return cls.model_validate(snapshot.to_dict())


class RouteCheckResponse(BaseModel):
    path: str
    requirement: str
    outcome: RouteOutcome
    redirects: bool


class FeatureCheckResponse(BaseModel):
    feature_key: str
    outcome: FeatureOutcome


class LimitCheckResponse(BaseModel):
    resource_kind: str
    current_count: int
    pending: bool
    can_create: bool
    remaining: Optional[int] = Field(None, description="Null when unlimited or pending")
    limit: Optional[int] = Field(None, description="Null when unlimited or pending")
    unlimited: bool

    @classmethod
    def from_outcome(cls, resource_kind: str, current_count: int, outcome: LimitOutcome) -> "LimitCheckResponse":
        return cls(resource_kind=resource_kind, current_count=current_count, **outcome.to_dict())
