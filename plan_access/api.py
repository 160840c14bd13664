"""
Access API: the entitlement gates over HTTP.

The caller identity is set on request.state by upstream authentication
middleware (user_id, optional user_role). The SessionRegistry lives on
app.state.session_registry.
"""

import logging
from typing import Callable, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status

from .errors import ENTITLEMENTS_PENDING, FeatureDeniedError
from .gates import AccessGates, FeatureOutcome
from .models import FeatureKey, ResourceKind, RouteRequirement, UserIdentity, UserRole
from .schemas import (
    AccessSnapshotResponse,
    FeatureCheckResponse,
    LimitCheckResponse,
    RouteCheckResponse,
)
from .session import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/access", tags=["access"])


def get_session_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "session_registry", None)
    if registry is None:
        logger.error("Access API mounted without a session registry")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement service not configured",
        )
    return registry


def get_identity(request: Request) -> UserIdentity:
    """Identity from request.state, as set by authentication middleware."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id or not str(user_id).strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    raw_role = getattr(request.state, "user_role", None) or UserRole.USER.value
    try:
        role = UserRole(raw_role)
    except ValueError:
        logger.warning("Unknown user role; treating as user", extra={"user_id": user_id, "role": raw_role})
        role = UserRole.USER
    return UserIdentity(user_id=user_id, role=role)


async def get_access_gates(
    identity: UserIdentity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_session_registry),
) -> AccessGates:
    """
    Gates bound to the caller's session.

    The first request for a user waits for the initial load, or for the retry
    of a failed one; later requests read the cached decision.
    """
    session = registry.session_for(identity)
    session.get_current_decision()
    if session.decision is None and session.is_loading:
        await session.wait_ready()
    return AccessGates(session, registry.policy.blocked_route_allowlist)


def require_feature(feature_key: Union[FeatureKey, str]) -> Callable:
    """
    Dependency that rejects callers without the feature.

    Usage:
        @router.get("/notes", dependencies=[Depends(require_feature("notes"))])

    Answers 402 when the plan lacks the feature and 503 while entitlements
    cannot be determined yet.
    """
    key = FeatureKey(feature_key)

    async def dependency(gates: AccessGates = Depends(get_access_gates)) -> AccessGates:
        outcome = gates.evaluate_feature(key)
        if outcome is FeatureOutcome.PENDING:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": ENTITLEMENTS_PENDING, "message": "Entitlements are still loading"},
            )
        if outcome is FeatureOutcome.DENIED:
            snapshot = gates.session.snapshot()
            error = FeatureDeniedError(
                user_id=snapshot.user_id,
                feature_key=key.value,
                plan_name=snapshot.decision.plan_name if snapshot.decision else None,
            )
            logger.warning(
                "Feature access denied",
                extra={"user_id": error.user_id, "feature": key.value, "plan_name": error.plan_name},
            )
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=error.to_dict())
        return gates

    return dependency


@router.get("", response_model=AccessSnapshotResponse)
async def get_access(gates: AccessGates = Depends(get_access_gates)):
    return AccessSnapshotResponse.from_snapshot(gates.session.get_current_decision())


@router.get("/route", response_model=RouteCheckResponse)
async def check_route(
    path: str = Query(..., description="Client route path, e.g. /subscription/billing"),
    requirement: RouteRequirement = Query(RouteRequirement.AUTHENTICATED, description="Declared route requirement"),
    gates: AccessGates = Depends(get_access_gates),
):
    outcome = gates.evaluate_route(requirement, path)
    return RouteCheckResponse(
        path=path,
        requirement=requirement.value,
        outcome=outcome,
        redirects=outcome.redirects,
    )


@router.get("/features/{feature_key}", response_model=FeatureCheckResponse)
async def check_feature(feature_key: FeatureKey, gates: AccessGates = Depends(get_access_gates)):
    return FeatureCheckResponse(feature_key=feature_key.value, outcome=gates.evaluate_feature(feature_key))


@router.get("/limits/{resource_kind}", response_model=LimitCheckResponse)
async def check_limit(
    resource_kind: ResourceKind,
    current_count: int = Query(..., ge=0, description="Count read immediately before the creation attempt"),
    gates: AccessGates = Depends(get_access_gates),
):
    outcome = gates.evaluate_resource_limit(resource_kind, current_count)
    return LimitCheckResponse.from_outcome(resource_kind.value, current_count, outcome)


@router.post("/invalidate", status_code=status.HTTP_202_ACCEPTED)
async def invalidate_access(
    identity: UserIdentity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Force a refresh (after checkout, plan change or ban/unban)."""
    session = registry.session_for(identity)
    session.invalidate()
    return {"status": "refreshing", "user_id": identity.user_id}


@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def end_session(
    identity: UserIdentity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_session_registry),
):
    registry.end(identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def create_app(registry: SessionRegistry, app: Optional[FastAPI] = None) -> FastAPI:
    """Mount the access router and attach the registry."""
    app = app or FastAPI(title="Plan Access")
    app.state.session_registry = registry
    app.include_router(router)
    return app
