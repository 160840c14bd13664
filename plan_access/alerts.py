"""
Operational signals for the entitlement engine: degraded resolution paths,
data-integrity warnings and repeated source failures.
"""

import logging
import time
from collections import defaultdict
from typing import Optional

from .errors import (
    NO_SUBSCRIPTION_RECORD,
    SOURCE_UNAVAILABLE,
    STALE_RESPONSE_DISCARDED,
    UNKNOWN_PLAN_TIER,
)

logger = logging.getLogger(__name__)

# In-memory sliding window of source failures per user; replace with metrics backend if needed
_failure_times: defaultdict[str, list] = defaultdict(list)
SOURCE_FAILURE_THRESHOLD_PER_MIN = 5


def emit_provisioning_fallback(user_id: Optional[str], trial_days: int) -> None:
    """No subscription row yet: the user gets the fallback trial."""
    logger.warning(
        "No subscription record found; serving fallback free trial",
        extra={
            "user_id": user_id,
            "trial_days": trial_days,
            "error_code": NO_SUBSCRIPTION_RECORD,
        },
    )


def emit_unknown_plan_tier(plan_tier: str, user_id: Optional[str] = None) -> None:
    """Catalog has no entry for a tier present in a subscription record."""
    logger.warning(
        "Plan catalog has no entry for tier; using most restrictive entitlements",
        extra={
            "user_id": user_id,
            "plan_tier": plan_tier,
            "error_code": UNKNOWN_PLAN_TIER,
        },
    )


def emit_stale_response_discarded(user_id: str, current_user_id: Optional[str]) -> None:
    logger.debug(
        "Discarding entitlement response for a user context that is no longer current",
        extra={
            "user_id": user_id,
            "current_user_id": current_user_id,
            "error_code": STALE_RESPONSE_DISCARDED,
        },
    )


def _record_failure(user_id: str) -> int:
    now = time.time()
    cutoff = now - 60
    recent = [t for t in _failure_times[user_id] if t > cutoff]
    recent.append(now)
    _failure_times[user_id] = recent
    return len(recent)


def record_source_failure(user_id: str, error_message: str, has_decision: bool = True) -> None:
    """Log a fetch failure; alert if one user keeps failing within a minute."""
    if has_decision:
        message = "Entitlement source unavailable; serving last known decision"
    else:
        message = "Entitlement source unavailable; no decision to serve yet"
    logger.error(
        message,
        extra={
            "user_id": user_id,
            "error": error_message,
            "has_decision": has_decision,
            "error_code": SOURCE_UNAVAILABLE,
        },
    )
    count = _record_failure(user_id)
    if count >= SOURCE_FAILURE_THRESHOLD_PER_MIN:
        emit_source_failure_alert(user_id, count)


def emit_source_failure_alert(user_id: str, count: int) -> None:
    """Alert on repeated source failures (>N/min)."""
    logger.warning(
        "Repeated entitlement source failures",
        extra={"user_id": user_id, "count_per_min": count, "error_code": SOURCE_UNAVAILABLE},
    )


def reset_failure_counts() -> None:
    _failure_times.clear()
