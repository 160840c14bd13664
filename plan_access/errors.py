"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- SourceUnavailableError: subscription/catalog/count fetch failed
- FeatureDeniedError: feature not entitled

Codes for conditions that are logged but never raised (no subscription row,
unknown plan tier, discarded stale responses) live here as well so log
consumers can match on them.
"""

from typing import Optional

SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
NO_SUBSCRIPTION_RECORD = "NO_SUBSCRIPTION_RECORD"
UNKNOWN_PLAN_TIER = "UNKNOWN_PLAN_TIER"
STALE_RESPONSE_DISCARDED = "STALE_RESPONSE_DISCARDED"
FEATURE_DENIED = "FEATURE_DENIED"
ENTITLEMENTS_PENDING = "ENTITLEMENTS_PENDING"


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SourceUnavailableError(EntitlementError):
    """
    Raised by a record source when the backend cannot be reached or answers
    with something unusable.

    The session recovers from it by serving the last known decision.
    """

    def __init__(
        self,
        source: str,
        detail: str,
        cause: Optional[Exception] = None,
    ):
        self.source = source
        self.detail = detail
        self.cause = cause
        self.error_code = SOURCE_UNAVAILABLE
        super().__init__(f"{source} unavailable: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "source": self.source,
            "message": self.detail,
        }


class FeatureDeniedError(EntitlementError):
    """Raised when a feature is not part of the user's resolved entitlements."""

    def __init__(self, user_id: str, feature_key: str, plan_name: Optional[str] = None):
        self.user_id = user_id
        self.feature_key = feature_key
        self.plan_name = plan_name
        self.error_code = FEATURE_DENIED
        super().__init__(f"Feature {feature_key} is not included in plan {plan_name or 'unknown'}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "feature_key": self.feature_key,
            "plan_name": self.plan_name,
            "message": "This feature requires a higher plan",
        }
