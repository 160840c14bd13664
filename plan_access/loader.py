from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Tuple

from .models import FeatureKey, PlanCatalogEntry, PlanTier, ResourceKind

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "access.json"
CONFIG_PATH_ENV = "PLAN_ACCESS_CONFIG"

DEFAULT_FRESHNESS_SECONDS = 300
DEFAULT_FALLBACK_TRIAL_DAYS = 7
DEFAULT_BLOCKED_ROUTE_ALLOWLIST: Tuple[str, ...] = (
    "/profile",
    "/subscription",
    "/checkout",
    "/payment",
    "/community",
    "/shared",
    "/traders",
)


@dataclass(frozen=True)
class AccessPolicy:
    """Parsed access configuration."""

    freshness_seconds: int = DEFAULT_FRESHNESS_SECONDS
    fallback_trial_days: int = DEFAULT_FALLBACK_TRIAL_DAYS
    blocked_route_allowlist: Tuple[str, ...] = DEFAULT_BLOCKED_ROUTE_ALLOWLIST
    catalog: Tuple[PlanCatalogEntry, ...] = ()

    def __post_init__(self) -> None:
        if self.freshness_seconds <= 0:
            raise ValueError("freshness_seconds must be positive")
        if self.fallback_trial_days < 0:
            raise ValueError("fallback_trial_days cannot be negative")
        object.__setattr__(self, "blocked_route_allowlist", tuple(self.blocked_route_allowlist))
        object.__setattr__(self, "catalog", tuple(self.catalog))


class AccessPolicyLoader:
    """Loads access policy and the static plan catalog from config/access.json with reload support."""

    def __init__(self, config_path: Optional[str] = None) -> None:
        self._config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        self._lock = RLock()
        self._policy: AccessPolicy
        self.reload()

    @property
    def policy(self) -> AccessPolicy:
        with self._lock:
            return self._policy

    def reload(self) -> None:
        """Reload config from disk; the previous policy stays in place if parsing fails."""
        raw = self._read_config_file()
        parsed = self._parse_config(raw)
        with self._lock:
            self._policy = parsed

    def _read_config_file(self) -> dict:
        with self._config_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError("access config must contain a top-level object")
        return raw

    @staticmethod
    def _parse_config(raw: dict) -> AccessPolicy:
        freshness = raw.get("freshness_seconds", DEFAULT_FRESHNESS_SECONDS)
        trial_days = raw.get("fallback_trial_days", DEFAULT_FALLBACK_TRIAL_DAYS)
        if isinstance(freshness, bool) or not isinstance(freshness, int):
            raise ValueError("freshness_seconds must be an integer")
        if isinstance(trial_days, bool) or not isinstance(trial_days, int):
            raise ValueError("fallback_trial_days must be an integer")

        allowlist_raw = raw.get("blocked_route_allowlist", list(DEFAULT_BLOCKED_ROUTE_ALLOWLIST))
        if not isinstance(allowlist_raw, list):
            raise ValueError("blocked_route_allowlist must be a list of path prefixes")
        allowlist: List[str] = []
        for prefix in allowlist_raw:
            if not isinstance(prefix, str) or not prefix.strip().startswith("/"):
                raise ValueError(f"invalid allow-list prefix: {prefix!r}")
            allowlist.append(prefix.strip())

        plans_raw = raw.get("plans", {})
        if not isinstance(plans_raw, dict):
            raise ValueError("plans must be an object keyed by plan name")

        catalog: List[PlanCatalogEntry] = []
        seen: Dict[PlanTier, str] = {}
        for plan_name, plan_data in plans_raw.items():
            if not isinstance(plan_name, str) or not plan_name.strip():
                raise ValueError("each plan name must be a non-empty string")
            if not isinstance(plan_data, dict):
                raise ValueError(f"plan '{plan_name}' must be an object")

            tier_raw = plan_data.get("tier")
            tier = PlanTier.from_plan_name(tier_raw if tier_raw is not None else plan_name)
            if tier is None:
                raise ValueError(f"plan '{plan_name}' does not map to a known tier")
            if tier in seen:
                raise ValueError(f"plans '{seen[tier]}' and '{plan_name}' both map to tier {tier.value}")
            seen[tier] = plan_name

            limits = plan_data.get("limits", {})
            if not isinstance(limits, dict):
                raise ValueError(f"plan '{plan_name}' limits must be an object")
            unknown_limits = set(limits) - {kind.value for kind in ResourceKind}
            if unknown_limits:
                raise ValueError(f"plan '{plan_name}' has unknown limit keys: {sorted(unknown_limits)}")

            features = plan_data.get("features", {})
            if not isinstance(features, dict):
                raise ValueError(f"plan '{plan_name}' features must be an object")
            flags: Dict[FeatureKey, bool] = {}
            for feature_key, enabled in features.items():
                try:
                    key = FeatureKey(feature_key)
                except ValueError:
                    raise ValueError(f"plan '{plan_name}' has unknown feature key: {feature_key!r}") from None
                if not isinstance(enabled, bool):
                    raise ValueError(f"plan '{plan_name}' feature '{feature_key}' must be true or false")
                flags[key] = enabled

            # Missing limits fail closed to zero.
            catalog.append(
                PlanCatalogEntry(
                    plan_tier=tier,
                    trading_account_limit=limits.get(ResourceKind.ACCOUNTS.value, 0),
                    strategy_limit=limits.get(ResourceKind.STRATEGIES.value, 0),
                    notes_access=flags.get(FeatureKey.NOTES),
                    analytics_full_access=flags.get(FeatureKey.ANALYTICS_FULL),
                    profile_access=flags.get(FeatureKey.PROFILE),
                    plan_name=plan_name.strip(),
                )
            )

        return AccessPolicy(
            freshness_seconds=freshness,
            fallback_trial_days=trial_days,
            blocked_route_allowlist=tuple(allowlist),
            catalog=tuple(catalog),
        )
