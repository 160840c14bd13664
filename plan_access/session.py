"""
Entitlement session: owns "the current decision" for one authenticated user.

State machine:
    UNINITIALIZED -> LOADING -> READY -> LOADING (refresh) -> READY
                        \\-> ERROR (previous READY decision is kept)

- One in-flight fetch at a time; refresh requests arriving meanwhile share it
- Reads never block; a decision older than the freshness window schedules a
  background refresh and is served as-is until the refresh lands
- A failed first load is retried by the next read once the retry window has
  passed since the failure
- Logout bumps a generation counter so a response that arrives for a user
  context that is no longer current is dropped instead of applied
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from . import alerts
from .errors import SOURCE_UNAVAILABLE, EntitlementError, SourceUnavailableError
from .loader import DEFAULT_FRESHNESS_SECONDS, AccessPolicy
from .models import EntitlementDecision, UserIdentity
from .resolver import DEFAULT_TRIAL_DAYS, resolve
from .sources.base import ResourceCountSource, SubscriptionRecordSource

logger = logging.getLogger(__name__)

DEGRADED_MESSAGE = "couldn't verify your plan, showing last known status"

DEFAULT_RETRY_SECONDS = 30
DEFAULT_IDLE_TTL_SECONDS = 3600

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class ErrorInfo:
    """Last fetch failure, surfaced next to the (possibly stale) decision."""

    code: str
    message: str
    occurred_at: datetime

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass(frozen=True)
class DecisionSnapshot:
    """What a reader sees at one instant: state, decision and error, never a raw exception."""

    state: CacheState
    user_id: Optional[str] = None
    identity: Optional[UserIdentity] = None
    decision: Optional[EntitlementDecision] = None
    error: Optional[ErrorInfo] = None
    is_stale: bool = False
    signed_out: bool = False

    @property
    def is_degraded(self) -> bool:
        # Still degraded while a retry is loading; only a successful load clears error.
        return self.error is not None and self.decision is not None

    @property
    def status_message(self) -> Optional[str]:
        return DEGRADED_MESSAGE if self.is_degraded else None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "user_id": self.user_id,
            "role": self.identity.role.value if self.identity else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "error": self.error.to_dict() if self.error else None,
            "is_stale": self.is_stale,
            "is_degraded": self.is_degraded,
            "signed_out": self.signed_out,
            "status_message": self.status_message,
        }


class EntitlementSession:
    """
    Decision holder for one user context.

    Must be driven from a running event loop: login(), refresh() and
    invalidate() schedule the fetch as a task and return it.
    """

    def __init__(
        self,
        source: SubscriptionRecordSource,
        counts_source: Optional[ResourceCountSource] = None,
        *,
        freshness_seconds: int = DEFAULT_FRESHNESS_SECONDS,
        trial_days: int = DEFAULT_TRIAL_DAYS,
        retry_seconds: int = DEFAULT_RETRY_SECONDS,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            source: Subscription rows and plan catalog
            counts_source: Resource usage; defaults to source when it also counts
            freshness_seconds: Age after which a read schedules a background refresh
            trial_days: Length of the provisioning fallback trial
            retry_seconds: Time after a failed first load before a read retries it
            clock: Returns the current timezone-aware time (tests inject a fixed clock)
        """
        if counts_source is None:
            if not isinstance(source, ResourceCountSource):
                raise TypeError("counts_source is required when source does not provide resource counts")
            counts_source = source
        if freshness_seconds <= 0:
            raise ValueError("freshness_seconds must be positive")
        if retry_seconds < 0:
            raise ValueError("retry_seconds must not be negative")

        self._source = source
        self._counts_source = counts_source
        self._freshness = timedelta(seconds=freshness_seconds)
        self._retry_after = timedelta(seconds=retry_seconds)
        self._trial_days = trial_days
        self._clock = clock or _utcnow

        self._state = CacheState.UNINITIALIZED
        self._identity: Optional[UserIdentity] = None
        self._decision: Optional[EntitlementDecision] = None
        self._error: Optional[ErrorInfo] = None
        self._signed_out = False
        self._generation = 0
        self._inflight: Optional[asyncio.Task] = None

    @classmethod
    def from_policy(
        cls,
        source: SubscriptionRecordSource,
        policy: AccessPolicy,
        counts_source: Optional[ResourceCountSource] = None,
        clock: Optional[Clock] = None,
    ) -> "EntitlementSession":
        return cls(
            source,
            counts_source,
            freshness_seconds=policy.freshness_seconds,
            trial_days=policy.fallback_trial_days,
            clock=clock,
        )

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def identity(self) -> Optional[UserIdentity]:
        return self._identity

    @property
    def decision(self) -> Optional[EntitlementDecision]:
        return self._decision

    @property
    def is_loading(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def login(self, identity: UserIdentity) -> asyncio.Task:
        """Bind the session to a user and start loading their decision."""
        if self._identity is not None and self._identity.user_id != identity.user_id:
            logger.info(
                "Session switching user; dropping previous decision",
                extra={"user_id": identity.user_id, "previous_user_id": self._identity.user_id},
            )
            self._reset()
        self._identity = identity
        self._signed_out = False
        return self.refresh()

    def logout(self) -> None:
        """Tear down the user context; any in-flight response is discarded on arrival."""
        if self._identity is not None:
            logger.info("Session logged out", extra={"user_id": self._identity.user_id})
        self._reset()
        self._signed_out = True

    def _reset(self) -> None:
        self._generation += 1
        self._identity = None
        self._decision = None
        self._error = None
        self._inflight = None
        self._state = CacheState.UNINITIALIZED

    def invalidate(self) -> Optional[asyncio.Task]:
        """Force a refresh outside the freshness window (checkout, plan change, ban/unban)."""
        if self._identity is None:
            return None
        logger.debug("Entitlements invalidated", extra={"user_id": self._identity.user_id})
        return self.refresh()

    def refresh(self) -> asyncio.Task:
        """Start a fetch, or return the one already in flight."""
        if self._identity is None:
            raise EntitlementError("cannot refresh entitlements without a logged-in user")
        if self.is_loading:
            return self._inflight

        user_id = self._identity.user_id
        self._state = CacheState.LOADING
        self._inflight = asyncio.get_running_loop().create_task(
            self._load(user_id, self._generation)
        )
        return self._inflight

    async def wait_ready(self) -> DecisionSnapshot:
        """Wait for the in-flight fetch, if any, and return the resulting snapshot."""
        task = self._inflight
        if task is not None and not task.done():
            # Shielded so a cancelled waiter does not cancel the shared fetch.
            await asyncio.shield(task)
        return self.snapshot()

    def get_current_decision(self) -> DecisionSnapshot:
        """
        Non-blocking read; schedules a background refresh when the decision is
        stale, or when the first load failed and the retry window has passed.
        """
        if self._should_refresh():
            try:
                self.refresh()
            except RuntimeError:
                logger.debug(
                    "No running event loop; snapshot served without refresh",
                    extra={"user_id": self._identity.user_id},
                )
        return self.snapshot()

    def snapshot(self) -> DecisionSnapshot:
        return DecisionSnapshot(
            state=self._state,
            user_id=self._identity.user_id if self._identity else None,
            identity=self._identity,
            decision=self._decision,
            error=self._error,
            is_stale=self._is_stale(),
            signed_out=self._signed_out,
        )

    def _is_stale(self) -> bool:
        if self._decision is None:
            return False
        return self._clock() - self._decision.resolved_at >= self._freshness

    def _retry_due(self) -> bool:
        if self._decision is not None or self._state is not CacheState.ERROR or self._error is None:
            return False
        return self._clock() - self._error.occurred_at >= self._retry_after

    def _should_refresh(self) -> bool:
        if self._identity is None or self.is_loading:
            return False
        return self._is_stale() or self._retry_due()

    def _is_current(self, generation: int, user_id: str) -> bool:
        return (
            generation == self._generation
            and self._identity is not None
            and self._identity.user_id == user_id
        )

    async def _load(self, user_id: str, generation: int) -> Optional[EntitlementDecision]:
        try:
            record, catalog, counts = await asyncio.gather(
                self._source.fetch_current_subscription(user_id),
                self._source.fetch_plan_catalog(),
                self._counts_source.fetch_resource_counts(user_id),
            )
            if not self._is_current(generation, user_id):
                self._discard(user_id)
                return None
            decision = resolve(
                record,
                catalog,
                counts,
                self._clock(),
                trial_days=self._trial_days,
                user_id=user_id,
            )
        except SourceUnavailableError as e:
            return self._fail(user_id, generation, e.error_code, e.message)
        except Exception as e:
            logger.exception("Unexpected failure loading entitlements", extra={"user_id": user_id})
            return self._fail(user_id, generation, SOURCE_UNAVAILABLE, str(e))

        self._decision = decision
        self._error = None
        self._state = CacheState.READY
        logger.debug(
            "Entitlements resolved",
            extra={
                "user_id": user_id,
                "plan_tier": decision.plan_tier.value,
                "status": decision.status.value,
                "access_blocked": decision.access_blocked,
            },
        )
        return decision

    def _fail(self, user_id: str, generation: int, code: str, message: str) -> None:
        if not self._is_current(generation, user_id):
            self._discard(user_id)
            return None
        alerts.record_source_failure(user_id, message, has_decision=self._decision is not None)
        self._error = ErrorInfo(code=code, message=message, occurred_at=self._clock())
        self._state = CacheState.ERROR
        return None

    def _discard(self, user_id: str) -> None:
        current = self._identity.user_id if self._identity else None
        alerts.emit_stale_response_discarded(user_id, current)


class SessionRegistry:
    """
    One EntitlementSession per user id, for hosts that serve many users
    (the HTTP surface). Sessions are created on first use and torn down by end(),
    or evicted once idle for longer than idle_ttl_seconds.
    """

    def __init__(
        self,
        source: SubscriptionRecordSource,
        counts_source: Optional[ResourceCountSource] = None,
        *,
        policy: Optional[AccessPolicy] = None,
        idle_ttl_seconds: int = DEFAULT_IDLE_TTL_SECONDS,
        clock: Optional[Clock] = None,
    ):
        if idle_ttl_seconds <= 0:
            raise ValueError("idle_ttl_seconds must be positive")
        self._source = source
        self._counts_source = counts_source
        self._policy = policy or AccessPolicy()
        self._idle_ttl = timedelta(seconds=idle_ttl_seconds)
        self._clock = clock
        self._sessions: Dict[str, EntitlementSession] = {}
        self._last_seen: Dict[str, datetime] = {}

    @property
    def policy(self) -> AccessPolicy:
        return self._policy

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: str) -> Optional[EntitlementSession]:
        return self._sessions.get(user_id)

    def session_for(self, identity: UserIdentity) -> EntitlementSession:
        """Return the user's session, logging it in on first use or after a role change."""
        now = self._now()
        self.evict_idle(now)
        self._last_seen[identity.user_id] = now

        session = self._sessions.get(identity.user_id)
        if session is None:
            session = EntitlementSession.from_policy(
                self._source, self._policy, self._counts_source, clock=self._clock
            )
            self._sessions[identity.user_id] = session
            session.login(identity)
        elif session.identity != identity:
            session.login(identity)
        return session

    def end(self, user_id: str) -> bool:
        self._last_seen.pop(user_id, None)
        session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        session.logout()
        return True

    def evict_idle(self, now: Optional[datetime] = None) -> int:
        """Log out and drop sessions not used within the idle TTL. Returns how many were evicted."""
        now = now or self._now()
        idle = [user_id for user_id, seen in self._last_seen.items() if now - seen >= self._idle_ttl]
        for user_id in idle:
            self.end(user_id)
        if idle:
            logger.info(
                "Evicted idle entitlement sessions",
                extra={"evicted": len(idle), "remaining": len(self._sessions)},
            )
        return len(idle)

    def _now(self) -> datetime:
        return (self._clock or _utcnow)()
