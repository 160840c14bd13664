from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest

from conftest import NOW, ControlledSource, FakeClock, make_record
from plan_access import alerts
from plan_access.errors import SOURCE_UNAVAILABLE, STALE_RESPONSE_DISCARDED, EntitlementError, SourceUnavailableError
from plan_access.gates import AccessGates, FeatureOutcome
from plan_access.loader import AccessPolicy
from plan_access.models import FeatureKey, PlanTier, SubscriptionStatus, UserIdentity, UserRole
from plan_access.session import (
    DEGRADED_MESSAGE,
    CacheState,
    EntitlementSession,
    SessionRegistry,
)
from plan_access.sources.base import SubscriptionRecordSource
from plan_access.sources.memory import InMemorySubscriptionSource

ALICE = UserIdentity("alice")
BOB = UserIdentity("bob")


def _pro_records(user_id: str = "alice"):
    return {
        user_id: [
            make_record(SubscriptionStatus.ACTIVE, PlanTier.PRO, user_id=user_id, period_end=None),
        ]
    }


def test_new_session_is_uninitialized():
    session = EntitlementSession(InMemorySubscriptionSource())

    snapshot = session.get_current_decision()

    assert snapshot.state is CacheState.UNINITIALIZED
    assert snapshot.decision is None
    assert snapshot.signed_out is False


def test_counts_source_required_when_source_cannot_count():
    class RecordsOnly(SubscriptionRecordSource):
        async def fetch_subscription_records(self, user_id):
            return []

        async def fetch_plan_catalog(self):
            return []

    with pytest.raises(TypeError):
        EntitlementSession(RecordsOnly())


def test_refresh_without_user_raises():
    session = EntitlementSession(InMemorySubscriptionSource())

    with pytest.raises(EntitlementError):
        session.refresh()


@pytest.mark.asyncio
async def test_login_loads_then_ready(clock):
    source = ControlledSource(records=_pro_records())
    source.hold()
    session = EntitlementSession(source, clock=clock)

    task = session.login(ALICE)
    await asyncio.sleep(0)

    assert session.get_current_decision().state is CacheState.LOADING

    source.resume()
    decision = await task

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.READY
    assert snapshot.decision is decision
    assert decision.plan_tier is PlanTier.PRO
    assert decision.resolved_at == NOW


@pytest.mark.asyncio
async def test_user_without_subscription_gets_fallback_trial(clock):
    session = EntitlementSession(ControlledSource(), clock=clock)

    await session.login(ALICE)

    decision = session.decision
    assert decision.is_provisioning_fallback is True
    assert decision.days_left == 7


@pytest.mark.asyncio
async def test_concurrent_refreshes_are_coalesced(clock):
    source = ControlledSource(records=_pro_records())
    source.hold()
    session = EntitlementSession(source, clock=clock)

    first = session.login(ALICE)
    second = session.refresh()
    third = session.invalidate()

    assert first is second is third

    source.resume()
    await first

    assert source.record_calls == 1
    assert source.catalog_calls == 1
    assert source.count_calls == 1


@pytest.mark.asyncio
async def test_invalidate_forces_new_fetch(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, clock=clock)
    await session.login(ALICE)

    source.inner.add_record(
        make_record(
            SubscriptionStatus.EXPIRED,
            PlanTier.STARTER,
            user_id="alice",
            created_at=NOW,
        )
    )
    await session.invalidate()

    assert source.record_calls == 2
    assert session.decision.plan_tier is PlanTier.STARTER
    assert session.decision.access_blocked is True


@pytest.mark.asyncio
async def test_invalidate_without_user_is_noop():
    session = EntitlementSession(InMemorySubscriptionSource())

    assert session.invalidate() is None


@pytest.mark.asyncio
async def test_fresh_read_does_not_refetch(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, freshness_seconds=300, clock=clock)
    await session.login(ALICE)

    clock.advance(299)
    snapshot = session.get_current_decision()

    assert snapshot.is_stale is False
    assert snapshot.state is CacheState.READY
    assert source.record_calls == 1


@pytest.mark.asyncio
async def test_stale_read_serves_old_decision_and_refreshes_in_background(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, freshness_seconds=300, clock=clock)
    first = await session.login(ALICE)

    clock.advance(301)
    source.hold()
    snapshot = session.get_current_decision()

    assert snapshot.decision is first
    assert snapshot.is_stale is True
    assert snapshot.state is CacheState.LOADING
    assert session.is_loading

    source.resume()
    await session.wait_ready()

    assert source.record_calls == 2
    assert session.decision is not first
    assert session.decision.resolved_at == NOW + timedelta(seconds=301)
    assert session.get_current_decision().is_stale is False


@pytest.mark.asyncio
async def test_source_failure_keeps_last_decision_and_flags_degraded(clock, caplog):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, clock=clock)
    decision = await session.login(ALICE)

    source.fail_with = SourceUnavailableError("supabase", "connection refused")
    with caplog.at_level(logging.ERROR, logger="plan_access.alerts"):
        await session.invalidate()

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.ERROR
    assert snapshot.decision is decision
    assert snapshot.is_degraded is True
    assert snapshot.status_message == DEGRADED_MESSAGE
    assert snapshot.error.code == SOURCE_UNAVAILABLE
    assert "connection refused" in snapshot.error.message
    assert SOURCE_UNAVAILABLE in [getattr(r, "error_code", None) for r in caplog.records]


@pytest.mark.asyncio
async def test_first_load_failure_has_no_decision(clock):
    source = ControlledSource()
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)

    result = await session.login(ALICE)

    snapshot = session.get_current_decision()
    assert result is None
    assert snapshot.state is CacheState.ERROR
    assert snapshot.decision is None
    assert snapshot.is_degraded is False


@pytest.mark.asyncio
async def test_failed_first_load_is_retried_on_read(clock):
    source = ControlledSource(records=_pro_records())
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)
    await session.login(ALICE)

    source.fail_with = None
    clock.advance(3600)
    for _ in range(5):
        session.get_current_decision()
        await asyncio.sleep(0)
    await session.wait_ready()

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.READY
    assert snapshot.decision.plan_tier is PlanTier.PRO
    assert snapshot.error is None
    assert source.record_calls == 2
    assert AccessGates(session).evaluate_feature(FeatureKey.NOTES) is FeatureOutcome.GRANTED


@pytest.mark.asyncio
async def test_failed_first_load_waits_for_retry_window(clock):
    source = ControlledSource(records=_pro_records())
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, retry_seconds=30, clock=clock)
    await session.login(ALICE)
    source.fail_with = None

    clock.advance(29)
    assert session.get_current_decision().state is CacheState.ERROR
    assert session.is_loading is False

    clock.advance(1)
    assert session.get_current_decision().state is CacheState.LOADING
    await session.wait_ready()

    assert session.decision is not None
    assert source.record_calls == 2


@pytest.mark.asyncio
async def test_first_load_failure_logged_without_last_known_decision(clock, caplog):
    source = ControlledSource()
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)

    with caplog.at_level(logging.ERROR, logger="plan_access.alerts"):
        await session.login(ALICE)

    (record,) = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert record.has_decision is False
    assert "last known decision" not in record.getMessage()


@pytest.mark.asyncio
async def test_refresh_after_failure_stays_degraded_while_loading(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, freshness_seconds=300, clock=clock)
    decision = await session.login(ALICE)
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    await session.invalidate()

    source.fail_with = None
    source.hold()
    clock.advance(301)
    snapshot = session.get_current_decision()

    assert snapshot.state is CacheState.LOADING
    assert snapshot.decision is decision
    assert snapshot.is_degraded is True
    assert snapshot.status_message == DEGRADED_MESSAGE

    source.resume()
    await session.wait_ready()

    assert session.snapshot().is_degraded is False


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, clock=clock)
    await session.login(ALICE)

    source.fail_with = RuntimeError("boom")
    await session.invalidate()

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.ERROR
    assert snapshot.decision is not None


@pytest.mark.asyncio
async def test_recovery_after_failure_clears_error(clock):
    source = ControlledSource(records=_pro_records())
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)
    await session.login(ALICE)

    source.fail_with = None
    await session.invalidate()

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.READY
    assert snapshot.error is None


@pytest.mark.asyncio
async def test_repeated_failures_raise_alert(clock, caplog):
    source = ControlledSource()
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)
    session.login(ALICE)

    with caplog.at_level(logging.WARNING, logger="plan_access.alerts"):
        for _ in range(alerts.SOURCE_FAILURE_THRESHOLD_PER_MIN):
            await session.refresh()

    assert any("Repeated entitlement source failures" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_logout_during_fetch_discards_response(clock, caplog):
    source = ControlledSource(records=_pro_records())
    source.hold()
    session = EntitlementSession(source, clock=clock)

    task = session.login(ALICE)
    await asyncio.sleep(0)
    session.logout()

    source.resume()
    with caplog.at_level(logging.DEBUG, logger="plan_access.alerts"):
        result = await task

    snapshot = session.get_current_decision()
    assert result is None
    assert snapshot.state is CacheState.UNINITIALIZED
    assert snapshot.decision is None
    assert snapshot.signed_out is True
    assert STALE_RESPONSE_DISCARDED in [getattr(r, "error_code", None) for r in caplog.records]


@pytest.mark.asyncio
async def test_failure_after_logout_is_discarded_too(clock):
    source = ControlledSource()
    source.hold()
    source.fail_with = SourceUnavailableError("supabase", "timeout")
    session = EntitlementSession(source, clock=clock)

    task = session.login(ALICE)
    await asyncio.sleep(0)
    session.logout()
    source.resume()
    await task

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.UNINITIALIZED
    assert snapshot.error is None


@pytest.mark.asyncio
async def test_switching_users_never_applies_previous_users_decision(clock):
    records = {**_pro_records("alice"), "bob": []}
    source = ControlledSource(records=records)
    source.hold()
    session = EntitlementSession(source, clock=clock)

    alice_task = session.login(ALICE)
    await asyncio.sleep(0)
    bob_task = session.login(BOB)

    assert bob_task is not alice_task

    source.resume()
    await asyncio.gather(alice_task, bob_task)

    snapshot = session.get_current_decision()
    assert snapshot.user_id == "bob"
    assert snapshot.decision.is_provisioning_fallback is True


@pytest.mark.asyncio
async def test_login_again_after_logout(clock):
    source = ControlledSource(records=_pro_records())
    session = EntitlementSession(source, clock=clock)
    await session.login(ALICE)
    session.logout()

    await session.login(ALICE)

    snapshot = session.get_current_decision()
    assert snapshot.state is CacheState.READY
    assert snapshot.signed_out is False


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_fetch(clock):
    source = ControlledSource(records=_pro_records())
    source.hold()
    session = EntitlementSession(source, clock=clock)
    task = session.login(ALICE)

    waiter = asyncio.ensure_future(session.wait_ready())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    source.resume()
    await task

    assert session.get_current_decision().state is CacheState.READY


def test_from_policy_uses_policy_windows():
    policy = AccessPolicy(freshness_seconds=60, fallback_trial_days=3)
    session = EntitlementSession.from_policy(InMemorySubscriptionSource(), policy, clock=FakeClock())

    assert session._freshness == timedelta(seconds=60)
    assert session._trial_days == 3


@pytest.mark.asyncio
async def test_registry_keeps_one_session_per_user(clock):
    registry = SessionRegistry(ControlledSource(records=_pro_records()), clock=clock)

    first = registry.session_for(ALICE)
    second = registry.session_for(ALICE)
    await first.wait_ready()

    assert first is second
    assert len(registry) == 1
    assert registry.get("alice") is first


@pytest.mark.asyncio
async def test_registry_relogs_on_role_change(clock):
    source = ControlledSource(records=_pro_records())
    registry = SessionRegistry(source, clock=clock)
    session = registry.session_for(ALICE)
    await session.wait_ready()

    registry.session_for(UserIdentity("alice", UserRole.MANAGER))
    await session.wait_ready()

    assert session.identity.role is UserRole.MANAGER
    assert source.record_calls == 2


@pytest.mark.asyncio
async def test_registry_end_logs_out(clock):
    registry = SessionRegistry(ControlledSource(), clock=clock)
    session = registry.session_for(ALICE)
    await session.wait_ready()

    assert registry.end("alice") is True
    assert registry.end("alice") is False
    assert session.get_current_decision().signed_out is True
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_registry_evicts_idle_sessions(clock):
    registry = SessionRegistry(ControlledSource(), idle_ttl_seconds=600, clock=clock)
    alice = registry.session_for(ALICE)
    await alice.wait_ready()

    clock.advance(601)
    bob = registry.session_for(BOB)
    await bob.wait_ready()

    assert registry.get("alice") is None
    assert registry.get("bob") is bob
    assert len(registry) == 1
    assert alice.snapshot().signed_out is True


@pytest.mark.asyncio
async def test_registry_keeps_recently_used_sessions(clock):
    registry = SessionRegistry(ControlledSource(), idle_ttl_seconds=600, clock=clock)
    alice = registry.session_for(ALICE)
    await alice.wait_ready()

    clock.advance(400)
    registry.session_for(ALICE)
    clock.advance(400)

    assert registry.evict_idle() == 0
    assert registry.get("alice") is alice
