"""
Tests for request orchestration.

Covers cache bypass, governance gating, failure accounting, backoff,
concurrency and cancellation.
"""
import asyncio
from datetime import date, datetime, timedelta

import pytest

from search_quota_guard.config.loader import Settings
from search_quota_guard.core.cache import ResponseCache
from search_quota_guard.core.circuit_breaker import CircuitBreaker
from search_quota_guard.core.errors import AutoRetryHalted, ConnectivityFailure, UpstreamFailure
from search_quota_guard.core.governor import BlockRule, RateGovernor
from search_quota_guard.core.ledger import UsageLedger
from search_quota_guard.core.orchestrator import RequestOrchestrator, build_orchestrator
from search_quota_guard.storage.models import LedgerState
from search_quota_guard.storage.repository import MemoryLedgerRepository

ENDPOINT = "events.json"


class FakeTransport:
    """Async transport returning canned payloads or raising queued failures."""

    def __init__(self):
        self.calls = []
        self.failures = []

    async def __call__(self, endpoint_id, params):
        self.calls.append((endpoint_id, dict(params)))
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        return {"page": {"number": 0}, "echo": dict(params)}


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_orchestrator(clock, state=None, transport=None):
    """Create an orchestrator over an in-memory ledger."""
    repository = MemoryLedgerRepository()
    ledger = UsageLedger(state or LedgerState.fresh(clock().date()), repository)
    sleep = RecordingSleep()
    orchestrator = RequestOrchestrator(
        ledger=ledger,
        governor=RateGovernor(ledger),
        cache=ResponseCache(),
        breaker=CircuitBreaker(sleep=sleep),
        transport=transport or FakeTransport(),
        clock=clock,
    )
    return orchestrator, sleep


def seed_calls(ledger, count):
    """Record count old calls so they fall outside every time window."""
    for i in range(count):
        ledger.record_call(ENDPOINT, f"seed-{i}", True, datetime(2026, 3, 10, 6, 0, 0))


class TestCacheBypass:
    """Test that cached answers are free."""

    def test_cache_hit_does_not_count(self, clock):
        """Test a repeated successful search is served from cache."""
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            first = await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            clock.advance(1)
            second = await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            return first, second

        first, second = asyncio.run(run())

        assert first.allowed and not first.from_cache
        assert second.allowed and second.from_cache
        assert second.payload == first.payload
        assert len(transport.calls) == 1
        assert orchestrator.ledger.session_count == 1
        assert orchestrator.ledger.daily_count == 1

    def test_cache_hit_bypasses_hard_limits(self, clock):
        """Test cached answers are returned even when the session is full."""
        orchestrator, _ = make_orchestrator(clock)
        orchestrator.cache.put(ENDPOINT, {"postalCode": "60601"}, {"cached": True}, clock())
        seed_calls(orchestrator.ledger, 100)

        outcome = asyncio.run(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))

        assert outcome.from_cache
        assert outcome.payload == {"cached": True}
        assert orchestrator.ledger.session_count == 100

    def test_expired_cache_entry_goes_to_network(self, clock):
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            clock.advance(301)
            return await orchestrator.search(ENDPOINT, {"postalCode": "60601"})

        outcome = asyncio.run(run())

        assert not outcome.from_cache
        assert len(transport.calls) == 2
        assert orchestrator.ledger.session_count == 2


class TestGovernanceGating:
    """Test that non-allowed decisions never reach the network."""

    def test_blocked_decision_returned_untouched(self, clock):
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)
        seed_calls(orchestrator.ledger, 100)

        outcome = asyncio.run(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))

        assert not outcome.allowed
        assert outcome.decision.rule == BlockRule.SESSION_LIMIT
        assert outcome.payload is None
        assert transport.calls == []
        assert orchestrator.ledger.session_count == 100

    def test_duplicate_of_failed_search_blocked(self, clock):
        """Test an immediate retry of a failed search is suppressed as a duplicate."""
        transport = FakeTransport()
        transport.failures.append(UpstreamFailure(503))
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            with pytest.raises(UpstreamFailure):
                await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            clock.advance(2)
            return await orchestrator.search(ENDPOINT, {"postalCode": "60601"})

        outcome = asyncio.run(run())

        assert outcome.decision.rule == BlockRule.DUPLICATE
        assert len(transport.calls) == 1

    def test_rapid_fire_lockout(self, clock):
        """Test three searches in 10s lock out a fourth distinct search."""
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            for zip_code in ("60602", "60603", "60604"):
                outcome = await orchestrator.search(ENDPOINT, {"postalCode": zip_code})
                assert outcome.allowed
                clock.advance(1)
            fourth = await orchestrator.search(ENDPOINT, {"postalCode": "60605"})
            clock.advance(20)
            fifth = await orchestrator.search(ENDPOINT, {"postalCode": "60606"})
            return fourth, fifth

        fourth, fifth = asyncio.run(run())

        assert fourth.decision.rule == BlockRule.RAPID_FIRE
        assert fifth.decision.rule == BlockRule.LOCKOUT
        assert fifth.decision.blocked_until > clock()
        assert len(transport.calls) == 3

    def test_expired_lockout_cleared_before_evaluation(self, clock):
        orchestrator, _ = make_orchestrator(clock)
        orchestrator.ledger.set_blocked_until(clock() + timedelta(seconds=30), clock())
        clock.advance(31)

        outcome = asyncio.run(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))

        assert outcome.allowed
        assert orchestrator.ledger.blocked_until is None

    def test_confirmation_flow(self, clock):
        """Test crossing 50 calls requires confirmation and the confirmed search proceeds."""
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)
        seed_calls(orchestrator.ledger, 49)

        async def run():
            allowed = await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            clock.advance(60)
            pending = await orchestrator.search(ENDPOINT, {"postalCode": "60602"})
            confirmed = await orchestrator.search(
                ENDPOINT, {"postalCode": "60602"}, confirmation=pending.decision.confirmation
            )
            return allowed, pending, confirmed

        allowed, pending, confirmed = asyncio.run(run())

        assert allowed.allowed
        assert pending.decision.requires_user_confirmation
        assert confirmed.allowed
        assert orchestrator.ledger.session_count == 51
        assert len(transport.calls) == 2

    def test_rollover_before_rules(self, clock):
        """Test a stale ledger is rolled over before any rule is checked."""
        yesterday = clock().date() - timedelta(days=1)
        state = LedgerState(
            daily_count=5000,
            session_count=100,
            last_reset_date=yesterday,
            blocked_until=clock() + timedelta(seconds=30),
        )
        orchestrator, _ = make_orchestrator(clock, state=state)

        outcome = asyncio.run(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))

        assert outcome.allowed
        assert orchestrator.ledger.last_reset_date == clock().date()
        assert orchestrator.ledger.session_count == 1
        assert orchestrator.ledger.daily_count == 1


class TestFailureHandling:
    """Test failure accounting and circuit-breaker backoff."""

    def test_failures_recorded_with_distinct_types(self, clock):
        transport = FakeTransport()
        transport.failures = [ConnectivityFailure("offline"), UpstreamFailure(500)]
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            with pytest.raises(ConnectivityFailure):
                await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            clock.advance(40)
            with pytest.raises(UpstreamFailure) as excinfo:
                await orchestrator.search(ENDPOINT, {"postalCode": "60602"})
            return excinfo.value

        error = asyncio.run(run())

        assert error.status == 500
        assert orchestrator.ledger.session_count == 2
        assert [call.succeeded for call in orchestrator.ledger.recent_calls] == [False, False]
        assert orchestrator.breaker.consecutive_failures == 2
        assert len(orchestrator.cache) == 0

    def test_backoff_after_three_failures(self, clock):
        """Test the fourth attempt waits for backoff and still goes out."""
        transport = FakeTransport()
        transport.failures = [ConnectivityFailure("offline")] * 3
        orchestrator, sleep = make_orchestrator(clock, transport=transport)

        async def run():
            for zip_code in ("60601", "60602", "60603"):
                with pytest.raises(ConnectivityFailure):
                    await orchestrator.search(ENDPOINT, {"postalCode": zip_code})
                clock.advance(40)
            return await orchestrator.search(ENDPOINT, {"postalCode": "60604"})

        outcome = asyncio.run(run())

        assert sleep.delays == [8.0]
        assert outcome.allowed
        assert len(transport.calls) == 4
        assert orchestrator.breaker.consecutive_failures == 0

    def test_automatic_requery_halted(self, clock):
        """Test automatic re-queries stop after three consecutive failures."""
        transport = FakeTransport()
        transport.failures = [UpstreamFailure(502)] * 3
        orchestrator, sleep = make_orchestrator(clock, transport=transport)

        async def run():
            for zip_code in ("60601", "60602", "60603"):
                with pytest.raises(UpstreamFailure):
                    await orchestrator.search(ENDPOINT, {"postalCode": zip_code})
                clock.advance(40)
            with pytest.raises(AutoRetryHalted) as excinfo:
                await orchestrator.search(ENDPOINT, {"postalCode": "60604"}, user_initiated=False)
            return excinfo.value

        error = asyncio.run(run())

        assert error.consecutive_failures == 3
        assert len(transport.calls) == 3
        assert sleep.delays == []
        assert orchestrator.ledger.session_count == 3

    def test_unclassified_errors_propagate_unrecorded(self, clock):
        async def broken(endpoint_id, params):
            raise RuntimeError("bug")

        orchestrator, _ = make_orchestrator(clock, transport=broken)

        with pytest.raises(RuntimeError):
            asyncio.run(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
        assert orchestrator.ledger.session_count == 0


class TestConcurrency:
    """Test serialization of concurrent searches and cancellation."""

    def test_concurrent_identical_searches_call_once(self, clock):
        """Test the second of two concurrent identical searches is served from cache."""
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            return await asyncio.gather(
                orchestrator.search(ENDPOINT, {"postalCode": "60601"}),
                orchestrator.search(ENDPOINT, {"postalCode": "60601"}),
            )

        first, second = asyncio.run(run())

        assert len(transport.calls) == 1
        assert first.payload == second.payload
        assert sorted([first.from_cache, second.from_cache]) == [False, True]
        assert orchestrator.ledger.session_count == 1

    def test_concurrent_searches_see_earlier_records(self, clock):
        """Test concurrent distinct searches are counted in order."""
        transport = FakeTransport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)
        seed_calls(orchestrator.ledger, 49)

        async def run():
            return await asyncio.gather(
                orchestrator.search(ENDPOINT, {"postalCode": "60601"}),
                orchestrator.search(ENDPOINT, {"postalCode": "60602"}),
            )

        first, second = asyncio.run(run())

        assert first.allowed
        assert second.decision.requires_user_confirmation
        assert orchestrator.ledger.session_count == 50

    def gated_transport(self, failure=None):
        """Transport that blocks until released, then succeeds or raises failure."""
        gate = {"calls": []}

        async def transport(endpoint_id, params):
            gate["calls"].append(dict(params))
            gate["started"].set()
            await gate["release"].wait()
            if failure is not None:
                raise failure
            return {"page": {"number": 0}}

        return transport, gate

    def test_cancelled_search_still_recorded(self, clock):
        """Test abandoning a search mid-flight does not refund the call."""
        transport, gate = self.gated_transport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            gate["started"] = asyncio.Event()
            gate["release"] = asyncio.Event()
            task = asyncio.ensure_future(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
            await gate["started"].wait()
            task.cancel()
            await asyncio.sleep(0)
            gate["release"].set()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        assert orchestrator.ledger.session_count == 1
        assert orchestrator.ledger.recent_calls[0].succeeded

    def test_retry_after_cancel_waits_for_abandoned_call(self, clock):
        """Test a retry of an abandoned search is not evaluated until the first call is recorded."""
        transport, gate = self.gated_transport()
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            gate["started"] = asyncio.Event()
            gate["release"] = asyncio.Event()
            first = asyncio.ensure_future(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
            await gate["started"].wait()
            first.cancel()
            retry = asyncio.ensure_future(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
            for _ in range(5):
                await asyncio.sleep(0)
            assert not retry.done()

            gate["release"].set()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await retry

        outcome = asyncio.run(run())

        assert outcome.from_cache
        assert len(gate["calls"]) == 1
        assert orchestrator.ledger.session_count == 1

    def test_retry_after_cancelled_failure_is_duplicate(self, clock):
        """Test a retry of an abandoned search that failed is suppressed as a duplicate."""
        transport, gate = self.gated_transport(failure=UpstreamFailure(503))
        orchestrator, _ = make_orchestrator(clock, transport=transport)

        async def run():
            gate["started"] = asyncio.Event()
            gate["release"] = asyncio.Event()
            first = asyncio.ensure_future(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
            await gate["started"].wait()
            first.cancel()
            retry = asyncio.ensure_future(orchestrator.search(ENDPOINT, {"postalCode": "60601"}))
            await asyncio.sleep(0)
            gate["release"].set()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await retry

        outcome = asyncio.run(run())

        assert outcome.decision.rule == BlockRule.DUPLICATE
        assert len(gate["calls"]) == 1
        assert orchestrator.ledger.session_count == 1
        assert not orchestrator.ledger.recent_calls[0].succeeded


class TestOrchestratorHelpers:
    """Test snapshot, reset and wiring helpers."""

    def test_reset_session(self, clock):
        orchestrator, _ = make_orchestrator(clock)
        seed_calls(orchestrator.ledger, 60)
        orchestrator.breaker.on_result(False)

        orchestrator.reset_session()

        assert orchestrator.usage_snapshot().session_count == 0
        assert orchestrator.usage_snapshot().daily_count == 60
        assert orchestrator.breaker.consecutive_failures == 0

    def test_usage_level(self, clock):
        orchestrator, _ = make_orchestrator(clock)
        seed_calls(orchestrator.ledger, 30)
        assert orchestrator.usage_level().value == "warning"

    def test_build_orchestrator_rolls_over_stale_ledger(self, clock):
        state = LedgerState(daily_count=12, session_count=12, last_reset_date=date(2026, 3, 9))
        repository = MemoryLedgerRepository(state)

        orchestrator = build_orchestrator(Settings(), FakeTransport(), repository=repository, clock=clock)

        assert orchestrator.ledger.daily_count == 0
        assert repository.load().last_reset_date == clock().date()
        assert orchestrator.cache.max_entries == 256
        assert orchestrator.breaker.failure_threshold == 3


class TestReferenceScenario:
    """Walk through a full session end to end."""

    def test_scenario(self, clock):
        transport = FakeTransport()
        transport.failures.append(ConnectivityFailure("offline"))
        orchestrator, _ = make_orchestrator(clock, transport=transport)
        ledger = orchestrator.ledger

        async def run():
            with pytest.raises(ConnectivityFailure):
                await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            assert ledger.session_count == 1

            repeat = await orchestrator.search(ENDPOINT, {"postalCode": "60601"})
            assert repeat.decision.rule == BlockRule.DUPLICATE

            clock.advance(31)
            for zip_code in ("60602", "60603", "60604"):
                assert (await orchestrator.search(ENDPOINT, {"postalCode": zip_code})).allowed
                clock.advance(1)
            locked = await orchestrator.search(ENDPOINT, {"postalCode": "60605"})
            assert locked.decision.is_blocked
            assert "locked" in locked.decision.reason

            clock.advance(60)
            seed_calls(ledger, 50 - ledger.session_count)
            pending = await orchestrator.search(ENDPOINT, {"postalCode": "60606"})
            assert pending.decision.requires_user_confirmation
            confirmed = await orchestrator.search(
                ENDPOINT, {"postalCode": "60606"}, confirmation=pending.decision.confirmation
            )
            assert confirmed.allowed

        asyncio.run(run())

        assert ledger.session_count == 51
