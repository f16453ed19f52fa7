"""
Request orchestration.

Composes the response cache, governor, circuit breaker and usage ledger
around the actual network call for one logical search request.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional

from ..storage.repository import LedgerRepository
from .cache import ResponseCache
from .circuit_breaker import CircuitBreaker
from .errors import AutoRetryHalted, SearchFailure
from .fingerprint import compute_fingerprint
from .governor import ConfirmationToken, GovernanceDecision, RateGovernor, UsageLevel, UsageSnapshot
from .ledger import UsageLedger

if TYPE_CHECKING:
    from ..config.loader import Settings

logger = logging.getLogger(__name__)

Transport = Callable[[str, Mapping[str, Any]], Awaitable[Any]]
Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SearchOutcome:
    """Result of one orchestrated search.

    payload is set only when the decision allowed the request and the
    call (or cache lookup) succeeded.
    """
    decision: GovernanceDecision
    payload: Any = None
    from_cache: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision.is_allowed


class RequestOrchestrator:
    """Runs searches through cache, governance, backoff and accounting.

    Each request's evaluate, dispatch and record steps form one critical
    section guarded by an asyncio lock, so a request always observes the
    records of requests that started before it. Cache hits bypass the
    lock and governance entirely.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        governor: RateGovernor,
        cache: ResponseCache,
        breaker: CircuitBreaker,
        transport: Transport,
        clock: Clock = datetime.now,
    ):
        """Initialize the orchestrator with its collaborators.

        Args:
            ledger: Usage ledger shared with the governor
            governor: Decision policy
            cache: Response cache consulted before governance
            breaker: Consecutive-failure backoff
            transport: Async callable performing the network call
            clock: Source of the current local time
        """
        self.ledger = ledger
        self.governor = governor
        self.cache = cache
        self.breaker = breaker
        self._transport = transport
        self._clock = clock
        self._lock = asyncio.Lock()

    async def search(
        self,
        endpoint_id: str,
        parameters: Mapping[str, Any],
        confirmation: Optional[ConfirmationToken] = None,
        user_initiated: bool = True,
    ) -> SearchOutcome:
        """Run one governed search.

        Args:
            endpoint_id: Endpoint to call
            parameters: Request parameters
            confirmation: Token from an earlier RequiresConfirmation for this request
            user_initiated: False for automatic re-queries (e.g. on filter change)

        Returns:
            SearchOutcome with the decision and, if allowed, the payload

        Raises:
            ConnectivityFailure: The call never reached the server
            UpstreamFailure: The server answered with a non-success status
            AutoRetryHalted: An automatic re-query was refused after repeated failures
        """
        params: Dict[str, Any] = dict(parameters)

        cached = self.cache.get(endpoint_id, params, self._clock())
        if cached is not None:
            return SearchOutcome(GovernanceDecision.allowed(self.governor.snapshot()), cached, from_cache=True)

        async with self._lock:
            now = self._clock()
            # A concurrent identical request may have filled the cache while we waited
            cached = self.cache.get(endpoint_id, params, now)
            if cached is not None:
                return SearchOutcome(GovernanceDecision.allowed(self.governor.snapshot()), cached, from_cache=True)

            self.ledger.rollover_if_new_day(now)
            self.ledger.clear_block_if_expired(now)
            decision = self.governor.evaluate(endpoint_id, params, now, confirmation)
            if not decision.is_allowed:
                return SearchOutcome(decision)

            if self.breaker.should_break():
                if not user_initiated:
                    raise AutoRetryHalted(self.breaker.consecutive_failures)
                await self.breaker.wait_for_backoff()

            if confirmation is not None:
                self.governor.redeem(confirmation)

            # Shielded so an abandoned caller still gets its call recorded
            dispatch = asyncio.ensure_future(self._dispatch(endpoint_id, params))
            try:
                payload = await asyncio.shield(dispatch)
            except asyncio.CancelledError:
                logger.info("Caller abandoned search on %s; the call will still be recorded", endpoint_id)
                # The lock stays held until the call is recorded so a retry sees it
                await _wait_abandoned(dispatch)
                raise
            return SearchOutcome(decision, payload)

    async def _dispatch(self, endpoint_id: str, params: Dict[str, Any]) -> Any:
        fingerprint = compute_fingerprint(params)
        try:
            payload = await self._transport(endpoint_id, params)
        except SearchFailure as e:
            self.ledger.record_call(endpoint_id, fingerprint, False, self._clock())
            self.breaker.on_result(False)
            logger.warning(
                "Search on %s failed (%s, %d consecutive): %s",
                endpoint_id, type(e).__name__, self.breaker.consecutive_failures, e,
            )
            raise

        now = self._clock()
        self.ledger.record_call(endpoint_id, fingerprint, True, now)
        self.breaker.on_result(True)
        self.cache.put(endpoint_id, params, payload, now)
        return payload

    def usage_snapshot(self) -> UsageSnapshot:
        return self.governor.snapshot()

    def usage_level(self) -> UsageLevel:
        return self.governor.usage_level()

    def reset_session(self) -> None:
        """Reset session usage, the circuit breaker and pending confirmations."""
        self.ledger.reset_session()
        self.breaker.reset()
        self.governor.discard_confirmations()


async def _wait_abandoned(dispatch: "asyncio.Future") -> None:
    """Wait for an abandoned dispatch to finish, ignoring further cancellation.

    The dispatch's own outcome was already recorded by _dispatch, so its
    exception is retrieved and dropped here; the caller re-raises its
    CancelledError.
    """
    while not dispatch.done():
        try:
            await asyncio.wait([dispatch])
        except asyncio.CancelledError:
            continue
    if not dispatch.cancelled():
        dispatch.exception()


def build_orchestrator(
    settings: "Settings",
    transport: Transport,
    repository: Optional[LedgerRepository] = None,
    clock: Clock = datetime.now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RequestOrchestrator:
    """Wire an orchestrator and its collaborators from settings.

    Args:
        settings: Loaded settings
        transport: Async callable performing the network call
        repository: Ledger storage; defaults to SQLite at settings.storage.db_path
        clock: Source of the current local time
        sleep: Async sleep used for backoff

    Returns:
        Ready-to-use RequestOrchestrator
    """
    if repository is None:
        repository = LedgerRepository(settings.storage.db_path)
    policy = settings.policy
    now = clock()
    ledger = UsageLedger.load(repository, now.date(), policy.max_recent_calls)
    ledger.rollover_if_new_day(now)
    return RequestOrchestrator(
        ledger=ledger,
        governor=RateGovernor(ledger, policy),
        cache=ResponseCache(settings.cache.ttl, settings.cache.max_entries),
        breaker=CircuitBreaker(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            base_delay_ms=settings.circuit_breaker.base_delay_ms,
            max_delay_ms=settings.circuit_breaker.max_delay_ms,
            sleep=sleep,
        ),
        transport=transport,
        clock=clock,
    )
