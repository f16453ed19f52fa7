"""
Persistent usage ledger.

Holds call counters, the rolling call history and the lockout stamp.
Every mutation persists the whole record. Storage failures are logged and
swallowed: the in-memory ledger stays authoritative for the process.
"""

import logging
from datetime import date, datetime
from typing import Optional, Tuple

from ..storage.models import CallRecord, LedgerState
from ..storage.repository import LedgerRepository
from .errors import PersistenceDegraded

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECENT_CALLS = 100


class UsageLedger:
    """Durable record of call history and counters.

    None of the methods suspend, so under asyncio each mutation completes
    without interleaving with another request.
    """

    def __init__(
        self,
        state: LedgerState,
        repository: Optional[LedgerRepository] = None,
        max_recent_calls: int = DEFAULT_MAX_RECENT_CALLS,
    ):
        """Initialize the ledger around existing state.

        Args:
            state: Initial ledger state
            repository: Where mutations are persisted; None keeps the ledger in memory
            max_recent_calls: Cap on the rolling call history
        """
        if max_recent_calls <= 0:
            raise ValueError("max_recent_calls must be > 0")
        self._state = state
        self._repository = repository
        self.max_recent_calls = max_recent_calls
        self.persistence_degraded = False
        self._trim()

    @classmethod
    def load(
        cls,
        repository: Optional[LedgerRepository],
        today: date,
        max_recent_calls: int = DEFAULT_MAX_RECENT_CALLS,
    ) -> "UsageLedger":
        """Load the ledger from storage, failing soft.

        On absence or any read/parse failure a fresh zeroed ledger dated
        today is returned. Errors are logged, never raised.

        Args:
            repository: Storage to load from
            today: Reset date for a fresh ledger
            max_recent_calls: Cap on the rolling call history

        Returns:
            Loaded or freshly initialized UsageLedger
        """
        state = None
        degraded = False
        if repository is not None:
            try:
                state = repository.load(max_recent_calls)
            except PersistenceDegraded as e:
                logger.warning("Failed to load API usage ledger, starting fresh: %s", e)
                degraded = True

        if state is None:
            state = LedgerState.fresh(today)

        ledger = cls(state, repository, max_recent_calls)
        ledger.persistence_degraded = degraded
        return ledger

    @property
    def daily_count(self) -> int:
        return self._state.daily_count

    @property
    def session_count(self) -> int:
        return self._state.session_count

    @property
    def last_reset_date(self) -> date:
        return self._state.last_reset_date

    @property
    def blocked_until(self) -> Optional[datetime]:
        return self._state.blocked_until

    @property
    def recent_calls(self) -> Tuple[CallRecord, ...]:
        """Call history, oldest first."""
        return tuple(self._state.recent_calls)

    def is_blocked(self, now: datetime) -> bool:
        return self._state.blocked_until is not None and now < self._state.blocked_until

    def rollover_if_new_day(self, now: datetime) -> bool:
        """Zero day-scoped state if the calendar date has advanced.

        Idempotent within the same day.

        Returns:
            True if a rollover happened
        """
        today = now.date()
        if self._state.last_reset_date == today:
            return False

        logger.info(
            "New day %s: resetting usage counters (was %d daily, %d session)",
            today.isoformat(), self._state.daily_count, self._state.session_count,
        )
        self._state.daily_count = 0
        self._state.session_count = 0
        self._state.recent_calls = []
        self._state.blocked_until = None
        self._state.last_reset_date = today
        self._persist()
        return True

    def record_call(self, endpoint_id: str, fingerprint: str, succeeded: bool, now: datetime) -> CallRecord:
        """Append a call to the history and count it.

        Both counters are incremented whether or not the call succeeded:
        the call consumed quota either way.

        Returns:
            The appended CallRecord
        """
        record = CallRecord(
            timestamp=now,
            endpoint_id=endpoint_id,
            fingerprint=fingerprint,
            succeeded=succeeded,
        )
        self._state.recent_calls.append(record)
        self._state.daily_count += 1
        self._state.session_count += 1
        self._trim()
        self._persist()
        return record

    def reset_session(self) -> None:
        """Zero the session counter and clear history and lockout.

        The daily counter is left untouched.
        """
        logger.info("Resetting session usage (was %d calls)", self._state.session_count)
        self._state.session_count = 0
        self._state.recent_calls = []
        self._state.blocked_until = None
        self._persist()

    def set_blocked_until(self, until: datetime, now: datetime) -> None:
        """Impose a lockout that expires at until.

        Raises:
            ValueError: If until is not strictly after now
        """
        if until <= now:
            raise ValueError("blocked_until must be in the future")
        self._state.blocked_until = until
        self._persist()

    def clear_block_if_expired(self, now: datetime) -> bool:
        """Clear an expired lockout.

        Returns:
            True if a lockout was cleared
        """
        if self._state.blocked_until is None or now < self._state.blocked_until:
            return False
        self._state.blocked_until = None
        self._persist()
        return True

    def _trim(self) -> None:
        overflow = len(self._state.recent_calls) - self.max_recent_calls
        if overflow > 0:
            del self._state.recent_calls[:overflow]

    def _persist(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save(self._state)
        except PersistenceDegraded as e:
            logger.warning("Failed to save API usage ledger, continuing in memory: %s", e)
            self.persistence_degraded = True
        else:
            self.persistence_degraded = False
