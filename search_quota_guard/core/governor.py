"""
Rate governance and decision policy.

Decides for each outbound search call whether it may proceed, needs user
confirmation, or is rejected.

Decision Order (first matching rule wins):
1. Active lockout - A rapid-fire lockout has not yet expired
2. Session hard limit - Too many calls this session
3. Daily hard limit - Too many calls today
4. Duplicate suppression - Identical request made moments ago
5. Rapid fire - Too many calls in a short window; imposes a lockout
6. Confirmation threshold - Session usage is high enough to ask first
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Any, Dict, Mapping, Optional, Tuple

from .fingerprint import compute_fingerprint
from .ledger import UsageLedger

logger = logging.getLogger(__name__)

MAX_OUTSTANDING_CONFIRMATIONS = 32


class DecisionKind(Enum):
    """Outcome categories of a governance evaluation."""
    ALLOWED = auto()
    BLOCKED = auto()
    REQUIRES_CONFIRMATION = auto()


class BlockRule(Enum):
    """The governance rule that rejected a request."""
    LOCKOUT = "lockout"
    SESSION_LIMIT = "session_limit"
    DAILY_LIMIT = "daily_limit"
    DUPLICATE = "duplicate"
    RAPID_FIRE = "rapid_fire"


class UsageLevel(Enum):
    """Advisory usage tier derived from the session count."""
    NORMAL = "normal"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class GovernancePolicy:
    """Thresholds the governor enforces."""
    daily_limit: int = 5000
    session_hard_limit: int = 100
    session_warning_threshold: int = 25
    session_confirmation_threshold: int = 50
    session_soft_limit: int = 75
    duplicate_window: timedelta = timedelta(seconds=30)
    rapid_fire_window: timedelta = timedelta(seconds=10)
    rapid_fire_limit: int = 3
    lockout_duration: timedelta = timedelta(seconds=30)
    max_recent_calls: int = 100

    def __post_init__(self):
        """Validate thresholds are positive and consistently ordered."""
        for name in (
            "daily_limit", "session_hard_limit", "session_warning_threshold",
            "session_confirmation_threshold", "session_soft_limit",
            "rapid_fire_limit", "max_recent_calls",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        for name in ("duplicate_window", "rapid_fire_window", "lockout_duration"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        if not (self.session_warning_threshold
                <= self.session_confirmation_threshold
                <= self.session_soft_limit
                <= self.session_hard_limit):
            raise ValueError(
                "session thresholds must satisfy warning <= confirmation <= soft limit <= hard limit"
            )


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable copy of usage figures taken at decision time."""
    daily_count: int
    session_count: int
    daily_limit: int
    warning_threshold: int
    confirmation_threshold: int


@dataclass(frozen=True)
class ConfirmationToken:
    """Capability to bypass the confirmation threshold for one request.

    Issued with a RequiresConfirmation decision and only honoured for the
    same (endpoint_id, fingerprint) it was issued for.
    """
    token_id: str
    endpoint_id: str
    fingerprint: str
    issued_at: datetime

    def matches(self, endpoint_id: str, fingerprint: str) -> bool:
        return self.endpoint_id == endpoint_id and self.fingerprint == fingerprint


@dataclass(frozen=True)
class GovernanceDecision:
    """Result of evaluating one request against the policy.

    A tagged variant: kind selects which of the optional fields apply.
    Blocked decisions carry the rule and reason (and the lockout stamp
    for lockout rules); RequiresConfirmation carries the token.
    """
    kind: DecisionKind
    snapshot: UsageSnapshot
    reason: Optional[str] = None
    rule: Optional[BlockRule] = None
    blocked_until: Optional[datetime] = None
    confirmation: Optional[ConfirmationToken] = None

    @classmethod
    def allowed(cls, snapshot: UsageSnapshot) -> "GovernanceDecision":
        return cls(kind=DecisionKind.ALLOWED, snapshot=snapshot)

    @classmethod
    def blocked(
        cls,
        rule: BlockRule,
        reason: str,
        snapshot: UsageSnapshot,
        blocked_until: Optional[datetime] = None,
    ) -> "GovernanceDecision":
        return cls(
            kind=DecisionKind.BLOCKED,
            snapshot=snapshot,
            reason=reason,
            rule=rule,
            blocked_until=blocked_until,
        )

    @classmethod
    def requires_confirmation(
        cls,
        reason: str,
        snapshot: UsageSnapshot,
        confirmation: ConfirmationToken,
    ) -> "GovernanceDecision":
        return cls(
            kind=DecisionKind.REQUIRES_CONFIRMATION,
            snapshot=snapshot,
            reason=reason,
            confirmation=confirmation,
        )

    @property
    def is_allowed(self) -> bool:
        return self.kind == DecisionKind.ALLOWED

    @property
    def is_blocked(self) -> bool:
        return self.kind == DecisionKind.BLOCKED

    @property
    def requires_user_confirmation(self) -> bool:
        return self.kind == DecisionKind.REQUIRES_CONFIRMATION


class RateGovernor:
    """Evaluates the usage ledger against the governance policy.

    Evaluation reads the ledger only, except for the rapid-fire rule which
    writes the lockout stamp so the lockout holds even if the caller never
    retries. Outstanding confirmation tokens are kept here, not in the
    ledger.
    """

    def __init__(self, ledger: UsageLedger, policy: Optional[GovernancePolicy] = None):
        self.ledger = ledger
        self.policy = policy or GovernancePolicy()
        self._outstanding: Dict[Tuple[str, str], ConfirmationToken] = {}

    def snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(
            daily_count=self.ledger.daily_count,
            session_count=self.ledger.session_count,
            daily_limit=self.policy.daily_limit,
            warning_threshold=self.policy.session_warning_threshold,
            confirmation_threshold=self.policy.session_confirmation_threshold,
        )

    def usage_level(self) -> UsageLevel:
        """Coarse usage tier for UI emphasis; has no effect on decisions."""
        session_count = self.ledger.session_count
        if session_count >= self.policy.session_soft_limit:
            return UsageLevel.CRITICAL
        if session_count >= self.policy.session_confirmation_threshold:
            return UsageLevel.HIGH
        if session_count >= self.policy.session_warning_threshold:
            return UsageLevel.WARNING
        return UsageLevel.NORMAL

    def evaluate(
        self,
        endpoint_id: str,
        parameters: Mapping[str, Any],
        now: datetime,
        confirmation: Optional[ConfirmationToken] = None,
    ) -> GovernanceDecision:
        """Evaluate one request in strict rule order.

        Args:
            endpoint_id: Identifier of the endpoint being called
            parameters: Request parameters
            now: Evaluation time
            confirmation: Token from an earlier RequiresConfirmation for this request

        Returns:
            GovernanceDecision for the request
        """
        policy = self.policy
        ledger = self.ledger
        fingerprint = compute_fingerprint(parameters)

        # 1. Active lockout
        if ledger.is_blocked(now):
            until = ledger.blocked_until
            return GovernanceDecision.blocked(
                BlockRule.LOCKOUT,
                f"Temporarily blocked until {until.strftime('%H:%M:%S')}. Too many rapid requests.",
                self.snapshot(),
                blocked_until=until,
            )

        # 2. Session hard limit
        if ledger.session_count >= policy.session_hard_limit:
            logger.info("Session limit of %d calls reached", policy.session_hard_limit)
            return GovernanceDecision.blocked(
                BlockRule.SESSION_LIMIT,
                f"Session limit reached ({policy.session_hard_limit} calls). "
                "Reset the session or try again tomorrow.",
                self.snapshot(),
            )

        # 3. Daily hard limit
        if ledger.daily_count >= policy.daily_limit:
            logger.info("Daily limit of %d calls reached", policy.daily_limit)
            return GovernanceDecision.blocked(
                BlockRule.DAILY_LIMIT,
                f"Daily limit reached ({policy.daily_limit} calls). Please try again tomorrow.",
                self.snapshot(),
            )

        # 4. Duplicate suppression
        duplicate = self._find_duplicate(endpoint_id, fingerprint, now)
        if duplicate is not None:
            age = now - duplicate.timestamp
            wait_seconds = max(1, math.ceil((policy.duplicate_window - age).total_seconds()))
            return GovernanceDecision.blocked(
                BlockRule.DUPLICATE,
                f"Duplicate request: identical search made {int(age.total_seconds())} seconds ago, "
                f"wait {wait_seconds} seconds.",
                self.snapshot(),
            )

        # 5. Rapid fire (the only rule that mutates the ledger)
        if self._is_rapid_fire(now):
            until = now + policy.lockout_duration
            ledger.set_blocked_until(until, now)
            lockout_seconds = int(policy.lockout_duration.total_seconds())
            logger.info("Rapid-fire requests detected, locked until %s", until.isoformat())
            return GovernanceDecision.blocked(
                BlockRule.RAPID_FIRE,
                f"Too many requests in a short time, locked for {lockout_seconds} seconds.",
                self.snapshot(),
                blocked_until=until,
            )

        # 6. Confirmation threshold
        if (ledger.session_count >= policy.session_confirmation_threshold
                and not self._is_confirmed(endpoint_id, fingerprint, confirmation)):
            token = self._issue_token(endpoint_id, fingerprint, now)
            return GovernanceDecision.requires_confirmation(
                f"You have made {ledger.session_count} API calls this session. Continue?",
                self.snapshot(),
                token,
            )

        return GovernanceDecision.allowed(self.snapshot())

    def redeem(self, token: ConfirmationToken) -> bool:
        """Consume a confirmation token.

        Returns:
            True if the token was outstanding
        """
        key = (token.endpoint_id, token.fingerprint)
        if self._outstanding.get(key) == token:
            del self._outstanding[key]
            return True
        return False

    def discard_confirmations(self) -> None:
        self._outstanding.clear()

    def _find_duplicate(self, endpoint_id: str, fingerprint: str, now: datetime):
        for call in self.ledger.recent_calls:
            if (call.endpoint_id == endpoint_id
                    and call.fingerprint == fingerprint
                    and now - call.timestamp < self.policy.duplicate_window):
                return call
        return None

    def _is_rapid_fire(self, now: datetime) -> bool:
        recent = [
            call for call in self.ledger.recent_calls
            if now - call.timestamp < self.policy.rapid_fire_window
        ]
        return len(recent) >= self.policy.rapid_fire_limit

    def _is_confirmed(
        self,
        endpoint_id: str,
        fingerprint: str,
        confirmation: Optional[ConfirmationToken],
    ) -> bool:
        if confirmation is None or not confirmation.matches(endpoint_id, fingerprint):
            return False
        return self._outstanding.get((endpoint_id, fingerprint)) == confirmation

    def _issue_token(self, endpoint_id: str, fingerprint: str, now: datetime) -> ConfirmationToken:
        # One outstanding token per distinct request; reissuing replaces it
        key = (endpoint_id, fingerprint)
        self._outstanding.pop(key, None)
        while len(self._outstanding) >= MAX_OUTSTANDING_CONFIRMATIONS:
            # Oldest-issued first; an evicted request is simply asked again
            del self._outstanding[next(iter(self._outstanding))]
        token = ConfirmationToken(
            token_id=uuid.uuid4().hex,
            endpoint_id=endpoint_id,
            fingerprint=fingerprint,
            issued_at=now,
        )
        self._outstanding[key] = token
        return token
