"""
Error taxonomy for governed search calls.

Failures are classified structurally by type, never by message text.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .governor import BlockRule, GovernanceDecision


class GuardError(Exception):
    """Base class for all search quota guard errors."""


class SearchFailure(GuardError):
    """A search call that was attempted (or refused) and did not succeed."""


class ConnectivityFailure(SearchFailure):
    """The request never reached the server or was aborted in transit.

    Surfaced as a connectivity message, never as a quota message.
    """
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UpstreamFailure(SearchFailure):
    """The server responded with a non-success HTTP status."""
    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"Upstream error: HTTP {status}")
        self.status = status


class AutoRetryHalted(SearchFailure):
    """Automatic re-query refused after repeated consecutive failures.

    No call is made and nothing is recorded; an explicit user retry
    is required.
    """
    def __init__(self, consecutive_failures: int):
        super().__init__(
            f"Automatic search halted after {consecutive_failures} consecutive failures. "
            "Retry manually to continue."
        )
        self.consecutive_failures = consecutive_failures


class QuotaBlocked(GuardError):
    """A governance rule rejected the request before any network call."""
    def __init__(self, decision: "GovernanceDecision"):
        super().__init__(decision.reason or "Request blocked")
        self.decision = decision

    @property
    def rule(self) -> "BlockRule":
        return self.decision.rule


class ConfirmationRequired(GuardError):
    """Deferred decision: the user must confirm before the request proceeds.

    Not a failure. The decision carries the confirmation token that must
    accompany the retried request.
    """
    def __init__(self, decision: "GovernanceDecision"):
        super().__init__(decision.reason or "Confirmation required")
        self.decision = decision

    @property
    def confirmation(self):
        return self.decision.confirmation


class PersistenceDegraded(GuardError):
    """The ledger could not be read from or written to storage."""
