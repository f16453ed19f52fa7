"""
Data models for storage layer.

Defines the usage ledger record and its persisted JSON shape.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CallRecord:
    """Immutable record of one outbound search call.

    Append-only member of the ledger's rolling history. Once created,
    a record is never modified, only evicted when the history is trimmed.
    """
    timestamp: datetime
    endpoint_id: str
    fingerprint: str
    succeeded: bool

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the persisted call shape."""
        return {
            "timestamp": to_epoch_ms(self.timestamp),
            "endpoint": self.endpoint_id,
            "params": self.fingerprint,
            "success": self.succeeded,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CallRecord":
        """Build a record from the persisted call shape.

        Raises:
            ValueError: If a field is missing or has the wrong type
        """
        try:
            timestamp = payload["timestamp"]
            endpoint = payload["endpoint"]
            params = payload["params"]
            success = payload["success"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed call record: {e}")

        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise ValueError("call timestamp must be an integer")
        if not isinstance(endpoint, str) or not isinstance(params, str):
            raise ValueError("call endpoint and params must be strings")
        if not isinstance(success, bool):
            raise ValueError("call success must be a boolean")

        return cls(
            timestamp=from_epoch_ms(timestamp),
            endpoint_id=endpoint,
            fingerprint=params,
            succeeded=success,
        )


@dataclass
class LedgerState:
    """Mutable usage ledger state as held in memory and persisted.

    daily_count and session_count live on overlapping but distinct
    lifecycles, so daily_count >= session_count is not guaranteed.
    """
    daily_count: int
    session_count: int
    last_reset_date: date
    recent_calls: List[CallRecord] = field(default_factory=list)
    blocked_until: Optional[datetime] = None

    @classmethod
    def fresh(cls, today: date) -> "LedgerState":
        """Zeroed ledger state for the given day."""
        return cls(daily_count=0, session_count=0, last_reset_date=today)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the persisted ledger shape."""
        payload: Dict[str, Any] = {
            "dailyCount": self.daily_count,
            "sessionCount": self.session_count,
            "lastResetDate": self.last_reset_date.isoformat(),
            "recentCalls": [call.to_payload() for call in self.recent_calls],
        }
        if self.blocked_until is not None:
            payload["blockedUntil"] = to_epoch_ms(self.blocked_until)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], max_recent_calls: int = 100) -> "LedgerState":
        """Build ledger state from the persisted shape.

        Histories longer than max_recent_calls are trimmed to the most
        recent entries.

        Args:
            payload: Decoded JSON ledger record
            max_recent_calls: Cap on the rolling call history

        Returns:
            Validated LedgerState

        Raises:
            ValueError: If the payload does not match the ledger schema
        """
        if not isinstance(payload, dict):
            raise ValueError("ledger record must be an object")

        daily_count = payload.get("dailyCount")
        session_count = payload.get("sessionCount")
        for name, value in (("dailyCount", daily_count), ("sessionCount", session_count)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"'{name}' must be a non-negative integer")

        raw_date = payload.get("lastResetDate")
        if not isinstance(raw_date, str):
            raise ValueError("'lastResetDate' must be a date string")
        last_reset_date = date.fromisoformat(raw_date)

        raw_calls = payload.get("recentCalls", [])
        if not isinstance(raw_calls, list):
            raise ValueError("'recentCalls' must be a list")
        recent_calls = [CallRecord.from_payload(call) for call in raw_calls]
        if len(recent_calls) > max_recent_calls:
            recent_calls = recent_calls[-max_recent_calls:]

        blocked_until = None
        raw_blocked = payload.get("blockedUntil")
        if raw_blocked is not None:
            if not isinstance(raw_blocked, int) or isinstance(raw_blocked, bool):
                raise ValueError("'blockedUntil' must be an integer")
            blocked_until = from_epoch_ms(raw_blocked)

        return cls(
            daily_count=daily_count,
            session_count=session_count,
            last_reset_date=last_reset_date,
            recent_calls=recent_calls,
            blocked_until=blocked_until,
        )


def to_epoch_ms(value: datetime) -> int:
    """Convert a local datetime to milliseconds since the epoch."""
    return int(round(value.timestamp() * 1000))


def from_epoch_ms(value: int) -> datetime:
    """Convert milliseconds since the epoch to a local datetime.

    Raises:
        ValueError: If value is outside the platform's representable range
    """
    try:
        return datetime.fromtimestamp(value / 1000)
    except (OverflowError, OSError) as e:
        raise ValueError(f"timestamp out of range: {value}") from e
