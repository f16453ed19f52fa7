"""
Guarded event search client.

Blues event searches routed through request governance.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from ..core.errors import ConfirmationRequired, QuotaBlocked
from ..core.governor import ConfirmationToken
from ..core.orchestrator import RequestOrchestrator

EVENTS_ENDPOINT = "events.json"
BLUES_GENRE_ID = "KnvZfZ7vAvd"
DEFAULT_PAGE_SIZE = 20
DEFAULT_RADIUS_MILES = 25

_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class GuardedSearchClient:
    """Event search client whose every call passes request governance.

    Governance outcomes that stop a call are raised: QuotaBlocked when a
    rule rejected the request, ConfirmationRequired when the user must
    agree first. Network failures propagate from the orchestrator.
    """

    def __init__(self, orchestrator: RequestOrchestrator, genre_id: str = BLUES_GENRE_ID):
        """Initialize guarded search client.

        Args:
            orchestrator: Orchestrator running cache, governance and accounting
            genre_id: Genre every search is restricted to
        """
        self.orchestrator = orchestrator
        self.genre_id = genre_id

    async def search_events(
        self,
        params: Mapping[str, Any],
        confirmation: Optional[ConfirmationToken] = None,
        user_initiated: bool = True,
    ) -> Any:
        """Search events restricted to the configured genre.

        Args:
            params: Search parameters (postalCode, latlong, radius, ...)
            confirmation: Token from a previous ConfirmationRequired for this search
            user_initiated: False for automatic re-queries

        Returns:
            Discovery API response payload

        Raises:
            QuotaBlocked: A governance rule rejected the request
            ConfirmationRequired: The user must confirm before retrying
        """
        search_params: Dict[str, Any] = dict(params)
        search_params.update({
            "classificationName": "music",
            "genreId": self.genre_id,
            "sort": "date,asc",
            "size": params.get("size") or DEFAULT_PAGE_SIZE,
        })

        outcome = await self.orchestrator.search(
            EVENTS_ENDPOINT,
            search_params,
            confirmation=confirmation,
            user_initiated=user_initiated,
        )
        if outcome.decision.requires_user_confirmation:
            raise ConfirmationRequired(outcome.decision)
        if outcome.decision.is_blocked:
            raise QuotaBlocked(outcome.decision)
        return outcome.payload

    async def search_events_by_location(
        self,
        postal_code: str,
        radius_miles: int = DEFAULT_RADIUS_MILES,
        start: Optional[str] = None,
        end: Optional[str] = None,
        confirmation: Optional[ConfirmationToken] = None,
    ) -> Any:
        return await self.search_events(
            {
                "postalCode": postal_code,
                "radius": str(radius_miles),
                "unit": "miles",
                "startDateTime": start,
                "endDateTime": end,
            },
            confirmation=confirmation,
        )

    async def search_events_by_coordinates(
        self,
        latitude: float,
        longitude: float,
        radius_miles: int = DEFAULT_RADIUS_MILES,
        start: Optional[str] = None,
        end: Optional[str] = None,
        confirmation: Optional[ConfirmationToken] = None,
    ) -> Any:
        return await self.search_events(
            {
                "latlong": f"{latitude},{longitude}",
                "radius": str(radius_miles),
                "unit": "miles",
                "startDateTime": start,
                "endDateTime": end,
            },
            confirmation=confirmation,
        )


def date_range(
    period: str,
    today: Optional[date] = None,
    custom_start: Optional[str] = None,
    custom_end: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Return (start, end) search bounds for a named period.

    Args:
        period: One of "tonight", "week", "month" or "custom"
        today: Reference day (defaults to the local date)
        custom_start: Start bound used for "custom"
        custom_end: End bound used for "custom"

    Returns:
        Tuple of start and end datetimes, local midnights converted to UTC;
        end may be None
    """
    today = today or date.today()
    start = datetime(today.year, today.month, today.day)

    if period == "tonight":
        end = start + timedelta(days=1)
    elif period == "week":
        end = start + timedelta(days=7)
    elif period == "month":
        year = start.year + start.month // 12
        month = start.month % 12 + 1
        day = min(start.day, calendar.monthrange(year, month)[1])
        end = start.replace(year=year, month=month, day=day)
    elif period == "custom":
        return custom_start, custom_end
    else:
        return _utc(start), None

    return _utc(start), _utc(end)


def _utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_DATE_FORMAT)
