"""Availability aggregation.

Turns one provider free/busy lookup into per-attendee busy intervals for the
slot search engine.  Only ``busy`` slots block; tentative, out-of-office and
free entries are dropped.  Attendees the provider said nothing about come
back with an empty busy list, i.e. fully available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from calendar_hub.calendar_providers.base import CalendarProvider
from calendar_hub.errors import ProviderError
from calendar_hub.models import CalendarCredentials

log = logging.getLogger("calendar_hub.availability")


@dataclass(frozen=True)
class Interval:
    """A half-open ``[start, end)`` window of time."""

    start: datetime
    end: datetime


@dataclass
class AttendeeBusy:
    email: str
    busy: list[Interval] = field(default_factory=list)


class AvailabilityAggregator:
    """Resolve busy intervals for a set of attendees against one provider."""

    async def resolve(
        self,
        provider: CalendarProvider,
        credentials: CalendarCredentials,
        emails: list[str],
        start: datetime,
        end: datetime,
        timezone: str,
    ) -> list[AttendeeBusy]:
        """One provider round trip; every requested email appears once, in order.

        Raises:
            ProviderError: the provider reported failure.
        """
        result = await provider.get_free_busy(credentials, emails, start, end, timezone)
        if not result.success:
            raise ProviderError(
                provider.kind.value, "get_free_busy", result.error or "free/busy lookup failed"
            )

        busy_by_email: dict[str, list[Interval]] = {}
        for entry in result.availability or []:
            busy_by_email.setdefault(entry.email.lower(), []).extend(
                Interval(slot.start_time, slot.end_time)
                for slot in entry.slots
                if slot.status == "busy"
            )

        resolved = [AttendeeBusy(email, busy_by_email.get(email.lower(), [])) for email in emails]
        log.debug(
            "Resolved busy data for %d attendee(s) (%d without data)",
            len(resolved),
            sum(1 for email in emails if email.lower() not in busy_by_email),
        )
        return resolved
