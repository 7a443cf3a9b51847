"""Meeting-slot search.

Walks the requested date range day by day inside working hours, generates
fixed-length candidates on a 15-minute grid, scores each against every
attendee's busy intervals (padded by the buffer on both sides) and returns
the best candidates.

Scoring:

    confidence = (attendees - conflicting attendees) / attendees

Candidates below ``MIN_CONFIDENCE`` are dropped, not just ranked lower.
Ranking is by confidence only; equal scores keep generation order, so the
earlier slot wins a tie.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from calendar_hub.availability import Interval
from calendar_hub.errors import SchedulingValidationError
from calendar_hub.models import AttendeeSlotStatus, MeetingTimeSuggestion, WorkingHours
from calendar_hub.timezones import zone

log = logging.getLogger("calendar_hub.slot_search")

SLOT_STEP = timedelta(minutes=15)
MIN_CONFIDENCE = 0.5


@dataclass
class SlotSearch:
    """Fully resolved search parameters (defaults already applied)."""

    attendees: list[str]
    duration_minutes: int
    start: datetime
    end: datetime
    working_hours: WorkingHours
    buffer_minutes: int
    timezone: str


def find_conflicts(
    slot_start: datetime,
    slot_end: datetime,
    attendees: Sequence[str],
    busy_by_attendee: Mapping[str, Sequence[Interval]],
    buffer: timedelta,
) -> list[str]:
    """Attendees with a busy interval overlapping the slot once padded by ``buffer``."""
    conflicts = []
    for email in attendees:
        for busy in busy_by_attendee.get(email.lower(), ()):
            if slot_start < busy.end + buffer and slot_end > busy.start - buffer:
                conflicts.append(email)
                break
    return conflicts


def confidence(total: int, conflicting: int) -> float:
    return (total - conflicting) / total


class SlotSearchEngine:
    """Rank candidate meeting slots for a group of attendees."""

    def __init__(self, max_suggestions: int = 5) -> None:
        self._max_suggestions = max_suggestions

    def find_slots(
        self,
        request: SlotSearch,
        busy_by_attendee: Mapping[str, Sequence[Interval]],
    ) -> list[MeetingTimeSuggestion]:
        """Return suggestions ordered by descending confidence.

        Args:
            request: Resolved search parameters.
            busy_by_attendee: Busy intervals keyed by attendee email (any
                case).  Missing attendees are treated as fully available.

        Raises:
            SchedulingValidationError: no attendees were given.
        """
        if not request.attendees:
            raise SchedulingValidationError("At least one attendee is required to find a meeting time")

        tz = zone(request.timezone)
        duration = timedelta(minutes=request.duration_minutes)
        buffer = timedelta(minutes=request.buffer_minutes)
        busy = {email.lower(): list(intervals) for email, intervals in busy_by_attendee.items()}
        hours = request.working_hours
        total = len(request.attendees)

        suggestions: list[MeetingTimeSuggestion] = []
        candidates = 0
        for day in self._iter_days(request.start, request.end, tz):
            if (day.weekday() + 1) % 7 not in hours.days:
                continue

            # Step in UTC so every candidate spans exactly `duration` across DST changes.
            day_start = datetime.combine(day, hours.start_clock, tzinfo=tz).astimezone(timezone.utc)
            day_end = datetime.combine(day, hours.end_clock, tzinfo=tz).astimezone(timezone.utc)

            slot_start = day_start
            while slot_start + duration <= day_end:
                slot_end = slot_start + duration
                candidates += 1

                conflicts = find_conflicts(slot_start, slot_end, request.attendees, busy, buffer)
                score = confidence(total, len(conflicts))
                if score >= MIN_CONFIDENCE:
                    suggestions.append(
                        MeetingTimeSuggestion(
                            start_time=slot_start.astimezone(tz),
                            end_time=slot_end.astimezone(tz),
                            confidence=score,
                            attendee_availability=[
                                AttendeeSlotStatus(
                                    email=email,
                                    status="busy" if email in conflicts else "available",
                                )
                                for email in request.attendees
                            ],
                        )
                    )

                slot_start += SLOT_STEP

        # list.sort is stable, including with reverse=True
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        log.debug(
            "Scored %d candidate slot(s), %d above threshold", candidates, len(suggestions)
        )
        return suggestions[: self._max_suggestions]

    @staticmethod
    def _iter_days(start: datetime, end: datetime, tz) -> Iterator[date]:
        """Calendar days from ``start``'s local date while local midnight < ``end``."""
        local_end = end.astimezone(tz)
        day = start.astimezone(tz).date()
        if start.astimezone(tz) < local_end:
            yield day
        day += timedelta(days=1)
        while datetime.combine(day, time(), tzinfo=tz) < local_end:
            yield day
            day += timedelta(days=1)
