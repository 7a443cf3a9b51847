"""Canonical calendar data model."""

from .availability import (
    AttendeeAvailability,
    AttendeeSlotStatus,
    AvailabilityRequest,
    AvailabilitySlot,
    FindMeetingTimeRequest,
    MeetingTimeSuggestion,
    WorkingHours,
)
from .event import Attendee, CalendarEvent, RecurrenceRule, Reminder
from .results import (
    CalendarCredentials,
    EventListResult,
    EventResult,
    FreeBusyResult,
    MeetingTimeResult,
    TokenResult,
    TokenSet,
)

__all__ = [
    "Attendee",
    "AttendeeAvailability",
    "AttendeeSlotStatus",
    "AvailabilityRequest",
    "AvailabilitySlot",
    "CalendarCredentials",
    "CalendarEvent",
    "EventListResult",
    "EventResult",
    "FindMeetingTimeRequest",
    "FreeBusyResult",
    "MeetingTimeResult",
    "MeetingTimeSuggestion",
    "RecurrenceRule",
    "Reminder",
    "TokenResult",
    "TokenSet",
    "WorkingHours",
]
