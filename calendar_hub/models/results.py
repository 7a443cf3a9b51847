"""Credentials, token sets and the result values every operation returns."""

from __future__ import annotations

from datetime import datetime

from .availability import AttendeeAvailability, MeetingTimeSuggestion
from .base import CalendarModel
from .event import CalendarEvent


class CalendarCredentials(CalendarModel):
    """Per-request provider credentials, already extracted by the caller."""

    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    email: str = ""
    organization_id: str = ""
    user_id: str = ""


class TokenSet(CalendarModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


class TokenResult(CalendarModel):
    success: bool
    tokens: TokenSet | None = None
    error: str | None = None


class EventResult(CalendarModel):
    success: bool
    event_id: str | None = None
    event: CalendarEvent | None = None
    error: str | None = None


class EventListResult(CalendarModel):
    success: bool
    events: list[CalendarEvent] | None = None
    next_page_token: str | None = None
    error: str | None = None


class FreeBusyResult(CalendarModel):
    success: bool
    availability: list[AttendeeAvailability] | None = None
    error: str | None = None


class MeetingTimeResult(CalendarModel):
    success: bool
    suggestions: list[MeetingTimeSuggestion] | None = None
    error: str | None = None
