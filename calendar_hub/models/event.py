"""Provider-independent calendar event model.

These are the only event representations that cross the ``CalendarService``
boundary.  Provider wire formats stay inside their adapters.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator

from .base import CalendarModel, ensure_aware

AttendeeStatus = Literal["accepted", "declined", "tentative", "needsAction"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]
ReminderMethod = Literal["email", "popup"]

WeekDay = Annotated[int, Field(ge=0, le=6)]      # 0 = Sunday
MonthDay = Annotated[int, Field(ge=1, le=31)]


class Attendee(CalendarModel):
    """One invitee; ``email`` is the key within an event's attendee list."""

    email: str
    name: str | None = None
    status: AttendeeStatus = "needsAction"
    required: bool = True

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("attendee email must not be empty")
        return value


class RecurrenceRule(CalendarModel):
    """Recurrence pattern.

    Only one termination condition is honored when serialized: ``count``
    wins over ``until`` if both are set.
    """

    frequency: Frequency
    interval: int | None = Field(default=None, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: date | None = None
    by_week_day: list[WeekDay] | None = None
    by_month_day: list[MonthDay] | None = None


class Reminder(CalendarModel):
    method: ReminderMethod = "popup"
    minutes_before_start: int = Field(
        default=15,
        ge=0,
        alias="minutesBeforeStart",
        validation_alias=AliasChoices(
            "minutesBeforeStart", "minutes", "minutes_before_start"
        ),
    )


class CalendarEvent(CalendarModel):
    """A calendar event in canonical form."""

    id: str | None = None
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"                  # IANA zone name
    location: str | None = None
    attendees: list[Attendee] = []
    organizer: Attendee | None = None
    recurrence: RecurrenceRule | None = None
    reminders: list[Reminder] = []
    metadata: dict[str, Any] = {}          # provider extras (links, series ids)

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "CalendarEvent":
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be later than startTime")
        seen: set[str] = set()
        for attendee in self.attendees:
            key = attendee.email.lower()
            if key in seen:
                raise ValueError(f"duplicate attendee email: {attendee.email}")
            seen.add(key)
        return self
