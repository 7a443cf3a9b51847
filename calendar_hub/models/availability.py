"""Free/busy and meeting-time models."""

from __future__ import annotations

from datetime import datetime, time
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator

from .base import CalendarModel, ensure_aware
from .event import WeekDay

SlotStatus = Literal["free", "busy", "tentative", "outOfOffice"]
AttendeeSlotState = Literal["available", "busy"]

_HHMM = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"


class AvailabilitySlot(CalendarModel):
    """A provider-reported availability interval.  Never persisted."""

    start_time: datetime
    end_time: datetime
    status: SlotStatus = "busy"

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class AttendeeAvailability(CalendarModel):
    email: str
    slots: list[AvailabilitySlot] = []


class AttendeeSlotStatus(CalendarModel):
    email: str
    status: AttendeeSlotState


class MeetingTimeSuggestion(CalendarModel):
    """A ranked candidate meeting slot, computed per request."""

    start_time: datetime
    end_time: datetime
    confidence: float = Field(ge=0.0, le=1.0)
    attendee_availability: list[AttendeeSlotStatus] = []


class WorkingHours(CalendarModel):
    start: str = Field(default="09:00", pattern=_HHMM)    # HH:MM, 24-hour
    end: str = Field(default="17:00", pattern=_HHMM)
    days: list[WeekDay] = Field(default=[1, 2, 3, 4, 5], min_length=1)

    @property
    def start_clock(self) -> time:
        return _parse_clock(self.start)

    @property
    def end_clock(self) -> time:
        return _parse_clock(self.end)


def _parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class AvailabilityRequest(CalendarModel):
    emails: list[str] = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    timezone: str

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _check_range(self) -> "AvailabilityRequest":
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be later than startTime")
        return self


class FindMeetingTimeRequest(CalendarModel):
    """Meeting-time search parameters as received from a caller."""

    attendees: list[str] = Field(min_length=1)
    duration_minutes: int | None = Field(
        default=None,
        ge=15,
        le=480,
        alias="durationMinutes",
        validation_alias=AliasChoices("durationMinutes", "duration", "duration_minutes"),
    )
    start_date: datetime
    end_date: datetime
    working_hours: WorkingHours | None = None
    timezone: str
    buffer_minutes: int | None = Field(
        default=None,
        ge=0,
        le=60,
        alias="bufferMinutes",
        validation_alias=AliasChoices("bufferMinutes", "bufferTime", "buffer_minutes"),
    )

    @field_validator("start_date", "end_date")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _check_range(self) -> "FindMeetingTimeRequest":
        if self.end_date <= self.start_date:
            raise ValueError("endDate must be later than startDate")
        return self
