"""Application configuration via environment variables.

``Settings`` is read once at process start; ``to_service_config()`` turns it
into the immutable ``CalendarServiceConfig`` that is handed to
``CalendarService``.  Nothing below the facade reads the environment.
"""

from __future__ import annotations

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

from calendar_hub.calendar_providers.base import ProviderKind
from calendar_hub.models import WorkingHours

log = logging.getLogger("calendar_hub.config")


class GoogleProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    redirect_uri: str


class MicrosoftProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    tenant_id: str = "common"
    redirect_uri: str


class MeetingDefaults(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration_minutes: int = 30
    buffer_minutes: int = 15
    max_suggestions: int = 5


class CalendarServiceConfig(BaseModel):
    """Everything the calendar core needs, constructed once at startup."""

    model_config = ConfigDict(frozen=True)

    default_timezone: str = "UTC"
    google: GoogleProviderConfig | None = None
    microsoft: MicrosoftProviderConfig | None = None
    working_hours: WorkingHours = WorkingHours()
    meeting_defaults: MeetingDefaults = MeetingDefaults()

    @property
    def providers(self) -> list[ProviderKind]:
        """Configured providers; the first one is the default."""
        kinds: list[ProviderKind] = []
        if self.google is not None:
            kinds.append(ProviderKind.GOOGLE)
        if self.microsoft is not None:
            kinds.append(ProviderKind.MICROSOFT)
        return kinds


class Settings(BaseSettings):
    # Google Calendar
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:3004/auth/google/callback"

    # Microsoft Graph
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = "common"
    microsoft_redirect_uri: str = "http://localhost:3004/auth/microsoft/callback"

    # Scheduling defaults
    default_timezone: str = "UTC"
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    working_days: str = "1,2,3,4,5"        # 0 = Sunday
    default_meeting_duration: int = 30
    default_buffer_time: int = 15
    max_meeting_suggestions: int = 5

    # Server
    host: str = "127.0.0.1"
    port: int = 3004
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def parsed_working_days(self) -> list[int]:
        return [int(day) for day in self.working_days.split(",") if day.strip()]

    def to_service_config(self) -> CalendarServiceConfig:
        google = None
        if self.google_client_id and self.google_client_secret:
            google = GoogleProviderConfig(
                client_id=self.google_client_id,
                client_secret=self.google_client_secret,
                redirect_uri=self.google_redirect_uri,
            )

        microsoft = None
        if self.microsoft_client_id and self.microsoft_client_secret:
            microsoft = MicrosoftProviderConfig(
                client_id=self.microsoft_client_id,
                client_secret=self.microsoft_client_secret,
                tenant_id=self.microsoft_tenant_id or "common",
                redirect_uri=self.microsoft_redirect_uri,
            )

        return CalendarServiceConfig(
            default_timezone=self.default_timezone,
            google=google,
            microsoft=microsoft,
            working_hours=WorkingHours(
                start=self.working_hours_start,
                end=self.working_hours_end,
                days=self.parsed_working_days(),
            ),
            meeting_defaults=MeetingDefaults(
                duration_minutes=self.default_meeting_duration,
                buffer_minutes=self.default_buffer_time,
                max_suggestions=self.max_meeting_suggestions,
            ),
        )

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        try:
            ZoneInfo(self.default_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(
                f"DEFAULT_TIMEZONE {self.default_timezone!r} is not an IANA time zone."
            ) from None

        try:
            days = self.parsed_working_days()
        except ValueError:
            raise ValueError(
                f"WORKING_DAYS must be a comma-separated list of 0-6, got {self.working_days!r}."
            ) from None
        if not days or any(day < 0 or day > 6 for day in days):
            raise ValueError(
                f"WORKING_DAYS must be a comma-separated list of 0-6, got {self.working_days!r}."
            )

        if self.max_meeting_suggestions < 1:
            raise ValueError("MAX_MEETING_SUGGESTIONS must be at least 1.")

        if self.google_client_id and not self.google_client_secret:
            warnings.append("GOOGLE_CLIENT_SECRET is missing; Google Calendar disabled.")
        if self.microsoft_client_id and not self.microsoft_client_secret:
            warnings.append("MICROSOFT_CLIENT_SECRET is missing; Microsoft calendars disabled.")

        if not (self.google_client_id and self.google_client_secret) and not (
            self.microsoft_client_id and self.microsoft_client_secret
        ):
            warnings.append(
                "No calendar provider configured. Set GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET "
                "or MICROSOFT_CLIENT_ID/MICROSOFT_CLIENT_SECRET in .env."
            )

        return warnings


settings = Settings()
