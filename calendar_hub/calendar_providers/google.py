"""Google Calendar provider implementation.

Talks to the Calendar API v3 through ``googleapiclient`` using the caller's
OAuth2 user credentials.  The discovery client is synchronous, so every
request runs in the default thread pool.

Wire-format notes:

* attendee ``responseStatus`` values match the canonical statuses; anything
  else is treated as ``needsAction``.
* recurrence is a list of iCalendar lines; only the ``RRULE:`` line is
  produced or read.
* free/busy is a single ``freebusy.query`` covering every attendee.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timezone
from functools import partial
from typing import Any, Callable

from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calendar_hub.config import GoogleProviderConfig
from calendar_hub.models import (
    Attendee,
    AttendeeAvailability,
    AvailabilitySlot,
    CalendarCredentials,
    CalendarEvent,
    EventListResult,
    EventResult,
    FreeBusyResult,
    RecurrenceRule,
    Reminder,
    TokenResult,
    TokenSet,
)
from calendar_hub.operation_log import record_operation
from calendar_hub.timezones import zone

from .base import CalendarProvider, ProviderKind, describe_error

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"

_STATUSES = {"accepted", "declined", "tentative", "needsAction"}
_RRULE_DAYS = ["SU", "MO", "TU", "WE", "TH", "FR", "SA"]
_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}


# ----------------------------------------------------------------------
# Canonical <-> Google mapping
# ----------------------------------------------------------------------


def to_google_status(status: str | None) -> str:
    return status if status in _STATUSES else "needsAction"


def from_google_status(status: str | None) -> str:
    return status if status in _STATUSES else "needsAction"


def to_rrule(rule: RecurrenceRule) -> str:
    """Serialize a recurrence rule to a single ``RRULE:`` line."""
    parts = [f"FREQ={rule.frequency.upper()}"]
    if rule.interval:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.count:
        parts.append(f"COUNT={rule.count}")
    elif rule.until:
        parts.append(f"UNTIL={rule.until.strftime('%Y%m%d')}")
    if rule.by_week_day:
        parts.append("BYDAY=" + ",".join(_RRULE_DAYS[day] for day in rule.by_week_day))
    if rule.by_month_day:
        parts.append("BYMONTHDAY=" + ",".join(str(day) for day in rule.by_month_day))
    return "RRULE:" + ";".join(parts)


def parse_rrule(lines: list[str]) -> RecurrenceRule | None:
    """Read the first ``RRULE:`` line of a Google recurrence list."""
    line = next((entry for entry in lines if entry.upper().startswith("RRULE:")), None)
    if line is None:
        return None

    fields: dict[str, str] = {}
    for part in line[len("RRULE:"):].split(";"):
        key, sep, value = part.partition("=")
        if sep:
            fields[key.strip().upper()] = value.strip()

    frequency = fields.get("FREQ", "").lower()
    if frequency not in _FREQUENCIES:
        return None

    rule: dict[str, Any] = {"frequency": frequency}
    if "INTERVAL" in fields:
        rule["interval"] = int(fields["INTERVAL"])
    if "COUNT" in fields:
        rule["count"] = int(fields["COUNT"])
    elif "UNTIL" in fields:
        # Date (YYYYMMDD) or date-time (YYYYMMDDTHHMMSSZ)
        rule["until"] = datetime.strptime(fields["UNTIL"][:8], "%Y%m%d").date()
    if fields.get("BYDAY"):
        # Ordinal prefixes such as "1MO" or "-1FR" are dropped.
        rule["by_week_day"] = [
            _RRULE_DAYS.index(token[-2:].upper())
            for token in fields["BYDAY"].split(",")
            if token[-2:].upper() in _RRULE_DAYS
        ]
    if fields.get("BYMONTHDAY"):
        days = [int(token) for token in fields["BYMONTHDAY"].split(",")]
        rule["by_month_day"] = [day for day in days if 1 <= day <= 31]
    return RecurrenceRule(**rule)


def _to_rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _parse_rfc3339(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _parse_event_time(value: dict, tz_name: str) -> datetime:
    if value.get("dateTime"):
        return _parse_rfc3339(value["dateTime"])
    # All-day events only carry a date.
    return datetime.combine(date.fromisoformat(value["date"]), time(), tzinfo=zone(tz_name))


def to_google_event(event: CalendarEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": _to_rfc3339(event.start_time), "timeZone": event.timezone},
        "end": {"dateTime": _to_rfc3339(event.end_time), "timeZone": event.timezone},
        "attendees": [
            {
                "email": attendee.email,
                **({"displayName": attendee.name} if attendee.name else {}),
                "responseStatus": to_google_status(attendee.status),
                "optional": not attendee.required,
            }
            for attendee in event.attendees
        ],
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": reminder.method, "minutes": reminder.minutes_before_start}
                for reminder in event.reminders
            ],
        },
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location
    if event.recurrence:
        body["recurrence"] = [to_rrule(event.recurrence)]
    return body


def from_google_event(payload: dict[str, Any], default_timezone: str = "UTC") -> CalendarEvent:
    start = payload.get("start", {})
    end = payload.get("end", {})
    tz_name = start.get("timeZone") or default_timezone

    attendees = [
        Attendee(
            email=item["email"],
            name=item.get("displayName"),
            status=from_google_status(item.get("responseStatus")),
            required=not item.get("optional", False),
        )
        for item in payload.get("attendees", [])
        if item.get("email")
    ]

    organizer = None
    if payload.get("organizer", {}).get("email"):
        organizer = Attendee(
            email=payload["organizer"]["email"],
            name=payload["organizer"].get("displayName"),
            status="accepted",
        )

    reminders = [
        Reminder(
            method=item.get("method") if item.get("method") in ("email", "popup") else "popup",
            minutes_before_start=item.get("minutes", 0),
        )
        for item in payload.get("reminders", {}).get("overrides", [])
    ]

    metadata = {
        key: payload[key]
        for key in ("htmlLink", "recurringEventId", "status", "iCalUID")
        if payload.get(key)
    }

    return CalendarEvent(
        id=payload.get("id"),
        title=payload.get("summary", ""),
        description=payload.get("description"),
        start_time=_parse_event_time(start, tz_name),
        end_time=_parse_event_time(end, tz_name),
        timezone=tz_name,
        location=payload.get("location"),
        attendees=attendees,
        organizer=organizer,
        recurrence=parse_rrule(payload.get("recurrence", [])),
        reminders=reminders,
        metadata=metadata,
    )


def _send_updates(send_notifications: bool) -> str:
    return "all" if send_notifications else "none"


# ----------------------------------------------------------------------
# Provider
# ----------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    kind = ProviderKind.GOOGLE

    def __init__(
        self,
        config: GoogleProviderConfig,
        service_factory: Callable[[CalendarCredentials], Any] | None = None,
    ) -> None:
        self._config = config
        self._service_factory = service_factory or self._build_service

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _user_credentials(self, credentials: CalendarCredentials) -> Credentials:
        expiry = None
        if credentials.expires_at is not None:
            # google-auth compares against naive UTC
            expiry = credentials.expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
            scopes=SCOPES,
            expiry=expiry,
        )

    def _build_service(self, credentials: CalendarCredentials) -> Any:
        return build(
            "calendar",
            "v3",
            credentials=self._user_credentials(credentials),
            cache_discovery=False,
        )

    def _flow(self) -> Flow:
        client_config = {
            "web": {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self._config.redirect_uri],
            }
        }
        # The exchange happens in a later request, so no PKCE verifier.
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=self._config.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _failure(self, operation: str, organization_id: str, exc: Exception, **context: Any) -> str:
        if isinstance(exc, HttpError):
            error = f"Google API error {exc.resp.status}: {exc.reason}"
        else:
            logger.exception("Google Calendar %s failed", operation)
            error = describe_error(exc)
        record_operation(operation, self.kind.value, organization_id, False, error=error, **context)
        return error

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def create_event(
        self,
        credentials: CalendarCredentials,
        event: CalendarEvent,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        """Insert an event; attendees are emailed when ``send_notifications``."""
        try:
            service = self._service_factory(credentials)
            response = await self._run_in_executor(
                service.events()
                .insert(
                    calendarId=calendar_id,
                    body=to_google_event(event),
                    sendUpdates=_send_updates(send_notifications),
                )
                .execute
            )
            created = from_google_event(response, event.timezone)
        except Exception as exc:
            error = self._failure(
                "create_event", credentials.organization_id, exc, calendar_id=calendar_id
            )
            return EventResult(success=False, error=error)

        record_operation(
            "create_event", self.kind.value, credentials.organization_id, True,
            event_id=created.id, calendar_id=calendar_id,
        )
        return EventResult(success=True, event_id=created.id, event=created)

    async def update_event(
        self,
        credentials: CalendarCredentials,
        event_id: str,
        event: CalendarEvent,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        try:
            service = self._service_factory(credentials)
            response = await self._run_in_executor(
                service.events()
                .update(
                    calendarId=calendar_id,
                    eventId=event_id,
                    body=to_google_event(event),
                    sendUpdates=_send_updates(send_notifications),
                )
                .execute
            )
            updated = from_google_event(response, event.timezone)
        except Exception as exc:
            error = self._failure(
                "update_event", credentials.organization_id, exc,
                event_id=event_id, calendar_id=calendar_id,
            )
            return EventResult(success=False, error=error)

        record_operation(
            "update_event", self.kind.value, credentials.organization_id, True,
            event_id=event_id, calendar_id=calendar_id,
        )
        return EventResult(success=True, event_id=updated.id or event_id, event=updated)

    async def delete_event(
        self,
        credentials: CalendarCredentials,
        event_id: str,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        try:
            service = self._service_factory(credentials)
            await self._run_in_executor(
                service.events()
                .delete(
                    calendarId=calendar_id,
                    eventId=event_id,
                    sendUpdates=_send_updates(send_notifications),
                )
                .execute
            )
        except Exception as exc:
            error = self._failure(
                "delete_event", credentials.organization_id, exc,
                event_id=event_id, calendar_id=calendar_id,
            )
            return EventResult(success=False, error=error)

        record_operation(
            "delete_event", self.kind.value, credentials.organization_id, True,
            event_id=event_id, calendar_id=calendar_id,
        )
        return EventResult(success=True, event_id=event_id)

    async def list_events(
        self,
        credentials: CalendarCredentials,
        calendar_id: str = "primary",
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        max_results: int = 250,
        page_token: str | None = None,
    ) -> EventListResult:
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": max_results,
            "singleEvents": True,
            "orderBy": "startTime",
        }
        if start_time is not None:
            params["timeMin"] = _to_rfc3339(start_time)
        if end_time is not None:
            params["timeMax"] = _to_rfc3339(end_time)
        if page_token:
            params["pageToken"] = page_token

        try:
            service = self._service_factory(credentials)
            response = await self._run_in_executor(service.events().list(**params).execute)
            calendar_tz = response.get("timeZone") or "UTC"
            events = [from_google_event(item, calendar_tz) for item in response.get("items", [])]
        except Exception as exc:
            error = self._failure(
                "list_events", credentials.organization_id, exc, calendar_id=calendar_id
            )
            return EventListResult(success=False, error=error)

        record_operation(
            "list_events", self.kind.value, credentials.organization_id, True,
            count=len(events), calendar_id=calendar_id,
        )
        return EventListResult(
            success=True,
            events=events,
            next_page_token=response.get("nextPageToken"),
        )

    async def get_free_busy(
        self,
        credentials: CalendarCredentials,
        emails: list[str],
        start_time: datetime,
        end_time: datetime,
        timezone: str,
    ) -> FreeBusyResult:
        """One freebusy.query for all addresses; only busy blocks come back."""
        body = {
            "timeMin": _to_rfc3339(start_time),
            "timeMax": _to_rfc3339(end_time),
            "timeZone": timezone,
            "items": [{"id": email} for email in emails],
        }

        try:
            service = self._service_factory(credentials)
            response = await self._run_in_executor(service.freebusy().query(body=body).execute)

            calendars: dict[str, dict] = response.get("calendars", {})
            availability: list[AttendeeAvailability] = []
            for email in emails:
                entry = calendars.get(email, {})
                if entry.get("errors"):
                    # e.g. notFound for external addresses: treated as free
                    logger.info("No free/busy data for %s: %s", email, entry["errors"])
                slots = [
                    AvailabilitySlot(
                        start_time=_parse_rfc3339(block["start"]),
                        end_time=_parse_rfc3339(block["end"]),
                        status="busy",
                    )
                    for block in entry.get("busy", [])
                ]
                availability.append(AttendeeAvailability(email=email, slots=slots))
        except Exception as exc:
            error = self._failure(
                "get_free_busy", credentials.organization_id, exc, attendees=len(emails)
            )
            return FreeBusyResult(success=False, error=error)

        record_operation(
            "get_free_busy", self.kind.value, credentials.organization_id, True,
            attendees=len(emails),
        )
        return FreeBusyResult(success=True, availability=availability)

    def build_authorization_url(self, state: str | None = None) -> str:
        url, _ = self._flow().authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
            state=state,
        )
        return url

    async def exchange_code(self, code: str) -> TokenResult:
        flow = self._flow()
        try:
            await self._run_in_executor(flow.fetch_token, code=code)
            creds = flow.credentials
        except Exception as exc:
            error = self._failure("exchange_code", "", exc)
            return TokenResult(success=False, error=error)

        record_operation("exchange_code", self.kind.value, "", True)
        return TokenResult(success=True, tokens=self._token_set(creds))

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
            scopes=SCOPES,
        )
        try:
            await self._run_in_executor(creds.refresh, GoogleAuthRequest())
        except Exception as exc:
            error = self._failure("refresh_token", "", exc)
            return TokenResult(success=False, error=error)

        record_operation("refresh_token", self.kind.value, "", True)
        return TokenResult(success=True, tokens=self._token_set(creds))

    @staticmethod
    def _token_set(creds: Credentials) -> TokenSet:
        expires_at = None
        if creds.expiry is not None:
            expires_at = creds.expiry.replace(tzinfo=timezone.utc)
        return TokenSet(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=expires_at,
        )
