"""Microsoft Graph calendar provider implementation.

Uses one pooled ``httpx.AsyncClient`` per provider instance against the
Graph v1.0 REST API.  The caller's bearer token is sent per request, never
stored on the shared client.

Wire-format notes:

* Graph ``dateTime`` values are wall-clock times in the paired ``timeZone``
  with no offset, so egress converts to the event's zone first.
* tentative acceptance is ``tentativelyAccepted``; anything Graph reports
  that has no canonical counterpart (``none``, ``notResponded``,
  ``organizer``) reads as ``needsAction``.
* recurrence is a structured ``pattern`` + ``range`` object.
* Graph carries a single reminder per event.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from calendar_hub.config import MicrosoftProviderConfig
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
from calendar_hub.timezones import is_valid_timezone, zone

from .base import CalendarProvider, ProviderKind, describe_error

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
SCOPES = [
    "offline_access",
    "https://graph.microsoft.com/Calendars.ReadWrite",
    "https://graph.microsoft.com/Calendars.ReadWrite.Shared",
]

_DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

_PATTERN_TYPES = {
    "daily": "daily",
    "weekly": "weekly",
    "monthly": "absoluteMonthly",
    "yearly": "absoluteYearly",
}
_RELATIVE_TYPES = {"monthly": "relativeMonthly", "yearly": "relativeYearly"}
_WEEK_INDEXES = ["first", "second", "third", "fourth", "last"]
_FREQUENCIES = {
    "daily": "daily",
    "weekly": "weekly",
    "absoluteMonthly": "monthly",
    "relativeMonthly": "monthly",
    "absoluteYearly": "yearly",
    "relativeYearly": "yearly",
}

_BUSY_STATUSES = {
    "free": "free",
    "busy": "busy",
    "tentative": "tentative",
    "oof": "outOfOffice",
}

_GRAPH_DATETIME = "%Y-%m-%dT%H:%M:%S"


# ----------------------------------------------------------------------
# Canonical <-> Graph mapping
# ----------------------------------------------------------------------


def to_graph_status(status: str | None) -> str:
    return {
        "accepted": "accepted",
        "declined": "declined",
        "tentative": "tentativelyAccepted",
    }.get(status or "", "none")


def from_graph_status(response: str | None) -> str:
    return {
        "accepted": "accepted",
        "declined": "declined",
        "tentativelyAccepted": "tentative",
    }.get(response or "", "needsAction")


def from_graph_busy_status(status: str | None) -> str:
    return _BUSY_STATUSES.get(status or "", "free")


def to_graph_datetime(dt: datetime, tz_name: str) -> dict[str, str]:
    """Wall-clock time in ``tz_name``, or UTC when that wall time is ambiguous.

    Graph cannot tell the two occurrences of a repeated fall-back hour apart,
    so such instants go out in UTC instead.
    """
    local = dt.astimezone(zone(tz_name))
    if local.replace(fold=1 - local.fold).utcoffset() != local.utcoffset():
        return {"dateTime": _utc_wall(dt), "timeZone": "UTC"}
    return {"dateTime": local.strftime(_GRAPH_DATETIME), "timeZone": tz_name}


def _utc_wall(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(_GRAPH_DATETIME)


def parse_graph_datetime(value: dict[str, Any], default_timezone: str = "UTC") -> datetime:
    """Read a Graph ``dateTimeTimeZone`` pair as an aware datetime.

    Graph emits up to seven fractional digits; anything past microseconds is
    dropped.  Non-IANA zone names fall back to ``default_timezone``.
    """
    raw = value["dateTime"]
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    head, dot, tail = raw.partition(".")
    if dot:
        digits = "".join(ch for ch in tail if ch.isdigit())
        offset = tail[len(digits):]
        raw = f"{head}.{digits[:6]}{offset}"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone(value.get("timeZone"), default_timezone))
    return parsed


def to_graph_recurrence(rule: RecurrenceRule, start: date) -> dict[str, Any]:
    """Build a Graph ``patternedRecurrence`` anchored on the event's start date."""
    # Weekday-based monthly and yearly rules need the relative pattern;
    # absolute patterns ignore daysOfWeek.
    relative = (
        rule.frequency in ("monthly", "yearly") and bool(rule.by_week_day) and not rule.by_month_day
    )
    pattern: dict[str, Any] = {
        "type": _RELATIVE_TYPES[rule.frequency] if relative else _PATTERN_TYPES[rule.frequency],
        "interval": rule.interval or 1,
        "firstDayOfWeek": "sunday",
    }
    if rule.by_week_day:
        pattern["daysOfWeek"] = [_DAY_NAMES[day] for day in rule.by_week_day]
    elif rule.frequency == "weekly":
        pattern["daysOfWeek"] = [_DAY_NAMES[(start.weekday() + 1) % 7]]
    if relative:
        pattern["index"] = _WEEK_INDEXES[min((start.day - 1) // 7, 4)]
    elif rule.frequency in ("monthly", "yearly"):
        pattern["dayOfMonth"] = rule.by_month_day[0] if rule.by_month_day else start.day
    if rule.frequency == "yearly":
        pattern["month"] = start.month

    recurrence_range: dict[str, Any] = {"startDate": start.isoformat()}
    if rule.count:
        recurrence_range["type"] = "numbered"
        recurrence_range["numberOfOccurrences"] = rule.count
    elif rule.until:
        recurrence_range["type"] = "endDate"
        recurrence_range["endDate"] = rule.until.isoformat()
    else:
        recurrence_range["type"] = "noEnd"

    return {"pattern": pattern, "range": recurrence_range}


def from_graph_recurrence(payload: dict[str, Any] | None) -> RecurrenceRule | None:
    if not payload or not payload.get("pattern"):
        return None
    pattern = payload["pattern"]
    frequency = _FREQUENCIES.get(pattern.get("type", ""))
    if frequency is None:
        return None

    rule: dict[str, Any] = {"frequency": frequency, "interval": pattern.get("interval") or 1}
    if pattern.get("daysOfWeek"):
        rule["by_week_day"] = [
            _DAY_NAMES.index(day.lower())
            for day in pattern["daysOfWeek"]
            if day.lower() in _DAY_NAMES
        ]
    if pattern.get("dayOfMonth"):
        rule["by_month_day"] = [pattern["dayOfMonth"]]

    recurrence_range = payload.get("range") or {}
    if recurrence_range.get("type") == "numbered" and recurrence_range.get("numberOfOccurrences"):
        rule["count"] = recurrence_range["numberOfOccurrences"]
    elif recurrence_range.get("type") == "endDate" and recurrence_range.get("endDate"):
        rule["until"] = date.fromisoformat(recurrence_range["endDate"])
    return RecurrenceRule(**rule)


def to_graph_event(event: CalendarEvent) -> dict[str, Any]:
    tz_name = event.timezone
    body: dict[str, Any] = {
        "subject": event.title,
        "start": to_graph_datetime(event.start_time, tz_name),
        "end": to_graph_datetime(event.end_time, tz_name),
        "attendees": [
            {
                "emailAddress": {
                    "address": attendee.email,
                    **({"name": attendee.name} if attendee.name else {}),
                },
                "status": {"response": to_graph_status(attendee.status)},
                "type": "required" if attendee.required else "optional",
            }
            for attendee in event.attendees
        ],
        "isReminderOn": bool(event.reminders),
    }
    if event.reminders:
        body["reminderMinutesBeforeStart"] = event.reminders[0].minutes_before_start
    if event.description:
        body["body"] = {"contentType": "HTML", "content": event.description}
    if event.location:
        body["location"] = {"displayName": event.location}
    if event.recurrence:
        local_start = event.start_time.astimezone(zone(tz_name)).date()
        body["recurrence"] = to_graph_recurrence(event.recurrence, local_start)
    return body


def from_graph_event(payload: dict[str, Any], default_timezone: str = "UTC") -> CalendarEvent:
    start = payload["start"]
    tz_name = payload.get("originalStartTimeZone") or start.get("timeZone")
    if not is_valid_timezone(tz_name):
        tz_name = default_timezone

    attendees = [
        Attendee(
            email=item["emailAddress"]["address"],
            name=item["emailAddress"].get("name"),
            status=from_graph_status((item.get("status") or {}).get("response")),
            required=item.get("type", "required") == "required",
        )
        for item in payload.get("attendees", [])
        if (item.get("emailAddress") or {}).get("address")
    ]

    organizer = None
    organizer_address = (payload.get("organizer") or {}).get("emailAddress") or {}
    if organizer_address.get("address"):
        organizer = Attendee(
            email=organizer_address["address"],
            name=organizer_address.get("name"),
            status="accepted",
        )

    reminders = []
    if payload.get("isReminderOn"):
        reminders.append(
            Reminder(
                method="popup",
                minutes_before_start=payload.get("reminderMinutesBeforeStart", 15),
            )
        )

    metadata = {
        key: payload[key]
        for key in ("webLink", "seriesMasterId", "iCalUId", "showAs")
        if payload.get(key)
    }

    return CalendarEvent(
        id=payload.get("id"),
        title=payload.get("subject") or "",
        description=(payload.get("body") or {}).get("content") or None,
        start_time=parse_graph_datetime(start, tz_name),
        end_time=parse_graph_datetime(payload["end"], tz_name),
        timezone=tz_name,
        location=(payload.get("location") or {}).get("displayName") or None,
        attendees=attendees,
        organizer=organizer,
        recurrence=from_graph_recurrence(payload.get("recurrence")),
        reminders=reminders,
        metadata=metadata,
    )


def _events_path(calendar_id: str, event_id: str | None = None) -> str:
    base = "/me/events" if calendar_id == "primary" else f"/me/calendars/{quote(calendar_id, safe='')}/events"
    if event_id:
        return f"{base}/{quote(event_id, safe='')}"
    return base


def _calendar_view_path(calendar_id: str) -> str:
    if calendar_id == "primary":
        return "/me/calendarView"
    return f"/me/calendars/{quote(calendar_id, safe='')}/calendarView"


def _graph_error(exc: httpx.HTTPStatusError) -> str:
    """Pull Graph's ``error.message`` out of a failed response when present."""
    detail = exc.response.reason_phrase
    try:
        body = exc.response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code") or detail
        elif isinstance(error, str):
            detail = body.get("error_description") or error
    return f"Microsoft Graph error {exc.response.status_code}: {detail}"


# ----------------------------------------------------------------------
# Provider
# ----------------------------------------------------------------------


class MicrosoftCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Microsoft Graph."""

    kind = ProviderKind.MICROSOFT

    def __init__(
        self,
        config: MicrosoftProviderConfig,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(base_url=GRAPH_BASE_URL, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        credentials: CalendarCredentials,
        **kwargs: Any,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        resp = await self._client.request(method, url, headers=headers, **kwargs)
        resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    async def _token_request(self, form: dict[str, str]) -> TokenSet:
        form = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "scope": " ".join(SCOPES),
            **form,
        }
        resp = await self._client.post(
            f"{LOGIN_BASE_URL}/{self._config.tenant_id}/oauth2/v2.0/token",
            data=form,
        )
        resp.raise_for_status()
        tokens = resp.json()
        expires_at = None
        if tokens.get("expires_in"):
            expires_at = datetime.now(tz=timezone.utc).replace(microsecond=0) + timedelta(
                seconds=int(tokens["expires_in"])
            )
        return TokenSet(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_at=expires_at,
        )

    def _failure(self, operation: str, organization_id: str, exc: Exception, **context: Any) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            error = _graph_error(exc)
        elif isinstance(exc, httpx.HTTPError):
            error = f"Microsoft Graph request failed: {describe_error(exc)}"
        else:
            logger.exception("Microsoft Graph %s failed", operation)
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
        """POST the event; Graph always sends invitations to attendees."""
        try:
            data = await self._request(
                "POST", _events_path(calendar_id), credentials, json=to_graph_event(event)
            )
            created = from_graph_event(data, event.timezone)
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
            data = await self._request(
                "PATCH", _events_path(calendar_id, event_id), credentials, json=to_graph_event(event)
            )
            updated = from_graph_event(data, event.timezone)
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
        """DELETE the event.  Graph has no switch to suppress cancellation mail."""
        try:
            await self._request("DELETE", _events_path(calendar_id, event_id), credentials)
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
        """List events; a bounded window expands recurring series via calendarView."""
        if page_token:
            # Graph paging hands back a complete @odata.nextLink URL.
            if not page_token.startswith(GRAPH_BASE_URL + "/"):
                error = "Page token is not a Microsoft Graph link"
                record_operation(
                    "list_events", self.kind.value, credentials.organization_id, False,
                    error=error, calendar_id=calendar_id,
                )
                return EventListResult(success=False, error=error)
            url, params = page_token, None
        elif start_time is not None and end_time is not None:
            url = _calendar_view_path(calendar_id)
            params = {
                "startDateTime": start_time.astimezone(timezone.utc).isoformat(),
                "endDateTime": end_time.astimezone(timezone.utc).isoformat(),
                "$top": str(max_results),
                "$orderby": "start/dateTime",
            }
        else:
            url = _events_path(calendar_id)
            params = {"$top": str(max_results), "$orderby": "start/dateTime"}
            # Same one-sided bounds as Google timeMin/timeMax.
            bounds = []
            if start_time is not None:
                bounds.append(f"end/dateTime gt '{_utc_wall(start_time)}'")
            if end_time is not None:
                bounds.append(f"start/dateTime lt '{_utc_wall(end_time)}'")
            if bounds:
                params["$filter"] = " and ".join(bounds)

        try:
            data = await self._request("GET", url, credentials, params=params)
            events = [from_graph_event(item) for item in data.get("value", [])]
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
            next_page_token=data.get("@odata.nextLink"),
        )

    async def get_free_busy(
        self,
        credentials: CalendarCredentials,
        emails: list[str],
        start_time: datetime,
        end_time: datetime,
        timezone: str,
    ) -> FreeBusyResult:
        """One getSchedule call for all addresses at 15-minute granularity."""
        body = {
            "schedules": list(emails),
            "startTime": to_graph_datetime(start_time, timezone),
            "endTime": to_graph_datetime(end_time, timezone),
            "availabilityViewInterval": 15,
        }

        try:
            data = await self._request("POST", "/me/calendar/getSchedule", credentials, json=body)

            by_email: dict[str, list[AvailabilitySlot]] = {}
            for index, schedule in enumerate(data.get("value", [])):
                schedule_id = schedule.get("scheduleId")
                if not schedule_id and index < len(emails):
                    schedule_id = emails[index]
                if not schedule_id:
                    continue
                if schedule.get("error"):
                    logger.info("No schedule for %s: %s", schedule_id, schedule["error"])
                by_email[schedule_id.lower()] = [
                    AvailabilitySlot(
                        start_time=parse_graph_datetime(item["start"], timezone),
                        end_time=parse_graph_datetime(item["end"], timezone),
                        status=from_graph_busy_status(item.get("status")),
                    )
                    for item in schedule.get("scheduleItems", [])
                ]

            availability = [
                AttendeeAvailability(email=email, slots=by_email.get(email.lower(), []))
                for email in emails
            ]
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
        params = {
            "client_id": self._config.client_id,
            "response_type": "code",
            "redirect_uri": self._config.redirect_uri,
            "scope": " ".join(SCOPES),
            "response_mode": "query",
        }
        if state:
            params["state"] = state
        return (
            f"{LOGIN_BASE_URL}/{self._config.tenant_id}/oauth2/v2.0/authorize?"
            + urlencode(params, quote_via=quote)
        )

    async def exchange_code(self, code: str) -> TokenResult:
        try:
            tokens = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._config.redirect_uri,
                }
            )
        except Exception as exc:
            error = self._failure("exchange_code", "", exc)
            return TokenResult(success=False, error=error)

        record_operation("exchange_code", self.kind.value, "", True)
        return TokenResult(success=True, tokens=tokens)

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        try:
            tokens = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except Exception as exc:
            error = self._failure("refresh_token", "", exc)
            return TokenResult(success=False, error=error)

        record_operation("refresh_token", self.kind.value, "", True)
        return TokenResult(success=True, tokens=tokens)
