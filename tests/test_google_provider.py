"""Tests for the Google Calendar adapter (mapping + mocked API client)."""

import os
import sys
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from calendar_hub.calendar_providers import CalendarProvider, ProviderKind
from calendar_hub.calendar_providers.google import (
    GoogleCalendarProvider,
    from_google_event,
    parse_rrule,
    to_google_event,
    to_rrule,
)
from calendar_hub.config import GoogleProviderConfig
from calendar_hub.models import (
    Attendee,
    CalendarCredentials,
    CalendarEvent,
    RecurrenceRule,
    Reminder,
)

CONFIG = GoogleProviderConfig(
    client_id="client-id",
    client_secret="client-secret",
    redirect_uri="http://localhost:3004/auth/google/callback",
)
CREDS = CalendarCredentials(provider="google", access_token="ya29.token", organization_id="org-1")


def _event(**overrides):
    data = {
        "title": "Quarterly planning",
        "description": "Bring numbers",
        "start_time": datetime(2026, 3, 16, 14, 0, tzinfo=ZoneInfo("America/New_York")),
        "end_time": datetime(2026, 3, 16, 15, 0, tzinfo=ZoneInfo("America/New_York")),
        "timezone": "America/New_York",
        "location": "Room 4",
        "attendees": [
            Attendee(email="ann@example.com", name="Ann", status="accepted"),
            Attendee(email="bob@example.com", status="needsAction", required=False),
        ],
        "reminders": [Reminder(method="email", minutes_before_start=30)],
    }
    data.update(overrides)
    return CalendarEvent(**data)


# ── Mapping ────────────────────────────────────────────────────────


class TestGoogleMapping:
    def test_to_google_event(self):
        body = to_google_event(_event())
        assert body["summary"] == "Quarterly planning"
        assert body["start"]["timeZone"] == "America/New_York"
        assert body["start"]["dateTime"] == "2026-03-16T14:00:00-04:00"
        assert body["attendees"][0] == {
            "email": "ann@example.com",
            "displayName": "Ann",
            "responseStatus": "accepted",
            "optional": False,
        }
        assert body["attendees"][1]["optional"] is True
        assert body["reminders"] == {
            "useDefault": False,
            "overrides": [{"method": "email", "minutes": 30}],
        }
        assert "recurrence" not in body

    def test_round_trip(self):
        event = _event(
            recurrence=RecurrenceRule(frequency="weekly", interval=2, count=6, by_week_day=[1, 3])
        )
        payload = {**to_google_event(event), "id": "evt_1"}

        back = from_google_event(payload)

        assert back.id == "evt_1"
        assert back.title == event.title
        assert back.description == event.description
        assert back.location == event.location
        assert back.start_time == event.start_time
        assert back.end_time == event.end_time
        assert back.timezone == event.timezone
        assert back.attendees == event.attendees
        assert back.reminders == event.reminders
        assert back.recurrence == event.recurrence

    def test_unknown_response_status_reads_as_needs_action(self):
        payload = {
            "id": "evt_2",
            "summary": "Sync",
            "start": {"dateTime": "2026-03-16T10:00:00Z"},
            "end": {"dateTime": "2026-03-16T10:30:00Z"},
            "attendees": [{"email": "c@example.com", "responseStatus": "maybe"}],
        }
        event = from_google_event(payload)
        assert event.attendees[0].status == "needsAction"
        assert event.timezone == "UTC"

    def test_all_day_event(self):
        payload = {
            "id": "evt_3",
            "summary": "Offsite",
            "start": {"date": "2026-03-20"},
            "end": {"date": "2026-03-21"},
        }
        event = from_google_event(payload, default_timezone="Europe/London")
        assert event.start_time == datetime(2026, 3, 20, tzinfo=ZoneInfo("Europe/London"))
        assert event.end_time - event.start_time == timedelta(days=1)

    def test_metadata_and_organizer(self):
        payload = {
            "id": "evt_4",
            "summary": "1:1",
            "start": {"dateTime": "2026-03-16T10:00:00Z"},
            "end": {"dateTime": "2026-03-16T10:30:00Z"},
            "htmlLink": "https://calendar.google.com/event?eid=evt_4",
            "status": "confirmed",
            "organizer": {"email": "boss@example.com"},
        }
        event = from_google_event(payload)
        assert event.metadata["htmlLink"].endswith("evt_4")
        assert event.metadata["status"] == "confirmed"
        assert event.organizer.email == "boss@example.com"


class TestRRule:
    def test_weekly_every_two_weeks(self):
        rule = RecurrenceRule(frequency="weekly", interval=2, by_week_day=[1, 3])
        line = to_rrule(rule)
        assert line == "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE"
        assert parse_rrule([line]) == rule

    def test_count_wins_over_until(self):
        rule = RecurrenceRule(frequency="daily", count=5, until=date(2026, 12, 31))
        assert to_rrule(rule) == "RRULE:FREQ=DAILY;COUNT=5"

    def test_until_and_month_days(self):
        rule = RecurrenceRule(frequency="monthly", until=date(2026, 12, 31), by_month_day=[1, 15])
        line = to_rrule(rule)
        assert line == "RRULE:FREQ=MONTHLY;UNTIL=20261231;BYMONTHDAY=1,15"
        assert parse_rrule([line]) == rule

    def test_parse_ignores_exdate_and_ordinals(self):
        rule = parse_rrule([
            "EXDATE;TZID=America/New_York:20260320T140000",
            "RRULE:FREQ=MONTHLY;BYDAY=1MO;UNTIL=20260601T000000Z",
        ])
        assert rule.frequency == "monthly"
        assert rule.by_week_day == [1]
        assert rule.until == date(2026, 6, 1)

    def test_parse_without_rrule(self):
        assert parse_rrule([]) is None
        assert parse_rrule(["RRULE:FREQ=SECONDLY"]) is None


# ── Provider (mocked API client) ───────────────────────────────────


class TestGoogleCalendarProvider:
    @pytest.fixture
    def service(self):
        return MagicMock()

    @pytest.fixture
    def provider(self, service):
        return GoogleCalendarProvider(CONFIG, service_factory=lambda credentials: service)

    def test_is_calendar_provider(self, provider):
        assert isinstance(provider, CalendarProvider)
        assert provider.kind is ProviderKind.GOOGLE

    @pytest.mark.asyncio
    async def test_create_event(self, provider, service):
        event = _event()
        service.events.return_value.insert.return_value.execute.return_value = {
            **to_google_event(event),
            "id": "evt_123",
            "htmlLink": "https://calendar.google.com/event/evt_123",
        }

        result = await provider.create_event(CREDS, event, "primary", send_notifications=False)

        assert result.success
        assert result.event_id == "evt_123"
        assert result.event.metadata["htmlLink"].endswith("evt_123")
        kwargs = service.events.return_value.insert.call_args.kwargs
        assert kwargs["calendarId"] == "primary"
        assert kwargs["sendUpdates"] == "none"

    @pytest.mark.asyncio
    async def test_update_event(self, provider, service):
        event = _event(title="Moved")
        service.events.return_value.update.return_value.execute.return_value = {
            **to_google_event(event),
            "id": "evt_123",
        }

        result = await provider.update_event(CREDS, "evt_123", event)

        assert result.success
        assert result.event.title == "Moved"
        kwargs = service.events.return_value.update.call_args.kwargs
        assert kwargs["eventId"] == "evt_123"
        assert kwargs["sendUpdates"] == "all"

    @pytest.mark.asyncio
    async def test_delete_event(self, provider, service):
        service.events.return_value.delete.return_value.execute.return_value = ""

        result = await provider.delete_event(CREDS, "evt_123")

        assert result.success
        assert result.event_id == "evt_123"

    @pytest.mark.asyncio
    async def test_delete_event_failure(self, provider, service):
        service.events.return_value.delete.return_value.execute.side_effect = Exception("Not found")

        result = await provider.delete_event(CREDS, "evt_404")

        assert result.success is False
        assert "Not found" in result.error

    @pytest.mark.asyncio
    async def test_http_error_becomes_result(self, provider, service):
        from googleapiclient.errors import HttpError

        resp = MagicMock(status=403, reason="Forbidden")
        service.events.return_value.insert.return_value.execute.side_effect = HttpError(
            resp, b'{"error": {"message": "Forbidden"}}'
        )

        result = await provider.create_event(CREDS, _event())

        assert result.success is False
        assert result.error.startswith("Google API error 403")

    @pytest.mark.asyncio
    async def test_list_events(self, provider, service):
        service.events.return_value.list.return_value.execute.return_value = {
            "timeZone": "Europe/Berlin",
            "nextPageToken": "page-2",
            "items": [
                {
                    "id": "evt_1",
                    "summary": "Standup",
                    "start": {"dateTime": "2026-03-16T09:00:00+01:00"},
                    "end": {"dateTime": "2026-03-16T09:15:00+01:00"},
                }
            ],
        }
        start = datetime(2026, 3, 16, tzinfo=timezone.utc)

        result = await provider.list_events(
            CREDS, "primary", start, start + timedelta(days=1), 10, page_token="page-1"
        )

        assert result.success
        assert result.next_page_token == "page-2"
        assert result.events[0].timezone == "Europe/Berlin"
        kwargs = service.events.return_value.list.call_args.kwargs
        assert kwargs["maxResults"] == 10
        assert kwargs["pageToken"] == "page-1"
        assert kwargs["singleEvents"] is True
        assert kwargs["timeMin"] == "2026-03-16T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_free_busy_single_query(self, provider, service):
        service.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {
                "ann@example.com": {
                    "busy": [
                        {"start": "2026-03-16T10:00:00Z", "end": "2026-03-16T11:00:00Z"},
                    ]
                },
                "ext@other.org": {"errors": [{"domain": "global", "reason": "notFound"}]},
            }
        }
        start = datetime(2026, 3, 16, tzinfo=timezone.utc)
        emails = ["ann@example.com", "ext@other.org", "carl@example.com"]

        result = await provider.get_free_busy(CREDS, emails, start, start + timedelta(days=1), "UTC")

        assert result.success
        assert [a.email for a in result.availability] == emails
        assert len(result.availability[0].slots) == 1
        assert result.availability[0].slots[0].status == "busy"
        assert result.availability[1].slots == []
        assert result.availability[2].slots == []
        assert service.freebusy.return_value.query.call_count == 1
        body = service.freebusy.return_value.query.call_args.kwargs["body"]
        assert body["items"] == [{"id": e} for e in emails]

    @pytest.mark.asyncio
    async def test_free_busy_failure(self, provider, service):
        service.freebusy.return_value.query.return_value.execute.side_effect = RuntimeError("boom")
        start = datetime(2026, 3, 16, tzinfo=timezone.utc)

        result = await provider.get_free_busy(CREDS, ["a@x.com"], start, start + timedelta(hours=1), "UTC")

        assert result.success is False
        assert result.error == "boom"


# ── OAuth ──────────────────────────────────────────────────────────


class TestGoogleOAuth:
    def test_authorization_url(self):
        provider = GoogleCalendarProvider(CONFIG)
        url = provider.build_authorization_url(state="xyz")
        assert url.startswith("https://accounts.google.com/o/oauth2/auth?")
        assert "client_id=client-id" in url
        assert "access_type=offline" in url
        assert "state=xyz" in url

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        provider = GoogleCalendarProvider(CONFIG)
        expiry = datetime(2026, 3, 16, 12, 0)
        with patch("calendar_hub.calendar_providers.google.Flow") as mock_flow_cls:
            flow = mock_flow_cls.from_client_config.return_value
            flow.credentials = MagicMock(token="access", refresh_token="refresh", expiry=expiry)

            result = await provider.exchange_code("auth-code")

        assert result.success
        assert result.tokens.access_token == "access"
        assert result.tokens.refresh_token == "refresh"
        assert result.tokens.expires_at == expiry.replace(tzinfo=timezone.utc)
        flow.fetch_token.assert_called_once_with(code="auth-code")

    @pytest.mark.asyncio
    async def test_exchange_code_failure(self):
        provider = GoogleCalendarProvider(CONFIG)
        with patch("calendar_hub.calendar_providers.google.Flow") as mock_flow_cls:
            mock_flow_cls.from_client_config.return_value.fetch_token.side_effect = ValueError(
                "invalid_grant"
            )
            result = await provider.exchange_code("bad-code")

        assert result.success is False
        assert "invalid_grant" in result.error

    @pytest.mark.asyncio
    async def test_refresh_token(self):
        provider = GoogleCalendarProvider(CONFIG)
        with patch("calendar_hub.calendar_providers.google.Credentials") as mock_creds_cls:
            creds = mock_creds_cls.return_value
            creds.token = "fresh"
            creds.refresh_token = "refresh"
            creds.expiry = None

            result = await provider.refresh_token("refresh")

        assert result.success
        assert result.tokens.access_token == "fresh"
        assert result.tokens.expires_at is None
        creds.refresh.assert_called_once()
