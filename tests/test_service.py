"""Tests for the CalendarService facade."""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from calendar_hub.calendar_providers import ProviderKind
from calendar_hub.config import CalendarServiceConfig, GoogleProviderConfig, MeetingDefaults
from calendar_hub.errors import CalendarValidationError
from calendar_hub.models import (
    AttendeeAvailability,
    AvailabilitySlot,
    CalendarCredentials,
    CalendarEvent,
    EventListResult,
    EventResult,
    FindMeetingTimeRequest,
    FreeBusyResult,
    TokenResult,
    TokenSet,
    WorkingHours,
)
from calendar_hub.service import CalendarService, build_providers

CREDS = CalendarCredentials(provider="google", access_token="token", organization_id="org-1")
MONDAY = datetime(2026, 3, 16, tzinfo=timezone.utc)


def _at(hour, minute=0):
    return MONDAY + timedelta(hours=hour, minutes=minute)


def _fake_provider(kind=ProviderKind.GOOGLE, availability=None):
    provider = MagicMock()
    provider.kind = kind
    provider.create_event = AsyncMock(
        side_effect=lambda creds, event, calendar_id, notify: EventResult(
            success=True, event_id="evt_1", event=event.model_copy(update={"id": "evt_1"})
        )
    )
    provider.update_event = AsyncMock(return_value=EventResult(success=True, event_id="evt_1"))
    provider.delete_event = AsyncMock(return_value=EventResult(success=True, event_id="evt_1"))
    provider.list_events = AsyncMock(return_value=EventListResult(success=True, events=[]))
    provider.get_free_busy = AsyncMock(
        return_value=FreeBusyResult(success=True, availability=availability or [])
    )
    provider.build_authorization_url = MagicMock(return_value="https://consent.example/auth")
    provider.exchange_code = AsyncMock(
        return_value=TokenResult(success=True, tokens=TokenSet(access_token="at"))
    )
    provider.refresh_token = AsyncMock(
        return_value=TokenResult(success=True, tokens=TokenSet(access_token="at2"))
    )
    provider.aclose = AsyncMock()
    return provider


def _service(provider=None, **config):
    provider = provider or _fake_provider()
    return CalendarService(CalendarServiceConfig(**config), providers={provider.kind: provider})


def _event_payload(**overrides):
    data = {
        "title": "Kickoff",
        "startTime": "2026-03-16T14:00:00Z",
        "endTime": "2026-03-16T15:00:00Z",
        "timezone": "UTC",
    }
    data.update(overrides)
    return data


def _meeting_request(**overrides):
    data = {
        "attendees": ["a@x.com", "b@x.com"],
        "durationMinutes": 30,
        "startDate": "2026-03-16T00:00:00Z",
        "endDate": "2026-03-17T00:00:00Z",
        "timezone": "UTC",
    }
    data.update(overrides)
    return data


# ── Provider dispatch ──────────────────────────────────────────────


class TestProviderDispatch:
    async def test_unknown_provider(self):
        provider = _fake_provider()
        result = await _service(provider).create_event("exchange", _event_payload(), CREDS)

        assert result.success is False
        assert "Unknown calendar provider" in result.error
        provider.create_event.assert_not_called()

    async def test_unconfigured_provider(self):
        result = await _service().create_event("microsoft", _event_payload(), CREDS)

        assert result.success is False
        assert "not configured" in result.error

    def test_build_providers_from_config(self):
        config = CalendarServiceConfig(
            google=GoogleProviderConfig(client_id="id", client_secret="secret", redirect_uri="http://cb")
        )
        providers = build_providers(config)
        assert list(providers) == [ProviderKind.GOOGLE]
        assert providers[ProviderKind.GOOGLE].kind is ProviderKind.GOOGLE

    async def test_close_releases_adapters(self):
        provider = _fake_provider()
        await _service(provider).close()
        provider.aclose.assert_awaited_once()


# ── Events ─────────────────────────────────────────────────────────


class TestEvents:
    async def test_create_from_mapping(self):
        provider = _fake_provider()

        result = await _service(provider).create_event(
            "google", _event_payload(), CREDS, send_notifications=False
        )

        assert result.success
        assert result.event_id == "evt_1"
        args = provider.create_event.call_args.args
        assert isinstance(args[1], CalendarEvent)
        assert args[2] == "primary"
        assert args[3] is False

    async def test_invalid_event_never_reaches_provider(self):
        provider = _fake_provider()

        result = await _service(provider).create_event(
            "google", _event_payload(endTime="2026-03-16T13:00:00Z"), CREDS
        )

        assert result.success is False
        assert "endTime" in result.error
        provider.create_event.assert_not_called()

    async def test_invalid_timezone_replaced_on_a_copy(self):
        provider = _fake_provider()
        event = CalendarEvent.model_validate(_event_payload(timezone="Not/AZone"))

        await _service(provider, default_timezone="Europe/Paris").create_event("google", event, CREDS)

        sent = provider.create_event.call_args.args[1]
        assert sent.timezone == "Europe/Paris"
        assert event.timezone == "Not/AZone"

    async def test_update_requires_event_id(self):
        provider = _fake_provider()

        result = await _service(provider).update_event("google", "", _event_payload(), CREDS)

        assert result.success is False
        provider.update_event.assert_not_called()

    async def test_delete_passes_calendar(self):
        provider = _fake_provider()

        result = await _service(provider).delete_event("google", "evt_1", CREDS, calendar_id="team")

        assert result.success
        provider.delete_event.assert_awaited_once_with(CREDS, "evt_1", "team", True)

    @pytest.mark.parametrize("max_results", [0, 2501])
    async def test_list_bounds(self, max_results):
        provider = _fake_provider()

        result = await _service(provider).list_events("google", CREDS, max_results=max_results)

        assert result.success is False
        provider.list_events.assert_not_called()

    async def test_list_rejects_backwards_window(self):
        provider = _fake_provider()

        result = await _service(provider).list_events(
            "google", CREDS, start_time=_at(10), end_time=_at(9)
        )

        assert result.success is False
        assert "endTime" in result.error

    async def test_list_defaults(self):
        provider = _fake_provider()

        await _service(provider).list_events("google", CREDS)

        provider.list_events.assert_awaited_once_with(CREDS, "primary", None, None, 250, None)


# ── Availability ───────────────────────────────────────────────────


class TestGetAvailability:
    async def test_passes_through(self):
        provider = _fake_provider(availability=[AttendeeAvailability(email="a@x.com")])

        result = await _service(provider).get_availability(
            "google",
            {"emails": ["a@x.com"], "startTime": _at(0), "endTime": _at(24), "timezone": "Bad/Zone"},
            CREDS,
        )

        assert result.success
        assert provider.get_free_busy.call_args.args[4] == "UTC"

    async def test_rejects_empty_emails(self):
        provider = _fake_provider()

        result = await _service(provider).get_availability(
            "google", {"emails": [], "startTime": _at(0), "endTime": _at(24), "timezone": "UTC"}, CREDS
        )

        assert result.success is False
        provider.get_free_busy.assert_not_called()


# ── Meeting-time resolution ────────────────────────────────────────


class TestFindMeetingTime:
    async def test_zero_attendees_fail_before_provider_call(self):
        provider = _fake_provider()

        result = await _service(provider).find_meeting_time(
            "google", _meeting_request(attendees=[]), CREDS
        )

        assert result.success is False
        provider.get_free_busy.assert_not_called()

    async def test_zero_attendees_on_unvalidated_model(self):
        provider = _fake_provider()
        request = FindMeetingTimeRequest.model_construct(
            attendees=[],
            duration_minutes=30,
            start_date=_at(0),
            end_date=_at(24),
            working_hours=None,
            timezone="UTC",
            buffer_minutes=None,
        )

        result = await _service(provider).find_meeting_time("google", request, CREDS)

        assert result.success is False
        assert "attendee" in result.error
        provider.get_free_busy.assert_not_called()

    async def test_ranks_free_slot_first(self):
        provider = _fake_provider(availability=[
            AttendeeAvailability(email="a@x.com", slots=[
                AvailabilitySlot(start_time=_at(10), end_time=_at(11), status="busy"),
            ]),
        ])

        result = await _service(provider).find_meeting_time(
            "google", _meeting_request(bufferMinutes=0), CREDS
        )

        assert result.success
        assert result.suggestions[0].start_time == _at(9)
        assert result.suggestions[0].confidence == 1.0
        assert len(result.suggestions) == 5
        provider.get_free_busy.assert_awaited_once()

    async def test_explicit_zero_buffer_is_honored(self):
        busy = [AvailabilitySlot(start_time=_at(9, 30), end_time=_at(17), status="busy")]
        availability = [
            AttendeeAvailability(email="a@x.com", slots=busy),
            AttendeeAvailability(email="b@x.com", slots=busy),
        ]

        with_zero = await _service(_fake_provider(availability=availability)).find_meeting_time(
            "google", _meeting_request(bufferMinutes=0), CREDS
        )
        with_default = await _service(_fake_provider(availability=availability)).find_meeting_time(
            "google", _meeting_request(), CREDS
        )

        assert [s.start_time for s in with_zero.suggestions] == [_at(9)]
        # default 15-minute buffer makes 09:00-09:30 touch the padded busy block
        assert with_default.suggestions == []

    async def test_configured_working_hours_apply(self):
        provider = _fake_provider()
        config_hours = WorkingHours(start="13:00", end="15:00")

        result = await _service(provider, working_hours=config_hours).find_meeting_time(
            "google", _meeting_request(), CREDS
        )

        assert result.suggestions[0].start_time == _at(13)

    async def test_request_working_hours_win(self):
        provider = _fake_provider()

        result = await _service(provider, working_hours=WorkingHours(start="13:00")).find_meeting_time(
            "google",
            _meeting_request(workingHours={"start": "07:00", "end": "08:00", "days": [1]}),
            CREDS,
        )

        assert result.suggestions[0].start_time == _at(7)

    async def test_max_suggestions_from_config(self):
        provider = _fake_provider()

        result = await _service(
            provider, meeting_defaults=MeetingDefaults(max_suggestions=2)
        ).find_meeting_time("google", _meeting_request(), CREDS)

        assert len(result.suggestions) == 2

    async def test_missing_duration_uses_configured_default(self):
        provider = _fake_provider()
        request = _meeting_request()
        del request["durationMinutes"]

        result = await _service(
            provider, meeting_defaults=MeetingDefaults(duration_minutes=90)
        ).find_meeting_time("google", request, CREDS)

        assert result.success
        first = result.suggestions[0]
        assert first.end_time - first.start_time == timedelta(minutes=90)

    async def test_invalid_timezone_uses_default(self):
        provider = _fake_provider()

        await _service(provider, default_timezone="Asia/Tokyo").find_meeting_time(
            "google", _meeting_request(timezone="Nowhere/Special"), CREDS
        )

        assert provider.get_free_busy.call_args.args[4] == "Asia/Tokyo"

    async def test_provider_failure_becomes_result(self):
        provider = _fake_provider()
        provider.get_free_busy.return_value = FreeBusyResult(success=False, error="rate limited")

        result = await _service(provider).find_meeting_time("google", _meeting_request(), CREDS)

        assert result.success is False
        assert result.error == "rate limited"


# ── OAuth ──────────────────────────────────────────────────────────


class TestOAuth:
    def test_auth_url(self):
        assert _service().get_auth_url("google", "state-1") == "https://consent.example/auth"

    def test_auth_url_unknown_provider_raises(self):
        with pytest.raises(CalendarValidationError):
            _service().get_auth_url("yahoo")

    async def test_exchange(self):
        result = await _service().exchange_code_for_tokens("google", "code")
        assert result.tokens.access_token == "at"

    async def test_exchange_requires_code(self):
        provider = _fake_provider()
        result = await _service(provider).exchange_code_for_tokens("google", "")
        assert result.success is False
        provider.exchange_code.assert_not_called()

    async def test_refresh_unconfigured(self):
        result = await _service().refresh_access_token("microsoft", "rt")
        assert result.success is False
