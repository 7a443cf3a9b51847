"""Calendar service facade.

The single entry point surrounding code calls.  It validates input, picks
the provider adapter by name, normalizes time zones and, for meeting-time
searches, runs availability aggregation followed by slot search.

Every operation returns a result value.  Validation problems and provider
failures become ``success=False`` results; nothing is raised to the caller
except by ``get_auth_url``, which has no result envelope.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from calendar_hub.availability import AvailabilityAggregator
from calendar_hub.calendar_providers.base import CalendarProvider, ProviderKind
from calendar_hub.config import CalendarServiceConfig
from calendar_hub.errors import CalendarError, CalendarValidationError, SchedulingValidationError
from calendar_hub.models import (
    AvailabilityRequest,
    CalendarCredentials,
    CalendarEvent,
    EventListResult,
    EventResult,
    FindMeetingTimeRequest,
    FreeBusyResult,
    MeetingTimeResult,
    TokenResult,
)
from calendar_hub.operation_log import record_operation
from calendar_hub.slot_search import SlotSearch, SlotSearchEngine
from calendar_hub.timezones import is_valid_timezone, resolve_timezone

log = logging.getLogger("calendar_hub.service")

MAX_LIST_RESULTS = 2500

ModelT = TypeVar("ModelT", bound=BaseModel)


def _coerce(model: type[ModelT], value: ModelT | Mapping[str, Any]) -> ModelT:
    if isinstance(value, model):
        return value
    return model.model_validate(value)


def describe_validation_error(exc: Exception) -> str:
    """First pydantic error as ``field: message``; other errors verbatim."""
    if isinstance(exc, ValidationError):
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid value")
        return f"{location}: {message}" if location else message
    return str(exc)


def build_providers(config: CalendarServiceConfig) -> dict[ProviderKind, CalendarProvider]:
    """One adapter per configured provider."""
    providers: dict[ProviderKind, CalendarProvider] = {}
    if config.google is not None:
        from calendar_hub.calendar_providers.google import GoogleCalendarProvider

        providers[ProviderKind.GOOGLE] = GoogleCalendarProvider(config.google)
    if config.microsoft is not None:
        from calendar_hub.calendar_providers.microsoft import MicrosoftCalendarProvider

        providers[ProviderKind.MICROSOFT] = MicrosoftCalendarProvider(config.microsoft)
    return providers


class CalendarService:
    """Provider-agnostic calendar operations and meeting-time resolution."""

    def __init__(
        self,
        config: CalendarServiceConfig,
        providers: Mapping[ProviderKind, CalendarProvider] | None = None,
        aggregator: AvailabilityAggregator | None = None,
        search_engine: SlotSearchEngine | None = None,
    ) -> None:
        self._config = config
        self._providers = dict(providers) if providers is not None else build_providers(config)
        self._aggregator = aggregator or AvailabilityAggregator()
        self._search = search_engine or SlotSearchEngine(config.meeting_defaults.max_suggestions)

    @property
    def configured_providers(self) -> list[ProviderKind]:
        return list(self._providers)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_provider(self, name: str | ProviderKind) -> CalendarProvider:
        try:
            kind = ProviderKind(name)
        except ValueError:
            raise CalendarValidationError(f"Unknown calendar provider: {name}") from None
        provider = self._providers.get(kind)
        if provider is None:
            raise CalendarValidationError(f"{kind.value} calendar provider not configured")
        return provider

    def _normalize_timezone(self, event: CalendarEvent) -> CalendarEvent:
        if is_valid_timezone(event.timezone):
            return event
        log.info(
            "Invalid timezone %r on event, using %s", event.timezone, self._config.default_timezone
        )
        return event.model_copy(update={"timezone": self._config.default_timezone})

    def _rejected(
        self,
        operation: str,
        provider: Any,
        credentials: CalendarCredentials | None,
        exc: Exception,
    ) -> str:
        error = describe_validation_error(exc)
        record_operation(
            operation,
            getattr(provider, "value", str(provider)),
            credentials.organization_id if credentials else "",
            False,
            error=error,
            stage="validation",
        )
        return error

    # ------------------------------------------------------------------
    # Event CRUD
    # ------------------------------------------------------------------

    async def create_event(
        self,
        provider: str | ProviderKind,
        event: CalendarEvent | Mapping[str, Any],
        credentials: CalendarCredentials,
        calendar_id: str | None = None,
        send_notifications: bool = True,
    ) -> EventResult:
        try:
            adapter = self._get_provider(provider)
            event = self._normalize_timezone(_coerce(CalendarEvent, event))
        except (CalendarValidationError, ValidationError) as exc:
            return EventResult(
                success=False, error=self._rejected("create_event", provider, credentials, exc)
            )

        result = await adapter.create_event(
            credentials, event, calendar_id or "primary", send_notifications
        )
        log.info(
            "Calendar event create via %s: success=%s event_id=%s",
            adapter.kind.value, result.success, result.event_id,
        )
        return result

    async def update_event(
        self,
        provider: str | ProviderKind,
        event_id: str,
        event: CalendarEvent | Mapping[str, Any],
        credentials: CalendarCredentials,
        calendar_id: str | None = None,
        send_notifications: bool = True,
    ) -> EventResult:
        try:
            adapter = self._get_provider(provider)
            if not event_id:
                raise CalendarValidationError("eventId is required")
            event = self._normalize_timezone(_coerce(CalendarEvent, event))
        except (CalendarValidationError, ValidationError) as exc:
            return EventResult(
                success=False, error=self._rejected("update_event", provider, credentials, exc)
            )

        result = await adapter.update_event(
            credentials, event_id, event, calendar_id or "primary", send_notifications
        )
        log.info(
            "Calendar event update via %s: success=%s event_id=%s",
            adapter.kind.value, result.success, event_id,
        )
        return result

    async def delete_event(
        self,
        provider: str | ProviderKind,
        event_id: str,
        credentials: CalendarCredentials,
        calendar_id: str | None = None,
        send_notifications: bool = True,
    ) -> EventResult:
        try:
            adapter = self._get_provider(provider)
            if not event_id:
                raise CalendarValidationError("eventId is required")
        except CalendarValidationError as exc:
            return EventResult(
                success=False, error=self._rejected("delete_event", provider, credentials, exc)
            )

        result = await adapter.delete_event(
            credentials, event_id, calendar_id or "primary", send_notifications
        )
        log.info(
            "Calendar event delete via %s: success=%s event_id=%s",
            adapter.kind.value, result.success, event_id,
        )
        return result

    async def list_events(
        self,
        provider: str | ProviderKind,
        credentials: CalendarCredentials,
        calendar_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        max_results: int = 250,
        page_token: str | None = None,
    ) -> EventListResult:
        try:
            adapter = self._get_provider(provider)
            if not 1 <= max_results <= MAX_LIST_RESULTS:
                raise CalendarValidationError(
                    f"maxResults must be between 1 and {MAX_LIST_RESULTS}"
                )
            if start_time is not None and end_time is not None and end_time <= start_time:
                raise CalendarValidationError("endTime must be later than startTime")
        except CalendarValidationError as exc:
            return EventListResult(
                success=False, error=self._rejected("list_events", provider, credentials, exc)
            )

        result = await adapter.list_events(
            credentials, calendar_id or "primary", start_time, end_time, max_results, page_token
        )
        log.info(
            "Calendar events listed via %s: success=%s count=%d",
            adapter.kind.value, result.success, len(result.events or []),
        )
        return result

    # ------------------------------------------------------------------
    # Availability and meeting-time resolution
    # ------------------------------------------------------------------

    async def get_availability(
        self,
        provider: str | ProviderKind,
        request: AvailabilityRequest | Mapping[str, Any],
        credentials: CalendarCredentials,
    ) -> FreeBusyResult:
        try:
            adapter = self._get_provider(provider)
            request = _coerce(AvailabilityRequest, request)
        except (CalendarValidationError, ValidationError) as exc:
            return FreeBusyResult(
                success=False, error=self._rejected("get_availability", provider, credentials, exc)
            )

        tz = resolve_timezone(request.timezone, self._config.default_timezone)
        return await adapter.get_free_busy(
            credentials, list(request.emails), request.start_time, request.end_time, tz
        )

    async def find_meeting_time(
        self,
        provider: str | ProviderKind,
        request: FindMeetingTimeRequest | Mapping[str, Any],
        credentials: CalendarCredentials,
    ) -> MeetingTimeResult:
        """Suggest meeting slots for ``request.attendees``.

        Duration, working hours and buffer fall back to the configured
        defaults when the request leaves them unset; an explicit zero buffer
        is kept.
        """
        try:
            adapter = self._get_provider(provider)
            request = _coerce(FindMeetingTimeRequest, request)
            if not request.attendees:
                raise SchedulingValidationError(
                    "At least one attendee is required to find a meeting time"
                )
        except (CalendarValidationError, ValidationError) as exc:
            return MeetingTimeResult(
                success=False, error=self._rejected("find_meeting_time", provider, credentials, exc)
            )

        defaults = self._config.meeting_defaults
        search = SlotSearch(
            attendees=list(request.attendees),
            duration_minutes=(
                request.duration_minutes
                if request.duration_minutes is not None
                else defaults.duration_minutes
            ),
            start=request.start_date,
            end=request.end_date,
            working_hours=request.working_hours or self._config.working_hours,
            buffer_minutes=(
                request.buffer_minutes
                if request.buffer_minutes is not None
                else defaults.buffer_minutes
            ),
            timezone=resolve_timezone(request.timezone, self._config.default_timezone),
        )

        try:
            busy = await self._aggregator.resolve(
                adapter, credentials, search.attendees, search.start, search.end, search.timezone
            )
            suggestions = self._search.find_slots(
                search, {entry.email: entry.busy for entry in busy}
            )
        except CalendarError as exc:
            record_operation(
                "find_meeting_time", adapter.kind.value, credentials.organization_id, False,
                error=str(exc), attendees=len(search.attendees),
            )
            return MeetingTimeResult(success=False, error=str(exc))

        record_operation(
            "find_meeting_time", adapter.kind.value, credentials.organization_id, True,
            attendees=len(search.attendees), suggestions=len(suggestions),
        )
        return MeetingTimeResult(success=True, suggestions=suggestions)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def get_auth_url(self, provider: str | ProviderKind, state: str | None = None) -> str:
        """Raises CalendarValidationError for unknown or unconfigured providers."""
        return self._get_provider(provider).build_authorization_url(state)

    async def exchange_code_for_tokens(self, provider: str | ProviderKind, code: str) -> TokenResult:
        try:
            adapter = self._get_provider(provider)
            if not code:
                raise CalendarValidationError("Authorization code required")
        except CalendarValidationError as exc:
            return TokenResult(success=False, error=self._rejected("exchange_code", provider, None, exc))
        return await adapter.exchange_code(code)

    async def refresh_access_token(
        self, provider: str | ProviderKind, refresh_token: str
    ) -> TokenResult:
        try:
            adapter = self._get_provider(provider)
            if not refresh_token:
                raise CalendarValidationError("Refresh token required")
        except CalendarValidationError as exc:
            return TokenResult(success=False, error=self._rejected("refresh_token", provider, None, exc))
        return await adapter.refresh_token(refresh_token)
