"""Abstract base class for calendar providers.

Defines the uniform capability surface every provider adapter exposes:
event CRUD, free/busy lookup and the OAuth2 authorization-code flow.
Adapters translate the canonical model to and from their provider's wire
format; no provider payload ever leaves an adapter.

Adapters never raise out of these methods.  Remote failures (auth,
not-found, quota, transport) come back as ``success=False`` results.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum

from calendar_hub.models import (
    CalendarCredentials,
    CalendarEvent,
    EventListResult,
    EventResult,
    FreeBusyResult,
    TokenResult,
)


class ProviderKind(str, Enum):
    """The closed set of supported calendar providers."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"


class CalendarProvider(ABC):
    """Abstract calendar backend."""

    kind: ProviderKind

    @abstractmethod
    async def create_event(
        self,
        credentials: CalendarCredentials,
        event: CalendarEvent,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        """Create an event and return it as the provider stored it."""

    @abstractmethod
    async def update_event(
        self,
        credentials: CalendarCredentials,
        event_id: str,
        event: CalendarEvent,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        """Replace an existing event's fields with ``event``."""

    @abstractmethod
    async def delete_event(
        self,
        credentials: CalendarCredentials,
        event_id: str,
        calendar_id: str = "primary",
        send_notifications: bool = True,
    ) -> EventResult:
        """Delete an event.  ``event_id`` is echoed back on success."""

    @abstractmethod
    async def list_events(
        self,
        credentials: CalendarCredentials,
        calendar_id: str = "primary",
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        max_results: int = 250,
        page_token: str | None = None,
    ) -> EventListResult:
        """List events, optionally bounded in time.

        Args:
            credentials: Caller's provider credentials.
            calendar_id: Calendar to read; ``"primary"`` is the user's default.
            start_time: Only events ending after this instant.
            end_time: Only events starting before this instant.
            max_results: Page size.
            page_token: ``next_page_token`` from a previous call.

        Returns:
            EventListResult carrying canonical events and, when more
            results exist, a ``next_page_token``.
        """

    @abstractmethod
    async def get_free_busy(
        self,
        credentials: CalendarCredentials,
        emails: list[str],
        start_time: datetime,
        end_time: datetime,
        timezone: str,
    ) -> FreeBusyResult:
        """Return availability slots for every address in ``emails``.

        One provider round trip covers all addresses.  Each requested email
        appears exactly once in the result, in request order, with an empty
        slot list when the provider returned nothing for it.
        """

    @abstractmethod
    def build_authorization_url(self, state: str | None = None) -> str:
        """Consent-screen URL for the OAuth2 authorization-code flow."""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenResult:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenResult:
        """Obtain a fresh access token."""

    async def aclose(self) -> None:
        """Release the adapter's transport.  Default: nothing to release."""


def describe_error(exc: BaseException) -> str:
    """Readable error text for a result value."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return message
