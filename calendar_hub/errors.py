"""Exception types raised inside the calendar core.

None of these escape a public ``CalendarService`` operation that returns a
result value; the facade converts them into ``success=False`` results.
"""

from __future__ import annotations


class CalendarError(Exception):
    """Base class for calendar core errors."""


class CalendarValidationError(CalendarError):
    """Input rejected before any provider call was made."""


class SchedulingValidationError(CalendarValidationError):
    """A meeting-time search was configured in a way that cannot be scored."""


class ProviderError(CalendarError):
    """A provider reported failure for an operation."""

    def __init__(self, provider: str, operation: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.operation = operation
