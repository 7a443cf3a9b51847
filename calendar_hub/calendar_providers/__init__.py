"""Calendar provider abstractions and implementations."""

from .base import CalendarProvider, ProviderKind

__all__ = ["CalendarProvider", "ProviderKind"]
