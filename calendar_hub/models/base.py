"""Shared pydantic base for the canonical calendar model."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CalendarModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire.

    Both spellings are accepted on input; ``dump()`` emits the camelCase
    aliases with JSON-compatible values.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
