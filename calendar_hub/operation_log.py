"""Structured operation events for calendar provider calls.

Every adapter and facade operation records one ``OperationEvent`` naming
the operation, provider, organization and outcome.  The event is logged
through the ``calendar_hub.operations`` logger and attached to the log
record as ``operation_event`` so a JSON handler can ship it as-is.
"""

from __future__ import annotations

import logging
import time
from typing import Any, TypedDict

log = logging.getLogger("calendar_hub.operations")


class OperationEvent(TypedDict):
    operation: str         # create_event | update_event | delete_event | list_events | get_free_busy | ...
    provider: str
    organization_id: str
    success: bool
    timestamp: float
    data: dict


def record_operation(
    operation: str,
    provider: str,
    organization_id: str,
    success: bool,
    **data: Any,
) -> OperationEvent:
    """Log one operation outcome and return the event that was logged."""
    event: OperationEvent = {
        "operation": operation,
        "provider": provider,
        "organization_id": organization_id,
        "success": success,
        "timestamp": time.time(),
        "data": data,
    }
    if success:
        log.info(
            "%s %s succeeded (org=%s) %s",
            provider, operation, organization_id or "-", data,
            extra={"operation_event": event},
        )
    else:
        log.warning(
            "%s %s failed (org=%s): %s",
            provider, operation, organization_id or "-", data.get("error", "unknown error"),
            extra={"operation_event": event},
        )
    return event
