"""FastAPI application exposing the calendar service over HTTP.

Endpoints (calendar routes require a bearer token, see ``auth.py``):

  POST   /api/calendar/events                    Create an event
  PUT    /api/calendar/events/{event_id}         Replace an event
  DELETE /api/calendar/events/{event_id}         Delete an event
  GET    /api/calendar/events                    List events in a window
  POST   /api/calendar/availability              Free/busy for a set of emails
  POST   /api/calendar/find-meeting-time         Ranked meeting-time suggestions
  GET    /api/calendar/auth/{provider}/url       Provider consent URL
  POST   /api/calendar/auth/{provider}/callback  Exchange an authorization code
  POST   /api/calendar/auth/{provider}/refresh   Refresh an access token
  GET    /health                                 Health check

Status codes: 400 for malformed input or an unusable provider, 502 when the
provider reported failure, 500 for anything unexpected.
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime

# Configure root logger early so calendar_hub.* loggers have a handler
# when run via `uvicorn calendar_hub.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from calendar_hub.auth import for_provider, require_credentials
from calendar_hub.calendar_providers.base import ProviderKind
from calendar_hub.config import Settings, settings as default_settings
from calendar_hub.errors import CalendarValidationError
from calendar_hub.models import (
    AvailabilityRequest,
    CalendarCredentials,
    CalendarEvent,
    FindMeetingTimeRequest,
)
from calendar_hub.models.base import CalendarModel
from calendar_hub.service import CalendarService

log = logging.getLogger("calendar_hub.app")

_START_TIME = time.time()


# ── Request bodies ─────────────────────────────────────────────

class EventBody(CalendarModel):
    provider: ProviderKind
    event: CalendarEvent
    calendar_id: str | None = None
    send_notifications: bool = True


class AvailabilityBody(AvailabilityRequest):
    provider: ProviderKind


class FindMeetingTimeBody(FindMeetingTimeRequest):
    provider: ProviderKind


class AuthCodeBody(CalendarModel):
    code: str = Field(min_length=1)


class RefreshBody(CalendarModel):
    refresh_token: str = Field(min_length=1)


# ── Helpers ────────────────────────────────────────────────────

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _result(result: CalendarModel) -> JSONResponse:
    return JSONResponse(result.dump(), status_code=200 if result.success else 502)


def _first_error(errors: list[dict]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def get_service(request: Request) -> CalendarService:
    return request.app.state.service


def _check_provider(service: CalendarService, provider: ProviderKind) -> JSONResponse | None:
    if provider not in service.configured_providers:
        return _error(400, f"{provider.value} calendar provider not configured")
    return None


def create_app(settings: Settings | None = None, service: CalendarService | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings
    for warning in settings.validate_startup():
        log.warning("Config: %s", warning)

    if service is None:
        service = CalendarService(settings.to_service_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(
            "Calendar service ready (providers: %s)",
            ", ".join(kind.value for kind in service.configured_providers) or "none",
        )
        yield
        await service.close()

    app = FastAPI(
        title="Calendar Hub",
        description="Google Calendar and Microsoft Graph integration with meeting-time search",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    # ── Error handlers ─────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, _first_error(list(exc.errors())))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        log.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return _error(500, "Internal server error")

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "providers": [kind.value for kind in service.configured_providers],
        })

    app.include_router(_calendar_router(), prefix="/api/calendar")
    return app


def _calendar_router() -> APIRouter:
    router = APIRouter()

    # ── Events ─────────────────────────────────────────────────

    @router.post("/events")
    async def create_event(
        body: EventBody,
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, body.provider)) is not None:
            return rejected
        result = await service.create_event(
            body.provider,
            body.event,
            for_provider(credentials, body.provider.value),
            calendar_id=body.calendar_id,
            send_notifications=body.send_notifications,
        )
        return _result(result)

    @router.put("/events/{event_id}")
    async def update_event(
        event_id: str,
        body: EventBody,
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, body.provider)) is not None:
            return rejected
        result = await service.update_event(
            body.provider,
            event_id,
            body.event,
            for_provider(credentials, body.provider.value),
            calendar_id=body.calendar_id,
            send_notifications=body.send_notifications,
        )
        return _result(result)

    @router.delete("/events/{event_id}")
    async def delete_event(
        event_id: str,
        provider: ProviderKind,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
        send_notifications: bool = Query(default=False, alias="sendNotifications"),
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, provider)) is not None:
            return rejected
        result = await service.delete_event(
            provider,
            event_id,
            for_provider(credentials, provider.value),
            calendar_id=calendar_id,
            send_notifications=send_notifications,
        )
        return _result(result)

    @router.get("/events")
    async def list_events(
        provider: ProviderKind,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
        start_time: datetime | None = Query(default=None, alias="startTime"),
        end_time: datetime | None = Query(default=None, alias="endTime"),
        max_results: int = Query(default=250, ge=1, le=2500, alias="maxResults"),
        page_token: str | None = Query(default=None, alias="pageToken"),
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, provider)) is not None:
            return rejected
        if start_time is not None and end_time is not None and end_time <= start_time:
            return _error(400, "endTime must be later than startTime")
        result = await service.list_events(
            provider,
            for_provider(credentials, provider.value),
            calendar_id=calendar_id,
            start_time=start_time,
            end_time=end_time,
            max_results=max_results,
            page_token=page_token,
        )
        return _result(result)

    # ── Availability ───────────────────────────────────────────

    @router.post("/availability")
    async def availability(
        body: AvailabilityBody,
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, body.provider)) is not None:
            return rejected
        result = await service.get_availability(
            body.provider, body, for_provider(credentials, body.provider.value)
        )
        return _result(result)

    @router.post("/find-meeting-time")
    async def find_meeting_time(
        body: FindMeetingTimeBody,
        credentials: CalendarCredentials = Depends(require_credentials),
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        if (rejected := _check_provider(service, body.provider)) is not None:
            return rejected
        result = await service.find_meeting_time(
            body.provider, body, for_provider(credentials, body.provider.value)
        )
        return _result(result)

    # ── OAuth ──────────────────────────────────────────────────

    @router.get("/auth/{provider}/url")
    async def auth_url(
        provider: str,
        state: str | None = None,
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        try:
            url = service.get_auth_url(provider, state)
        except CalendarValidationError as exc:
            return _error(400, str(exc))
        return JSONResponse({"success": True, "authUrl": url})

    @router.post("/auth/{provider}/callback")
    async def auth_callback(
        provider: str,
        body: AuthCodeBody,
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        try:
            kind = ProviderKind(provider)
        except ValueError:
            return _error(400, f"Unknown calendar provider: {provider}")
        if (rejected := _check_provider(service, kind)) is not None:
            return rejected
        return _result(await service.exchange_code_for_tokens(kind, body.code))

    @router.post("/auth/{provider}/refresh")
    async def auth_refresh(
        provider: str,
        body: RefreshBody,
        service: CalendarService = Depends(get_service),
    ) -> JSONResponse:
        try:
            kind = ProviderKind(provider)
        except ValueError:
            return _error(400, f"Unknown calendar provider: {provider}")
        if (rejected := _check_provider(service, kind)) is not None:
            return rejected
        return _result(await service.refresh_access_token(kind, body.refresh_token))

    return router


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "calendar_hub.app:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_config=log_config,
    )
