from __future__ import annotations

import logging
import math
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from unical.adapters import AdapterFactory
from unical.config_manager import ConfigManager
from unical.errors import CredentialExpired, NotFound, ParseError, SyncError
from unical.event_service import EventService
from unical.event_store import EventStore
from unical.models import PROVIDER_KINDS, SYNC_PROVIDER_KINDS, CalendarAccount, CalendarRef, parse_iso_datetime
from unical.providers import AdapterContext
from unical.scheduler import SyncQueue, SyncScheduler
from unical.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectAccountRequest(BaseModel):
    user_id: str = Field(min_length=1)
    provider: str
    email: str = ""
    credentials: dict[str, Any] = Field(default_factory=dict)


class CreateEventRequest(BaseModel):
    calendar_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    start: str
    end: str
    timezone: str = "UTC"
    all_day: bool = False
    status: str = "confirmed"
    color: str | None = None
    rrule: str | None = None


class UpdateEventRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    timezone: str | None = None
    all_day: bool | None = None
    status: str | None = None
    color: str | None = None


class ExceptionDateRequest(BaseModel):
    date: str


class MoveEventRequest(BaseModel):
    calendar_id: str


class CalendarUpdateRequest(BaseModel):
    is_visible: bool | None = None
    color: str | None = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class AppContext:
    """Every collaborator of the HTTP surface, built once per app."""

    def __init__(self, config_path: str, db_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.store = EventStore(db_path or config.storage.database_path)
        self.adapters = AdapterFactory(AdapterContext(config=config))
        self.sync_engine = SyncEngine(self.config_manager, self.store, self.adapters)
        self.event_service = EventService(self.config_manager, self.store, self.adapters)
        self.queue = SyncQueue(self.sync_engine, max_workers=config.sync.max_concurrent_syncs)
        self.scheduler = SyncScheduler(self.queue, self.store, self.config_manager)


def _parse_window(start: str, end: str) -> tuple[Any, Any]:
    try:
        window_start = parse_iso_datetime(start)
        window_end = parse_iso_datetime(end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
    if window_start is None or window_end is None:
        raise HTTPException(status_code=400, detail="start and end are required")
    if window_end < window_start:
        raise HTTPException(status_code=400, detail="end must be later than start")
    return window_start, window_end


def create_app(config_path: str | None = None, db_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("UNICAL_CONFIG_PATH", "config.yaml")
    db_path = db_path or os.getenv("UNICAL_DB_PATH") or None
    context = AppContext(config_path=config_path, db_path=db_path)

    app = FastAPI(title="Unical", version="0.1.0")
    app.state.context = context

    @app.exception_handler(NotFound)
    def _not_found(_request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ParseError)
    def _parse_error(_request: Request, exc: ParseError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.queue.shutdown(wait=False)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        return {"status": "ok", "config": updated.to_dict()}

    # --- accounts ---

    @app.post("/api/accounts")
    def connect_account(request: ConnectAccountRequest) -> JSONResponse:
        ctx = app.state.context
        provider = request.provider.strip().lower()
        if provider not in PROVIDER_KINDS:
            raise HTTPException(status_code=400, detail=f"unknown provider: {request.provider}")

        if provider not in SYNC_PROVIDER_KINDS:
            account = ctx.store.create_account(user_id=request.user_id, provider=provider, email=request.email)
            ctx.store.upsert_calendar(account.id, CalendarRef(external_id="local", name="Local", is_primary=True))
            return JSONResponse(status_code=201, content={"status": "connected", "account": account.to_dict()})

        candidate = CalendarAccount(
            id="",
            user_id=request.user_id,
            provider=provider,
            email=request.email,
            credentials=request.credentials,
        )
        try:
            ctx.adapters.get(provider).verify(candidate)
        except CredentialExpired as exc:
            raise HTTPException(status_code=401, detail=f"credentials rejected: {exc}") from exc
        except SyncError as exc:
            raise HTTPException(status_code=502, detail=f"could not reach {provider}: {exc}") from exc

        account = ctx.store.create_account(
            user_id=request.user_id,
            provider=provider,
            email=request.email,
            credentials=request.credentials,
        )
        ctx.queue.submit(account.id, trigger="connect")
        logger.info("Connected %s account %s, initial sync queued", provider, account.id)
        return JSONResponse(status_code=202, content={"status": "syncing", "account": account.to_dict()})

    @app.get("/api/accounts")
    def list_accounts(user_id: str | None = None) -> dict[str, Any]:
        ctx = app.state.context
        accounts = []
        for account in ctx.store.list_accounts(user_id=user_id):
            item = account.to_dict()
            item["calendars"] = [calendar.to_dict() for calendar in ctx.store.list_calendars(account.id)]
            item["sync_states"] = [state.to_dict() for state in ctx.store.list_sync_states(account.id)]
            accounts.append(item)
        return {"accounts": accounts}

    @app.delete("/api/accounts/{account_id}")
    def delete_account(account_id: str) -> dict[str, str]:
        if not app.state.context.store.delete_account(account_id):
            raise HTTPException(status_code=404, detail="account not found")
        return {"status": "deleted"}

    @app.post("/api/accounts/{account_id}/sync")
    def sync_account(account_id: str) -> dict[str, Any]:
        ctx = app.state.context
        account = ctx.store.get_account(account_id)
        if account is None:
            raise HTTPException(status_code=404, detail="account not found")
        backoff = ctx.scheduler.backoff
        if backoff.is_paused(account.provider):
            wait_seconds = math.ceil(backoff.remaining(account.provider))
            raise HTTPException(
                status_code=429,
                detail=f"{account.provider} is rate limited, retry in {wait_seconds} s",
                headers={"Retry-After": str(wait_seconds)},
            )
        return ctx.queue.submit(account_id, trigger="manual").result().to_dict()

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"status": "queued"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, account_id: str | None = None) -> dict[str, Any]:
        ctx = app.state.context
        return {
            "runs": ctx.store.recent_sync_runs(limit=limit, account_id=account_id),
            "in_flight": ctx.queue.in_flight(),
            "states": [state.to_dict() for state in ctx.store.list_sync_states(account_id)],
        }

    # --- calendars and events ---

    @app.patch("/api/calendars/{calendar_id}")
    def update_calendar(calendar_id: str, request: CalendarUpdateRequest) -> dict[str, Any]:
        store = app.state.context.store
        calendar = store.get_calendar(calendar_id)
        if calendar is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        if request.is_visible is not None:
            calendar = store.set_calendar_visibility(calendar_id, request.is_visible)
        if request.color is not None:
            calendar = store.set_calendar_color(calendar_id, request.color)
        return {"calendar": calendar.to_dict()}

    @app.get("/api/events")
    def list_events(start: str, end: str, calendar_id: list[str] | None = Query(default=None)) -> dict[str, Any]:
        ctx = app.state.context
        window_start, window_end = _parse_window(start, end)
        events = ctx.store.list_events_in_range(window_start, window_end, calendar_id)
        occurrences = ctx.event_service.occurrences_in_range(window_start, window_end, calendar_id)
        return {
            "events": [event.to_dict() for event in events],
            "occurrences": [occurrence.to_dict() for occurrence in occurrences],
        }

    @app.post("/api/events", status_code=201)
    def create_event(request: CreateEventRequest) -> dict[str, Any]:
        fields = request.model_dump(exclude={"calendar_id", "rrule"}, exclude_none=True)
        try:
            event = app.state.context.event_service.create_event(request.calendar_id, fields, rrule=request.rrule)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"event": event.to_dict()}

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: str, request: UpdateEventRequest) -> dict[str, Any]:
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        try:
            event = app.state.context.event_service.update_event(event_id, changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"event": event.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, str]:
        app.state.context.event_service.delete_event(event_id)
        return {"status": "deleted"}

    @app.post("/api/events/{event_id}/exceptions")
    def add_exception(event_id: str, request: ExceptionDateRequest) -> dict[str, Any]:
        try:
            recurrence = app.state.context.event_service.add_exception_date(event_id, request.date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"recurrence": recurrence.to_dict()}

    @app.post("/api/events/{event_id}/move")
    def move_event(event_id: str, request: MoveEventRequest) -> dict[str, Any]:
        report = app.state.context.event_service.move_event(event_id, request.calendar_id)
        return {"move": report.to_dict()}

    return app
