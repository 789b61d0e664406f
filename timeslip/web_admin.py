from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from timeslip.allocator import allocate, build_issue_catalogue, commits_from_payload
from timeslip.change_tracker import ChangeTrackingStore
from timeslip.config_manager import ConfigManager
from timeslip.models import DateWindow, WorklogValidationError, parse_iso_datetime
from timeslip.repository import SQLiteWorklogRepository
from timeslip.stats import aggregate_worklog_stats
from timeslip.sync_coordinator import SyncCoordinator


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class LoadSessionRequest(BaseModel):
    start: str
    end: str
    author_name: str = ""


class IssuePayload(BaseModel):
    key: str = Field(min_length=1)
    summary: str = ""
    project_name: str = ""


class AllocateRequest(BaseModel):
    commits: list[dict[str, Any]] = Field(default_factory=list)
    issues: list[IssuePayload] = Field(default_factory=list)


class EventBoundsRequest(BaseModel):
    start: str
    end: str


class CreateEventRequest(EventBoundsRequest):
    issue_key: str = ""
    summary: str = ""
    project_name: str | None = None


@dataclass
class EditingSession:
    author_account_id: str
    author_name: str
    window: DateWindow
    store: ChangeTrackingStore
    coordinator: SyncCoordinator

    def snapshot(self) -> dict[str, Any]:
        summary = self.store.summarize()
        return {
            "author_account_id": self.author_account_id,
            "window": self.window.to_dict(),
            "events": [event.to_dict() for event in self.store.working_copy],
            "summary": {"has_changes": summary.has_changes, "total_changes": summary.total_changes},
        }


class AppContext:
    def __init__(self, config_path: str, db_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.repository = SQLiteWorklogRepository(db_path or config.storage.db_path)
        self.sessions: dict[str, EditingSession] = {}

    def session(self, account_id: str) -> EditingSession:
        session = self.sessions.get(account_id)
        if session is None:
            raise HTTPException(status_code=404, detail="session not loaded")
        return session


def _parse_bounds(request: EventBoundsRequest) -> tuple[datetime, datetime]:
    try:
        start = parse_iso_datetime(request.start)
        end = parse_iso_datetime(request.end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Invalid start/end datetime")
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be later than start")
    return start, end


def create_app() -> FastAPI:
    config_path = os.getenv("TIMESLIP_CONFIG_PATH", "config.yaml")
    db_path = os.getenv("TIMESLIP_DB_PATH") or None
    context = AppContext(config_path=config_path, db_path=db_path)

    app = FastAPI(title="Timeslip", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    # Edits may interleave with a commit awaiting the repository; they stay pending.

    @app.post("/api/sessions/{account_id}/load")
    async def load_session(account_id: str, request: LoadSessionRequest) -> dict[str, Any]:
        try:
            window = DateWindow.parse(request.start, request.end)
        except WorklogValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        config = app.state.context.config_manager.load()
        store = ChangeTrackingStore()
        session = EditingSession(
            author_account_id=account_id,
            author_name=request.author_name,
            window=window,
            store=store,
            coordinator=SyncCoordinator(
                app.state.context.repository,
                store,
                create_concurrency=config.sync.create_concurrency,
            ),
        )
        await session.coordinator.load(window, account_id, request.author_name)
        app.state.context.sessions[account_id] = session
        return session.snapshot()

    @app.get("/api/sessions/{account_id}/events")
    async def list_events(account_id: str) -> dict[str, Any]:
        return app.state.context.session(account_id).snapshot()

    @app.post("/api/sessions/{account_id}/allocate")
    async def allocate_from_commits(account_id: str, request: AllocateRequest) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        preferences = app.state.context.config_manager.load().preferences
        drafts = allocate(
            commits_from_payload(request.commits),
            build_issue_catalogue(issue.model_dump() for issue in request.issues),
            preferences,
            session.author_name,
            account_id,
        )
        created = session.store.apply_drafts(drafts)
        payload = session.snapshot()
        payload["created"] = [event.to_dict() for event in created]
        return payload

    @app.post("/api/sessions/{account_id}/events")
    async def create_event(account_id: str, request: CreateEventRequest) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        start, end = _parse_bounds(request)
        issue_key = request.issue_key.strip()
        event = session.store.create_from_interaction(
            start,
            end,
            account_id,
            session.author_name,
            project_name=request.project_name,
            issue=(issue_key, request.summary) if issue_key else None,
        )
        return {"event": event.to_dict()}

    def _reschedule(account_id: str, event_id: str, request: EventBoundsRequest, resize: bool) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        start, end = _parse_bounds(request)
        if resize:
            event = session.store.resize(event_id, start, end)
        else:
            event = session.store.move(event_id, start, end)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        return {"event": event.to_dict()}

    @app.post("/api/sessions/{account_id}/events/{event_id}/move")
    async def move_event(account_id: str, event_id: str, request: EventBoundsRequest) -> dict[str, Any]:
        return _reschedule(account_id, event_id, request, resize=False)

    @app.post("/api/sessions/{account_id}/events/{event_id}/resize")
    async def resize_event(account_id: str, event_id: str, request: EventBoundsRequest) -> dict[str, Any]:
        return _reschedule(account_id, event_id, request, resize=True)

    @app.delete("/api/sessions/{account_id}/events/{event_id}")
    async def delete_event(account_id: str, event_id: str) -> dict[str, str]:
        if not app.state.context.session(account_id).store.delete(event_id):
            raise HTTPException(status_code=404, detail="event not found")
        return {"message": "event deleted"}

    @app.delete("/api/sessions/{account_id}/events")
    async def delete_all_events(account_id: str) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        session.store.delete_all()
        return session.snapshot()

    @app.get("/api/sessions/{account_id}/summary")
    async def summary(account_id: str) -> dict[str, Any]:
        return app.state.context.session(account_id).snapshot()["summary"]

    @app.get("/api/sessions/{account_id}/diff")
    async def diff(account_id: str) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        return session.store.diff(session.window, account_id).to_dict()

    @app.get("/api/sessions/{account_id}/stats")
    async def stats(account_id: str) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        preferences = app.state.context.config_manager.load().preferences
        events = session.store.events_in_window(session.window, account_id)
        return aggregate_worklog_stats(events, preferences.timezone).to_dict()

    @app.post("/api/sessions/{account_id}/cancel")
    async def cancel(account_id: str) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        session.store.cancel()
        return session.snapshot()

    @app.post("/api/sessions/{account_id}/commit")
    async def commit(account_id: str) -> dict[str, Any]:
        session = app.state.context.session(account_id)
        result = await session.coordinator.commit(session.window, account_id)
        return {"message": "sync completed", "result": result.to_dict()}

    return app
