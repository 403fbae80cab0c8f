from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any

import requests
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from weekplan.ai_client import OpenAICompatibleClient
from weekplan.config_manager import SECRET_PLACEHOLDER, ConfigManager
from weekplan.feed_fetcher import FeedFetchError, validate_feed_url
from weekplan.merger import remove_feed_items
from weekplan.models import AppConfig, ScheduleStore, parse_iso_date, week_dates
from weekplan.planner import AgentMessage, ScheduleProposal, build_messages, build_planning_payload
from weekplan.reconciler import apply_proposal, matcher_for_policy
from weekplan.scheduler import SyncScheduler
from weekplan.state_store import StateStore
from weekplan.sync_engine import FeedSyncEngine, FeedSyncError
from weekplan.tasks import TaskForm, delete_task, find_item, save_task, success_percentage, toggle_completion, week_view

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskRequest(BaseModel):
    name: str = ""
    start_time: str = ""
    end_time: str = ""
    due_date: str = ""
    priority: str = "medium"
    repeat_type: str = "never"
    repeat_days: list[int] = Field(default_factory=list)
    date: str | None = None

    def to_form(self) -> TaskForm:
        return TaskForm(
            name=self.name,
            start_time=self.start_time,
            end_time=self.end_time,
            due_date=self.due_date,
            priority=self.priority,
            repeat_type=self.repeat_type,
            repeat_days=list(self.repeat_days),
        )


class FeedRequest(BaseModel):
    url: str


class ProposalRequest(BaseModel):
    proposal: dict[str, Any] = Field(default_factory=dict)
    date: str | None = None


class PlanRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)
    date: str | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = FeedSyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_ai_api_key = str(current.get("ai", {}).get("api_key", ""))
    ai = sanitized.get("ai")
    if isinstance(ai, dict):
        api_key = ai.get("api_key")
        if api_key is not None and str(api_key).strip() in {"", SECRET_PLACEHOLDER}:
            if current_ai_api_key:
                ai.pop("api_key", None)
            else:
                ai["api_key"] = ""
        if not ai:
            sanitized.pop("ai", None)
    return sanitized


def _selected_week(value: str | None) -> tuple[date, list[date]]:
    try:
        selected = parse_iso_date(value) or date.today()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}") from exc
    return selected, week_dates(selected)


def _schedule_response(store: ScheduleStore, week: list[date]) -> dict[str, Any]:
    view = week_view(store, week)
    view["success_percentage"] = success_percentage(store)
    return view


def create_app() -> FastAPI:
    config_path = os.getenv("WEEKPLAN_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("WEEKPLAN_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Weekplan", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def _save(store: ScheduleStore, next_id: int) -> None:
        if not app.state.context.state_store.save_schedule(store, next_id):
            raise HTTPException(status_code=500, detail="Schedule could not be saved")

    def _apply(proposal: ScheduleProposal, config: AppConfig, week: list[date]) -> dict[str, Any]:
        matcher = matcher_for_policy(config.planning.title_match, config.planning.fuzzy_threshold)
        with app.state.context.state_store.lock:
            store, next_id = app.state.context.state_store.load_schedule()
            try:
                store, next_id = apply_proposal(
                    store,
                    proposal,
                    week,
                    next_id,
                    config.term.end,
                    matcher=matcher,
                    excluded_closing_weeks=config.term.excluded_closing_weeks,
                )
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            _save(store, next_id)
        return {
            "update_type": proposal.update_type,
            "schedule_summary": proposal.schedule_summary,
            "notes": proposal.notes,
            "schedule": _schedule_response(store, week),
        }

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            updated = app.state.context.config_manager.update(sanitized_payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/schedule")
    def get_schedule(selected: str | None = Query(default=None, alias="date")) -> dict[str, Any]:
        _, week = _selected_week(selected)
        store, _ = app.state.context.state_store.load_schedule()
        return _schedule_response(store, week)

    @app.post("/api/tasks")
    def create_task(request: TaskRequest) -> dict[str, Any]:
        return _save_task(request, editing_id=None)

    @app.put("/api/tasks/{task_id}")
    def update_task(task_id: int, request: TaskRequest) -> dict[str, Any]:
        return _save_task(request, editing_id=task_id)

    def _save_task(request: TaskRequest, *, editing_id: int | None) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        selected, week = _selected_week(request.date or request.due_date or None)
        with app.state.context.state_store.lock:
            store, next_id = app.state.context.state_store.load_schedule()
            if editing_id is not None and find_item(store, editing_id) is None:
                raise HTTPException(status_code=404, detail="task not found")
            try:
                store, next_id = save_task(
                    store,
                    request.to_form(),
                    next_id,
                    config.term.end,
                    selected,
                    editing_id=editing_id,
                    excluded_closing_weeks=config.term.excluded_closing_weeks,
                )
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            _save(store, next_id)
        return {"message": "task saved", "next_id": next_id, "schedule": _schedule_response(store, week)}

    @app.delete("/api/tasks/{task_id}")
    def remove_task(task_id: int, whole_series: bool = False) -> dict[str, Any]:
        with app.state.context.state_store.lock:
            store, next_id = app.state.context.state_store.load_schedule()
            try:
                store = delete_task(store, task_id, whole_series=whole_series)
            except ValueError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            _save(store, next_id)
        return {"message": "task deleted"}

    @app.post("/api/tasks/{task_id}/toggle")
    def toggle_task(task_id: int) -> dict[str, Any]:
        with app.state.context.state_store.lock:
            store, next_id = app.state.context.state_store.load_schedule()
            found = find_item(store, task_id)
            if found is None:
                raise HTTPException(status_code=404, detail="task not found")
            store = toggle_completion(store, task_id)
            _save(store, next_id)
        return {"message": "task updated", "completed": not found[1].completed}

    @app.get("/api/feeds")
    def list_feeds() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        return {
            "urls": config.feeds.urls,
            "last_sync_at": app.state.context.state_store.get_meta("last_feed_sync_at"),
        }

    @app.post("/api/feeds")
    def add_feed(request: FeedRequest) -> dict[str, Any]:
        try:
            url = validate_feed_url(request.url)
        except FeedFetchError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        config = app.state.context.config_manager.add_feed_url(url)
        return {"message": "feed added", "urls": config.feeds.urls}

    @app.delete("/api/feeds")
    def remove_feed(url: str) -> dict[str, Any]:
        config = app.state.context.config_manager.remove_feed_url(url)
        with app.state.context.state_store.lock:
            store, next_id = app.state.context.state_store.load_schedule()
            _save(remove_feed_items(store, url), next_id)
        return {"message": "feed removed", "urls": config.feeds.urls}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, Any]:
        try:
            result = app.state.context.sync_engine.run_once(trigger="manual")
        except FeedSyncError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
            "last_sync_at": app.state.context.state_store.get_meta("last_feed_sync_at"),
        }

    @app.post("/api/schedule/proposal")
    def apply_schedule_proposal(request: ProposalRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        _, week = _selected_week(request.date)
        return _apply(ScheduleProposal.from_dict(request.proposal), config, week)

    @app.post("/api/plan")
    def plan_week(request: PlanRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        _, week = _selected_week(request.date)
        store, _ = app.state.context.state_store.load_schedule()
        payload = build_planning_payload(
            schedule=store,
            week=week,
            term_name=config.term.name,
            term_end=config.term.end,
            preferences=request.preferences,
        )
        conversation = [AgentMessage.from_dict(raw) for raw in request.messages]
        client = OpenAICompatibleClient(config.ai)
        try:
            raw_proposal = client.generate_proposal(messages=build_messages(payload, conversation))
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Planning agent request failed: %s", exc)
            raise HTTPException(status_code=502, detail=f"{type(exc).__name__}: {exc}") from exc
        return _apply(ScheduleProposal.from_dict(raw_proposal), config, week)

    @app.post("/api/ai/test")
    def test_ai_connectivity() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = OpenAICompatibleClient(config.ai).test_connectivity()
        return {"ok": ok, "message": message}

    return app


app = create_app()
