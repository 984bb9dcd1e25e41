from __future__ import annotations

import csv
import io
import os
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from autoreg.agents import AgentRegistry, BrowserAgent, ExecutionAgent
from autoreg.config_manager import MASK, ConfigManager
from autoreg.discovery import DiscoveryError, discover_events
from autoreg.ledger_client import LedgerClient, LedgerError
from autoreg.models import TERMINAL_STATUSES, serialize_datetime, utc_now
from autoreg.orchestrator import Orchestrator
from autoreg.progress import ProgressBus, RecentMessages
from autoreg.state_store import StateStore

CONTROL_TIMEOUT_SECONDS = 30.0
SCAN_TIMEOUT_SECONDS = 120.0
CSV_HEADER = ["Event Title", "Event URL", "Status", "Message", "Timestamp"]

_ERROR_STATUS = {"not_found": 404, "conflict": 409}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventItem(BaseModel):
    url: str = Field(min_length=1)
    title: str = ""
    date: str = ""
    selected: bool = True
    is_registered: bool = False
    is_new: bool = False
    team_registered: list[dict[str, Any]] = Field(default_factory=list)
    seen_by_team: bool = False


class DiscoverRequest(BaseModel):
    url: str = Field(min_length=1)
    html: str | None = None


class ScanRequest(BaseModel):
    events: list[EventItem] = Field(default_factory=list)


class StartRequest(BaseModel):
    events: list[EventItem] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class TaskRefRequest(BaseModel):
    url: str = Field(min_length=1)
    agent_handle: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.bus = ProgressBus()
        self.messages = RecentMessages()
        self.bus.subscribe(self.messages)
        self.agents = AgentRegistry(self._build_agent)
        self.orchestrator = Orchestrator(self.config_manager, self.state_store, self.agents, bus=self.bus)

    def _build_agent(self, handle: str, url: str) -> ExecutionAgent:
        return BrowserAgent(handle, url, self.config_manager.load().browser)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_ledger_url = bool(config_dict.get("ledger", {}).get("url", "").strip())
    return {"ledger": {"url": {"is_masked": has_ledger_url}}}


def _resolve(future: Future, timeout: float = CONTROL_TIMEOUT_SECONDS) -> dict[str, Any]:
    try:
        result = future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise HTTPException(status_code=504, detail="coordinator did not answer in time") from exc
    if isinstance(result, dict) and result.get("ok") is False:
        status_code = _ERROR_STATUS.get(str(result.get("code", "")), 400)
        raise HTTPException(status_code=status_code, detail=str(result.get("error", "request rejected")))
    return result or {"ok": True}


def _events_payload(events: list[EventItem]) -> list[dict[str, Any]]:
    return [event.model_dump() for event in events]


def results_csv(snapshot: dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for task in snapshot.get("tasks", []):
        if task.get("status") not in TERMINAL_STATUSES:
            continue
        writer.writerow(
            [
                task.get("title", ""),
                task.get("url", ""),
                task.get("status", ""),
                task.get("message", ""),
                task.get("completed_at") or "",
            ]
        )
    return buffer.getvalue()


def create_app() -> FastAPI:
    config_path = os.getenv("AUTOREG_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("AUTOREG_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Autoreg Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.orchestrator.restore()
        app.state.context.orchestrator.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.orchestrator.shutdown()
        app.state.context.agents.close_all()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "coordinator": app.state.context.orchestrator.loop.is_running}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.post("/api/discover")
    def discover(request: DiscoverRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            events = discover_events(
                request.url,
                html=request.html,
                timeout=config.browser.page_load_timeout_seconds,
            )
        except DiscoveryError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"events": events, "count": len(events)}

    @app.post("/api/scan")
    def scan(request: ScanRequest) -> dict[str, Any]:
        if not request.events:
            raise HTTPException(status_code=400, detail="no events to scan")
        future = app.state.context.orchestrator.scan(_events_payload(request.events))
        return _resolve(future, timeout=SCAN_TIMEOUT_SECONDS)

    @app.post("/api/run/start")
    def start_run(request: StartRequest) -> dict[str, Any]:
        future = app.state.context.orchestrator.start_registration(
            _events_payload(request.events), request.settings
        )
        return _resolve(future)

    @app.post("/api/run/pause")
    def pause_run() -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.pause())

    @app.post("/api/run/resume")
    def resume_run() -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.resume())

    @app.post("/api/run/stop")
    def stop_run() -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.stop())

    @app.post("/api/run/reset")
    def reset_run() -> dict[str, Any]:
        result = _resolve(app.state.context.orchestrator.reset())
        app.state.context.messages.clear()
        return result

    @app.post("/api/run/recheck")
    def recheck_failed() -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.recheck_failed())

    @app.post("/api/run/recheck-one")
    def recheck_one(request: TaskRefRequest) -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.recheck_single(request.url, request.agent_handle))

    @app.post("/api/run/mark-registered")
    def mark_registered(request: TaskRefRequest) -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.mark_as_registered(request.url, request.agent_handle))

    @app.post("/api/run/focus")
    def focus_agent(request: TaskRefRequest) -> dict[str, Any]:
        return _resolve(app.state.context.orchestrator.focus(request.url, request.agent_handle))

    @app.get("/api/run")
    def run_snapshot() -> dict[str, Any]:
        return app.state.context.orchestrator.snapshot()

    @app.get("/api/run/messages")
    def run_messages(after: int = 0, limit: int = 200) -> dict[str, Any]:
        messages = app.state.context.messages.since(after=after, limit=limit)
        last_seq = messages[-1]["seq"] if messages else after
        return {"messages": messages, "last_seq": last_seq}

    @app.get("/api/results")
    def results(limit: int = 500) -> dict[str, Any]:
        return {"results": app.state.context.state_store.recent_results(limit=limit)}

    @app.get("/api/results/export")
    def export_results() -> Response:
        body = results_csv(app.state.context.orchestrator.snapshot())
        filename = f"registration-results-{utc_now().strftime('%Y%m%d-%H%M%S')}.csv"
        return Response(
            content=body,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/debug/export")
    def debug_export(limit: int = 500) -> dict[str, Any]:
        context = app.state.context
        return {
            "exported_at": serialize_datetime(utc_now()),
            "snapshot": context.orchestrator.snapshot(),
            "config": context.config_manager.masked(),
            "live_agents": context.agents.handles(),
            "last_scan": {
                "at": context.state_store.get_meta("last_scan_at"),
                "summary": context.state_store.get_meta("last_scan_summary"),
            },
            "results": context.state_store.recent_results(limit=limit),
            "audit_events": context.state_store.recent_audit_events(limit=limit),
        }

    @app.get("/api/ledger/calendars")
    def ledger_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            calendars = LedgerClient(config.ledger).get_calendars()
        except LedgerError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"calendars": calendars, "selected": config.ledger.calendar}

    @app.get("/api/ledger/data")
    def ledger_data(calendar: str | None = None) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            records, count = LedgerClient(config.ledger).get_all_data(calendar or config.ledger.calendar or None)
        except LedgerError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"data": [record.to_dict() for record in records], "count": count}

    @app.post("/api/ledger/test")
    def test_ledger_connectivity() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = LedgerClient(config.ledger).test_connectivity()
        return {"ok": ok, "message": message, "url": MASK if config.ledger.url else ""}

    return app


app = create_app()
