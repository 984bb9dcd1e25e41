from __future__ import annotations

import copy
import logging
import random
import sqlite3
import time
from concurrent.futures import Future
from typing import Any, Callable

from autoreg.agents import AgentLostError, AgentRegistry, ExecutionAgent
from autoreg.config_manager import ConfigManager
from autoreg.ledger_client import LedgerClient, LedgerError
from autoreg.models import (
    MODE_COMPLETE,
    MODE_IDLE,
    MODE_PAUSED,
    MODE_RUNNING,
    MODE_SCANNING,
    MODE_STOPPED,
    RECHECKABLE_STATUSES,
    STATE_ALREADY_REGISTERED,
    STATE_EVENT_FULL,
    STATE_NOT_EVENT_PAGE,
    STATE_READY_TO_REGISTER,
    TASK_ACTIVE,
    TASK_FAILED,
    TASK_MANUAL,
    TASK_PENDING,
    TASK_SUCCESS,
    AppConfig,
    EventTask,
    LedgerConfig,
    LedgerRecord,
    RunSettings,
    RunState,
    serialize_datetime,
    utc_now,
)
from autoreg.progress import (
    REGISTRATION_COMPLETE,
    REGISTRATION_RESULT,
    REGISTRATION_RESULT_UPDATE,
    STATUS_UPDATE,
    ProgressBus,
)
from autoreg.reconciler import classify_tasks, dedupe_events
from autoreg.scheduler import DEFERRED, LoopEvent, ReactionLoop, TaskRunner, ThreadTaskRunner
from autoreg.state_store import StateStore

logger = logging.getLogger(__name__)

START_REGISTRATION = "START_REGISTRATION"
PAUSE_REGISTRATION = "PAUSE_REGISTRATION"
RESUME_REGISTRATION = "RESUME_REGISTRATION"
STOP_REGISTRATION = "STOP_REGISTRATION"
RECHECK_FAILED_TABS = "RECHECK_FAILED_TABS"
RECHECK_SINGLE_TAB = "RECHECK_SINGLE_TAB"
MARK_AS_REGISTERED = "MARK_AS_REGISTERED"
RESET = "RESET"
SCAN = "SCAN"
FOCUS_TAB = "FOCUS_TAB"
CONTROL_MESSAGES = (
    START_REGISTRATION,
    PAUSE_REGISTRATION,
    RESUME_REGISTRATION,
    STOP_REGISTRATION,
    RECHECK_FAILED_TABS,
    RECHECK_SINGLE_TAB,
    MARK_AS_REGISTERED,
    RESET,
    SCAN,
    FOCUS_TAB,
)

_PROMOTE = "PROMOTE"
_ATTEMPT_FINISHED = "ATTEMPT_FINISHED"
_RECHECK_FINISHED = "RECHECK_FINISHED"
_SCAN_FINISHED = "SCAN_FINISHED"
_LEDGER_FINISHED = "LEDGER_FINISHED"
_FOCUS_FINISHED = "FOCUS_FINISHED"

MSG_ALREADY_REGISTERED = "already registered"
MSG_EVENT_FULL = "event full / waitlist"
MSG_REGISTERED = "registered"
MSG_AGENT_LOST = "agent lost"
MSG_REVERIFIED = "re-verified: registration confirmed"

LedgerFactory = Callable[[LedgerConfig], LedgerClient]


def _error(message: str, code: str = "invalid") -> dict[str, Any]:
    return {"ok": False, "error": message, "code": code}


def run_attempt(
    agent: ExecutionAgent, confirm_wait: float, sleep: Callable[[float], None] = time.sleep
) -> tuple[str, str]:
    """Inspect an opened agent, activate its register control if there is one,
    and return the terminal ``(status, message)`` for the task.

    Exceptions raised by the agent are left to the caller.
    """
    state = agent.get_state()
    if state.type == STATE_ALREADY_REGISTERED:
        return TASK_SUCCESS, MSG_ALREADY_REGISTERED
    if state.type == STATE_EVENT_FULL:
        return TASK_FAILED, MSG_EVENT_FULL
    if state.type == STATE_NOT_EVENT_PAGE:
        return TASK_MANUAL, "not an event page, check manually"
    if state.type != STATE_READY_TO_REGISTER:
        return TASK_MANUAL, "page state unclear, check manually"

    result = agent.activate()
    if not result.success:
        return TASK_FAILED, f"registration control not activated: {result.reason or 'unknown'}"
    if confirm_wait > 0:
        sleep(confirm_wait)
    after = agent.get_state()
    if after.type == STATE_ALREADY_REGISTERED:
        return TASK_SUCCESS, MSG_REGISTERED
    return TASK_MANUAL, f"submitted, confirmation not detected (page shows {after.type}), check manually"


class Orchestrator:
    """Owns the RunState and drives every task through its lifecycle.

    All state changes happen on the coordinator loop. Agent work and ledger
    calls run on ``runner`` and come back as loop events. Every transition is
    snapshotted before it is broadcast on ``bus``.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        agents: AgentRegistry,
        *,
        bus: ProgressBus | None = None,
        runner: TaskRunner | None = None,
        ledger_factory: LedgerFactory | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.agents = agents
        self.bus = bus or ProgressBus()
        self.runner = runner or ThreadTaskRunner()
        self.ledger_factory = ledger_factory
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.loop = ReactionLoop(self._handle)
        self.state = RunState()
        self._snapshot: dict[str, Any] = self.state.snapshot()
        self._rechecking: set[str] = set()
        self._complete_announced = False
        self._ledger_healthy = True
        self._handlers: dict[str, Callable[[LoopEvent], Any]] = {
            START_REGISTRATION: self._on_start,
            PAUSE_REGISTRATION: self._on_pause,
            RESUME_REGISTRATION: self._on_resume,
            STOP_REGISTRATION: self._on_stop,
            RECHECK_FAILED_TABS: self._on_recheck_failed,
            RECHECK_SINGLE_TAB: self._on_recheck_single,
            MARK_AS_REGISTERED: self._on_mark_registered,
            RESET: self._on_reset,
            SCAN: self._on_scan,
            FOCUS_TAB: self._on_focus,
            _PROMOTE: self._on_promote,
            _ATTEMPT_FINISHED: self._on_attempt_finished,
            _RECHECK_FINISHED: self._on_recheck_finished,
            _SCAN_FINISHED: self._on_scan_finished,
            _LEDGER_FINISHED: self._on_ledger_finished,
            _FOCUS_FINISHED: self._on_focus_finished,
        }

    # Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self.loop.start()

    def shutdown(self) -> None:
        self.loop.stop()

    def restore(self) -> bool:
        """Reload the last persisted run. Call before ``start()``.

        Agents do not survive a restart: active tasks become failed, every
        handle is cleared, and a running run comes back paused.
        """
        data = self.state_store.load_snapshot()
        if not data:
            return False
        state = RunState.from_dict(data)
        lost = 0
        for task in state.tasks:
            if task.status == TASK_ACTIVE:
                task.status = TASK_FAILED
                task.message = MSG_AGENT_LOST
                task.completed_at = utc_now()
                lost += 1
            task.agent_handle = None
        if state.mode == MODE_RUNNING:
            state.mode = MODE_PAUSED
        elif state.mode == MODE_SCANNING:
            state.mode = MODE_IDLE
        self.state = state
        self._complete_announced = state.mode in (MODE_COMPLETE, MODE_STOPPED)
        logger.info(
            "restored run: %d tasks, mode=%s, %d active task(s) marked lost",
            len(state.tasks),
            state.mode,
            lost,
        )
        self._commit("restore")
        self._check_complete()
        return True

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._snapshot)

    # Control messages ----------------------------------------------------

    def send(self, message_type: str, payload: dict[str, Any] | None = None) -> Future:
        if message_type not in CONTROL_MESSAGES:
            raise ValueError(f"unknown control message: {message_type}")
        return self.loop.request(message_type, payload)

    def start_registration(self, events: list[Any], settings: dict[str, Any] | None = None) -> Future:
        return self.send(START_REGISTRATION, {"events": events, "settings": settings or {}})

    def pause(self) -> Future:
        return self.send(PAUSE_REGISTRATION)

    def resume(self) -> Future:
        return self.send(RESUME_REGISTRATION)

    def stop(self) -> Future:
        return self.send(STOP_REGISTRATION)

    def recheck_failed(self) -> Future:
        return self.send(RECHECK_FAILED_TABS)

    def recheck_single(self, url: str, agent_handle: str | None = None) -> Future:
        return self.send(RECHECK_SINGLE_TAB, {"url": url, "agent_handle": agent_handle})

    def mark_as_registered(self, url: str, agent_handle: str | None = None) -> Future:
        return self.send(MARK_AS_REGISTERED, {"url": url, "agent_handle": agent_handle})

    def reset(self) -> Future:
        return self.send(RESET)

    def scan(self, events: list[Any]) -> Future:
        return self.send(SCAN, {"events": events})

    def focus(self, url: str, agent_handle: str | None = None) -> Future:
        return self.send(FOCUS_TAB, {"url": url, "agent_handle": agent_handle})

    # Coordinator ---------------------------------------------------------

    def _handle(self, event: LoopEvent) -> Any:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning("no handler for %s", event.kind)
            return _error(f"unknown message type: {event.kind}")
        return handler(event)

    def _on_start(self, event: LoopEvent) -> dict[str, Any]:
        if self.state.mode in (MODE_RUNNING, MODE_PAUSED, MODE_SCANNING):
            return _error(f"cannot start while {self.state.mode}", "conflict")
        if self.state.active_count:
            return _error(f"{self.state.active_count} task(s) still finishing", "conflict")
        config = self.config_manager.load()
        try:
            settings = RunSettings.from_config(config.run).merged(event.payload.get("settings"))
        except (AttributeError, TypeError, ValueError) as exc:
            return _error(f"invalid settings: {exc}")
        tasks = [
            EventTask.from_dict(task.to_dict())
            for task in dedupe_events(event.payload.get("events") or [])
            if task.selected
        ]
        skipped = 0
        if settings.skip_registered:
            kept = [task for task in tasks if not task.is_registered]
            skipped = len(tasks) - len(kept)
            tasks = kept
        if not tasks:
            return _error("no events selected")
        for task in tasks:
            task.status = TASK_PENDING
            task.agent_handle = None
            task.message = ""
            task.completed_at = None
            task.reverified = False
            task.overridden = False

        self.loop.cancel_timers()
        self._release_all_agents()
        self._rechecking.clear()
        self.state = RunState(
            tasks=tasks,
            concurrency_limit=settings.concurrency_limit,
            inter_task_delay=settings.inter_task_delay,
            delay_jitter=settings.delay_jitter,
            confirm_wait=settings.confirm_wait,
            mode=MODE_RUNNING,
            dedup_enabled=self._ledger_ready(config) and self._ledger_healthy,
            calendar=config.ledger.calendar,
            started_at=utc_now(),
        )
        self._complete_announced = False
        logger.info(
            "run started: %d tasks, limit=%d, delay=%.1fs (+%.1fs jitter), dedup=%s",
            len(tasks),
            settings.concurrency_limit,
            settings.inter_task_delay,
            settings.delay_jitter,
            self.state.dedup_enabled,
        )
        self._audit("", "run_started", {"total": len(tasks), "skipped_registered": skipped})
        self._commit("start")
        self.bus.log("info", f"Starting registration for {len(tasks)} events (max {settings.concurrency_limit} at a time)")
        self._promote()
        return {"ok": True, "total": len(tasks), "skipped_registered": skipped}

    def _on_pause(self, event: LoopEvent) -> dict[str, Any]:
        if self.state.mode != MODE_RUNNING:
            return _error(f"cannot pause while {self.state.mode}", "conflict")
        self.state.mode = MODE_PAUSED
        logger.info("run paused with %d active task(s)", self.state.active_count)
        self._audit("", "run_paused", {"active": self.state.active_count})
        self._commit("pause")
        return {"ok": True, "mode": self.state.mode}

    def _on_resume(self, event: LoopEvent) -> dict[str, Any]:
        if self.state.mode != MODE_PAUSED:
            return _error(f"cannot resume while {self.state.mode}", "conflict")
        self.state.mode = MODE_RUNNING
        logger.info("run resumed")
        self._audit("", "run_resumed", {})
        self._commit("resume")
        promoted = self._promote()
        self._check_complete()
        return {"ok": True, "mode": self.state.mode, "promoted": promoted}

    def _on_stop(self, event: LoopEvent) -> dict[str, Any]:
        if self.state.mode not in (MODE_RUNNING, MODE_PAUSED):
            return _error(f"cannot stop while {self.state.mode}", "conflict")
        self.state.mode = MODE_STOPPED
        self.state.finished_at = utc_now()
        self.loop.cancel_timers()
        active = self.state.active_count
        logger.info("run stopped, waiting on %d active task(s)", active)
        self._audit("", "run_stopped", {"active": active})
        self._commit("stop")
        self._check_complete()
        return {"ok": True, "mode": self.state.mode, "active": active}

    def _on_reset(self, event: LoopEvent) -> dict[str, Any]:
        self.loop.cancel_timers()
        self._release_all_agents()
        self._rechecking.clear()
        self.state = RunState()
        self._complete_announced = False
        self.state_store.clear_results()
        logger.info("run reset")
        self._audit("", "run_reset", {})
        self._commit("reset")
        self.bus.log("info", "Run reset")
        return {"ok": True, "mode": self.state.mode}

    def _on_promote(self, event: LoopEvent) -> None:
        self._promote()
        self._check_complete()

    def _promote(self) -> int:
        if self.state.mode != MODE_RUNNING:
            return 0
        promoted = 0
        for task in self.state.tasks:
            if self.state.active_count >= self.state.concurrency_limit:
                break
            if task.status != TASK_PENDING:
                continue
            self._activate(task)
            promoted += 1
        return promoted

    def _activate(self, task: EventTask) -> None:
        agent = self.agents.create(task.url)
        task.status = TASK_ACTIVE
        task.agent_handle = agent.handle
        task.message = "opening event page"
        logger.info("task active: %s on %s", task.url, agent.handle)
        self._audit(task.url, "task_active", {"agent_handle": agent.handle})
        self._commit("promote")
        url = task.url
        confirm_wait = self.state.confirm_wait
        self.runner.submit(lambda: self._attempt(url, agent, confirm_wait), name=f"autoreg-{agent.handle}")

    def _attempt(self, url: str, agent: ExecutionAgent, confirm_wait: float) -> None:
        lost = False
        try:
            agent.open()
            status, message = run_attempt(agent, confirm_wait, self._sleep)
        except AgentLostError as exc:
            logger.warning("agent %s lost on %s: %s", agent.handle, url, exc)
            status, message, lost = TASK_FAILED, MSG_AGENT_LOST, True
        except Exception:  # noqa: BLE001
            logger.exception("agent %s failed on %s", agent.handle, url)
            status, message, lost = TASK_FAILED, MSG_AGENT_LOST, True
        self.loop.post(
            _ATTEMPT_FINISHED,
            {"url": url, "agent_handle": agent.handle, "status": status, "message": message, "lost": lost},
        )

    def _on_attempt_finished(self, event: LoopEvent) -> None:
        payload = event.payload
        task = self.state.find(payload["url"])
        if task is None or task.status != TASK_ACTIVE or task.agent_handle != payload["agent_handle"]:
            logger.info("ignoring stale result for %s from %s", payload["url"], payload["agent_handle"])
            return
        task.status = payload["status"]
        task.message = payload["message"]
        task.completed_at = utc_now()
        if task.status == TASK_SUCCESS:
            self._append_to_ledger(task)
            self._drop_agent(task)
        elif payload.get("lost"):
            self._drop_agent(task)
        logger.info("task %s: %s (%s)", task.status, task.url, task.message)
        self._publish_result(task, REGISTRATION_RESULT)

        if self.state.mode == MODE_RUNNING and self.state.by_status(TASK_PENDING):
            self.loop.call_later(self._next_delay(), _PROMOTE)
        self._check_complete()

    def _on_recheck_failed(self, event: LoopEvent) -> dict[str, Any]:
        started = 0
        skipped = 0
        for task in self.state.tasks:
            if task.status not in RECHECKABLE_STATUSES:
                continue
            result = self._start_recheck(task)
            if result.get("rechecking"):
                started += 1
            else:
                skipped += 1
        logger.info("re-checking %d task(s), %d without a live agent", started, skipped)
        return {"ok": True, "rechecking": started, "skipped": skipped}

    def _on_recheck_single(self, event: LoopEvent) -> dict[str, Any]:
        task, error = self._lookup(event.payload)
        if task is None:
            return error
        return self._start_recheck(task)

    def _start_recheck(self, task: EventTask) -> dict[str, Any]:
        if task.status == TASK_SUCCESS:
            return {"ok": True, "rechecking": False, "status": task.status}
        if task.status not in RECHECKABLE_STATUSES:
            return _error(f"task is {task.status}", "conflict")
        agent = self.agents.get(task.agent_handle)
        if agent is None:
            return _error("no live agent for this event", "conflict")
        if task.url not in self._rechecking:
            self._rechecking.add(task.url)
            url = task.url
            self.runner.submit(lambda: self._recheck(url, agent), name=f"autoreg-recheck-{agent.handle}")
        return {"ok": True, "rechecking": True, "status": task.status}

    def _recheck(self, url: str, agent: ExecutionAgent) -> None:
        state_type = ""
        lost = False
        try:
            state_type = agent.get_state().type
        except Exception as exc:  # noqa: BLE001
            logger.warning("agent %s lost during re-check of %s: %s", agent.handle, url, exc)
            lost = True
        self.loop.post(
            _RECHECK_FINISHED,
            {"url": url, "agent_handle": agent.handle, "state": state_type, "lost": lost},
        )

    def _on_recheck_finished(self, event: LoopEvent) -> None:
        payload = event.payload
        self._rechecking.discard(payload["url"])
        task = self.state.find(payload["url"])
        if task is None or task.status not in RECHECKABLE_STATUSES or task.agent_handle != payload["agent_handle"]:
            return
        if payload["lost"]:
            # Status stays as it was; only the agent is gone.
            task.message = f"{MSG_AGENT_LOST} during re-check ({task.message})"
            self._drop_agent(task)
        elif payload["state"] == STATE_ALREADY_REGISTERED:
            task.status = TASK_SUCCESS
            task.message = MSG_REVERIFIED
            task.reverified = True
            task.completed_at = utc_now()
            self._append_to_ledger(task)
            self._drop_agent(task)
        else:
            logger.info("re-check of %s unchanged: %s", task.url, payload["state"])
            self.bus.log("info", f"{task.title or task.url}: still {payload['state']}")
            return
        logger.info("re-check of %s: %s (%s)", task.url, task.status, task.message)
        self._publish_result(task, REGISTRATION_RESULT_UPDATE)

    def _on_mark_registered(self, event: LoopEvent) -> dict[str, Any]:
        task, error = self._lookup(event.payload)
        if task is None:
            return error
        if task.status == TASK_SUCCESS:
            return {"ok": True, "changed": False, "title": task.title}
        if task.status not in RECHECKABLE_STATUSES:
            return _error(f"task is {task.status}", "conflict")
        previous = task.status
        task.status = TASK_SUCCESS
        task.overridden = True
        task.message = f"marked as registered by operator (was {previous}: {task.message})"
        task.completed_at = utc_now()
        self._append_to_ledger(task)
        self._drop_agent(task)
        logger.info("task %s marked registered by operator (was %s)", task.url, previous)
        self._publish_result(task, REGISTRATION_RESULT_UPDATE)
        return {"ok": True, "changed": True, "title": task.title, "previous_status": previous}

    def _on_focus(self, event: LoopEvent) -> dict[str, Any]:
        task, error = self._lookup(event.payload)
        if task is None:
            return error
        agent = self.agents.get(task.agent_handle)
        if agent is None:
            return _error("no live agent for this event", "conflict")
        url = task.url
        self.runner.submit(lambda: self._focus(url, agent), name=f"autoreg-focus-{agent.handle}")
        return {"ok": True, "agent_handle": agent.handle}

    def _focus(self, url: str, agent: ExecutionAgent) -> None:
        error = ""
        try:
            focused = agent.focus()
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not focus agent %s for %s: %s", agent.handle, url, exc)
            focused = False
            error = str(exc)
        self.loop.post(_FOCUS_FINISHED, {"url": url, "agent_handle": agent.handle, "focused": focused, "error": error})

    def _on_focus_finished(self, event: LoopEvent) -> None:
        payload = event.payload
        if payload["focused"]:
            self.bus.log("info", f"Showing {payload['url']} ({payload['agent_handle']})")
        else:
            self.bus.log("warning", f"Could not show {payload['url']}: {payload['error'] or 'not supported'}")

    def _on_scan(self, event: LoopEvent) -> Any:
        if self.state.mode in (MODE_RUNNING, MODE_PAUSED, MODE_SCANNING):
            return _error(f"cannot scan while {self.state.mode}", "conflict")
        if self.state.active_count:
            return _error(f"{self.state.active_count} task(s) still finishing", "conflict")
        tasks = [EventTask.from_dict(task.to_dict()) for task in dedupe_events(event.payload.get("events") or [])]
        previous_mode = self.state.mode
        self.state.mode = MODE_SCANNING
        self._commit("scan")
        config = self.config_manager.load()
        reply = event.reply
        self.runner.submit(lambda: self._fetch_scan_status(tasks, config, previous_mode, reply), name="autoreg-scan")
        return DEFERRED

    def _fetch_scan_status(
        self, tasks: list[EventTask], config: AppConfig, previous_mode: str, reply: Future | None
    ) -> None:
        status = None
        reason = ""
        attempted = False
        warnings: list[str] = []
        try:
            if not config.ledger.is_configured():
                reason = "ledger not configured"
            elif not config.identity.email:
                reason = "identity email not set"
            else:
                attempted = True
                client = self._ledger(config.ledger)
                calendar = config.ledger.calendar or None
                try:
                    status = client.get_scan_status(config.identity.email, calendar)
                except LedgerError as exc:
                    logger.warning("ledger unavailable during scan, dedup disabled: %s", exc)
                    reason = f"ledger unavailable: {exc}"
                if status is not None:
                    try:
                        client.record_seen_events([task.to_dict() for task in tasks], calendar, config.identity.email)
                    except Exception as exc:  # noqa: BLE001
                        logger.warning("could not record seen events: %s", exc)
                        warnings.append(f"seen events not recorded: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("ledger scan failed, dedup disabled")
            status = None
            reason = f"ledger unavailable: {exc}"
        finally:
            self.loop.post(
                _SCAN_FINISHED,
                {
                    "tasks": tasks,
                    "status": status,
                    "reason": reason,
                    "attempted": attempted,
                    "warnings": warnings,
                    "previous_mode": previous_mode,
                },
                reply=reply,
            )

    def _on_scan_finished(self, event: LoopEvent) -> dict[str, Any]:
        payload = event.payload
        outcome = classify_tasks(payload["tasks"], payload["status"], reason=payload["reason"])
        outcome.warnings.extend(payload["warnings"])
        if payload["attempted"]:
            self._ledger_healthy = payload["status"] is not None
        if self.state.mode == MODE_SCANNING:
            self.state.mode = payload["previous_mode"]
        summary = outcome.summary()
        logger.info("scan finished: %s", summary)
        self._audit("", "scan", {"total": len(outcome.tasks), "dedup_enabled": outcome.dedup_enabled})
        try:
            self.state_store.set_meta("last_scan_at", serialize_datetime(utc_now()) or "")
            self.state_store.set_meta("last_scan_summary", summary)
        except sqlite3.Error as exc:
            logger.error("scan metadata not recorded: %s", exc)
        self._commit("scan finished")
        self.bus.log("info" if outcome.dedup_enabled else "warning", summary)
        for warning in outcome.warnings:
            self.bus.log("warning", warning)
        self._check_complete()
        return {
            "ok": True,
            "events": [task.to_dict() for task in outcome.tasks],
            "dedup_enabled": outcome.dedup_enabled,
            "reason": outcome.reason,
            "summary": summary,
            "new_count": outcome.new_count,
            "registered_count": outcome.registered_count,
            "team_count": outcome.team_count,
            "warnings": list(outcome.warnings),
        }

    # Ledger --------------------------------------------------------------

    def _ledger(self, config: LedgerConfig) -> LedgerClient:
        factory = self.ledger_factory or LedgerClient
        return factory(config)

    @staticmethod
    def _ledger_ready(config: AppConfig) -> bool:
        return config.ledger.is_configured() and bool(config.identity.email)

    def _append_to_ledger(self, task: EventTask) -> None:
        config = self.config_manager.load()
        if not self._ledger_ready(config):
            logger.info("ledger append skipped for %s: ledger or identity not configured", task.url)
            return
        record = LedgerRecord(
            event_url=task.url,
            title=task.title,
            event_date=task.date,
            person_email=config.identity.email,
            person_name=config.identity.name,
            calendar=self.state.calendar or config.ledger.calendar,
            registered_at=serialize_datetime(utc_now()) or "",
        )
        self.runner.submit(lambda: self._push_ledger_record(config.ledger, record), name="autoreg-ledger")

    def _push_ledger_record(self, config: LedgerConfig, record: LedgerRecord) -> None:
        try:
            result = self._ledger(config).add_registration(record)
        except LedgerError as exc:
            logger.warning("ledger append failed for %s: %s", record.event_url, exc)
            result = {"added": False, "reason": "error", "error": str(exc)}
        except Exception as exc:  # noqa: BLE001
            logger.exception("ledger append crashed for %s", record.event_url)
            result = {"added": False, "reason": "error", "error": str(exc)}
        self.loop.post(_LEDGER_FINISHED, {"url": record.event_url, "result": result})

    def _on_ledger_finished(self, event: LoopEvent) -> None:
        url = event.payload["url"]
        result = event.payload["result"]
        self._audit(url, "ledger_append", result)
        if result.get("added"):
            self.bus.log("info", f"Recorded in ledger: {url}")
        elif result.get("reason") == "duplicate":
            self.bus.log("info", f"Already in ledger: {url}")
        else:
            self.bus.log("warning", f"Ledger append failed for {url}: {result.get('error', 'unknown error')}")

    # Helpers -------------------------------------------------------------

    def _lookup(self, payload: dict[str, Any]) -> tuple[EventTask | None, dict[str, Any]]:
        url = str(payload.get("url") or "").strip()
        task = self.state.find(url) if url else None
        if task is None:
            return None, _error(f"unknown event: {url}", "not_found")
        handle = payload.get("agent_handle")
        if handle and task.agent_handle and handle != task.agent_handle:
            return None, _error(f"agent {handle} does not belong to {task.url}", "conflict")
        return task, {}

    def _next_delay(self) -> float:
        delay = self.state.inter_task_delay
        if self.state.delay_jitter > 0:
            delay += self._rng.uniform(0, self.state.delay_jitter)
        return delay

    def _drop_agent(self, task: EventTask) -> None:
        handle = task.agent_handle
        task.agent_handle = None
        if handle:
            self.runner.submit(lambda: self.agents.close(handle), name=f"autoreg-close-{handle}")

    def _release_all_agents(self) -> None:
        for handle in self.agents.handles():
            agent = self.agents.discard(handle)
            if agent is not None:
                self.runner.submit(lambda agent=agent: self._close_quietly(agent), name=f"autoreg-close-{handle}")

    @staticmethod
    def _close_quietly(agent: ExecutionAgent) -> None:
        try:
            agent.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("closing agent %s failed: %s", agent.handle, exc)

    def _check_complete(self) -> None:
        if self._complete_announced or self.state.active_count:
            return
        mode = self.state.mode
        if mode == MODE_STOPPED or (mode in (MODE_RUNNING, MODE_PAUSED) and not self.state.by_status(TASK_PENDING)):
            if mode != MODE_STOPPED:
                self.state.mode = MODE_COMPLETE
            self.state.finished_at = self.state.finished_at or utc_now()
            self._complete_announced = True
            stats = self.state.stats.to_dict()
            logger.info("run finished (%s): %s", self.state.mode, stats)
            self._audit("", "run_complete", stats)
            self._commit("complete")
            self.bus.publish(REGISTRATION_COMPLETE, {"stats": stats, "mode": self.state.mode})

    def _status_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = self.state.stats.to_dict()
        payload["mode"] = self.state.mode
        return payload

    def _commit(self, reason: str) -> None:
        snapshot = self.state.snapshot()
        self._snapshot = snapshot
        try:
            self.state_store.save_snapshot(snapshot)
        except sqlite3.Error as exc:
            logger.error("snapshot after %s not persisted: %s", reason, exc)
        self.bus.publish(STATUS_UPDATE, self._status_payload())

    def _publish_result(self, task: EventTask, message_type: str) -> None:
        self._commit(message_type.lower())
        result = task.result_payload()
        self.bus.publish(message_type, result)
        kind = "update" if message_type == REGISTRATION_RESULT_UPDATE else "result"
        self.state_store.record_result(kind=kind, result=result)
        self._audit(task.url, f"task_{task.status}", {"message": task.message, "kind": kind})

    def _audit(self, url: str, action: str, details: dict[str, Any]) -> None:
        try:
            self.state_store.record_audit_event(url=url, action=action, details=details)
        except sqlite3.Error as exc:
            logger.error("audit event %s not recorded: %s", action, exc)
