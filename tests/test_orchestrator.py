import random
import tempfile
import unittest
from pathlib import Path
from typing import Any, Callable
from unittest import mock

from autoreg.agents import AgentLostError, AgentRegistry, ExecutionAgent
from autoreg.ledger_client import LedgerError
from autoreg.models import (
    MODE_COMPLETE,
    MODE_IDLE,
    MODE_PAUSED,
    MODE_RUNNING,
    MODE_STOPPED,
    STATE_ALREADY_REGISTERED,
    STATE_EVENT_FULL,
    STATE_NOT_EVENT_PAGE,
    STATE_READY_TO_REGISTER,
    STATE_UNKNOWN,
    ActivationResult,
    AppConfig,
    EventTask,
    LedgerRecord,
    PageState,
    RunState,
    ScanStatus,
    normalize_event_url,
)
from autoreg.orchestrator import Orchestrator
from autoreg.progress import (
    LOG,
    REGISTRATION_COMPLETE,
    REGISTRATION_RESULT,
    REGISTRATION_RESULT_UPDATE,
    STATUS_UPDATE,
    ProgressBus,
)
from autoreg.scheduler import InlineTaskRunner, TaskRunner
from autoreg.state_store import StateStore


class ScriptedAgent(ExecutionAgent):
    """Reports page states from a script; the last state repeats."""

    def __init__(self, handle: str, url: str, states: list[str], *, activation: ActivationResult, lost_on_open: bool) -> None:
        super().__init__(handle, url)
        self.states = list(states)
        self.activation = activation
        self.lost_on_open = lost_on_open
        self.opened = False
        self.closed = False
        self.activations = 0
        self.focused = 0

    def open(self) -> None:
        if self.lost_on_open:
            raise AgentLostError("tab crashed")
        self.opened = True

    def get_state(self) -> PageState:
        if self.closed:
            raise AgentLostError("closed")
        if len(self.states) > 1:
            return PageState(type=self.states.pop(0))
        return PageState(type=self.states[0])

    def activate(self) -> ActivationResult:
        self.activations += 1
        return self.activation

    def close(self) -> None:
        self.closed = True

    def is_alive(self) -> bool:
        return self.opened and not self.closed

    def focus(self) -> bool:
        if self.closed:
            raise AgentLostError("closed")
        self.focused += 1
        return True


class AgentScripts:
    def __init__(
        self,
        scripts: dict[str, list[str]] | None = None,
        *,
        rejected: tuple[str, ...] = (),
        lost_on_open: tuple[str, ...] = (),
    ) -> None:
        self.scripts = scripts or {}
        self.rejected = rejected
        self.lost_on_open = lost_on_open
        self.created: dict[str, ScriptedAgent] = {}

    def __call__(self, handle: str, url: str) -> ExecutionAgent:
        slug = normalize_event_url(url)
        activation = (
            ActivationResult(success=False, reason=STATE_READY_TO_REGISTER)
            if slug in self.rejected
            else ActivationResult(success=True)
        )
        agent = ScriptedAgent(
            handle,
            url,
            self.scripts.get(slug, [STATE_ALREADY_REGISTERED]),
            activation=activation,
            lost_on_open=slug in self.lost_on_open,
        )
        self.created[slug] = agent
        return agent


class ManualRunner(TaskRunner):
    """Holds submitted jobs until the test runs them."""

    def __init__(self) -> None:
        self.jobs: list[tuple[str, Callable[[], None]]] = []

    def submit(self, fn: Callable[[], None], *, name: str = "") -> None:
        self.jobs.append((name, fn))

    def run_next(self, prefix: str = "") -> bool:
        for index, (name, fn) in enumerate(self.jobs):
            if name.startswith(prefix):
                del self.jobs[index]
                fn()
                return True
        return False

    def run_all(self) -> None:
        while self.jobs:
            _, fn = self.jobs.pop(0)
            fn()


class FakeLedger:
    def __init__(self, status: ScanStatus | None = None, error: str | None = None) -> None:
        self.status = status or ScanStatus()
        self.error = error
        self.records: list[LedgerRecord] = []
        self.seen_batches: list[list[dict[str, Any]]] = []

    def get_scan_status(self, email: str, calendar: str | None = None) -> ScanStatus:
        if self.error:
            raise LedgerError(self.error)
        return self.status

    def record_seen_events(self, events, calendar=None, scanned_by=None) -> dict[str, Any]:
        self.seen_batches.append(list(events))
        return {"recorded": len(events), "newEvents": 0}

    def add_registration(self, record: LedgerRecord) -> dict[str, Any]:
        if self.error:
            raise LedgerError(self.error)
        if any(existing.dedup_key == record.dedup_key for existing in self.records):
            return {"added": False, "reason": "duplicate"}
        self.records.append(record)
        return {"added": True}


def make_config(**run: Any) -> AppConfig:
    run_section = {"concurrency_limit": 2, "delay_seconds": 0, "confirm_wait_seconds": 0}
    run_section.update(run)
    return AppConfig.from_dict(
        {
            "identity": {"email": "me@example.com", "name": "Me"},
            "ledger": {"url": "https://ledger.example.com/exec", "calendar": "SF"},
            "run": run_section,
        }
    )


def events(*slugs: str) -> list[dict[str, Any]]:
    return [{"url": f"https://lu.ma/{slug}", "title": f"Event {slug.upper()}"} for slug in slugs]


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.bus = ProgressBus()
        self.messages: list[dict[str, Any]] = []
        self.bus.subscribe(self.messages.append)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def build(
        self,
        *,
        config: AppConfig | None = None,
        scripts: AgentScripts | None = None,
        runner: TaskRunner | None = None,
        ledger: FakeLedger | None = None,
    ) -> Orchestrator:
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = config or make_config()
        self.scripts = scripts or AgentScripts()
        self.ledger = ledger or FakeLedger()
        self.runner = runner or InlineTaskRunner()
        self.orchestrator = Orchestrator(
            self.config_manager,
            self.store,
            AgentRegistry(self.scripts),
            bus=self.bus,
            runner=self.runner,
            ledger_factory=lambda _config: self.ledger,
            sleep=lambda _seconds: None,
        )
        return self.orchestrator

    def drain(self) -> None:
        self.orchestrator.loop.run_pending()

    def settle(self) -> None:
        while True:
            if isinstance(self.runner, ManualRunner) and self.runner.jobs:
                self.runner.run_all()
            if not self.orchestrator.loop.run_pending() and not getattr(self.runner, "jobs", None):
                return

    def call(self, future) -> dict[str, Any]:
        self.drain()
        return future.result(timeout=1)

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.messages if message["type"] == message_type]

    def task(self, slug: str) -> dict[str, Any]:
        for task in self.orchestrator.snapshot()["tasks"]:
            if normalize_event_url(task["url"]) == slug:
                return task
        raise AssertionError(f"no task {slug}")


class ConcurrencyTests(OrchestratorTestCase):
    def test_three_events_with_limit_two(self) -> None:
        runner = ManualRunner()
        orchestrator = self.build(runner=runner)
        max_active: list[int] = []
        self.bus.subscribe(lambda _message: max_active.append(orchestrator.state.active_count))

        result = self.call(orchestrator.start_registration(events("a", "b", "c")))

        self.assertTrue(result["ok"])
        self.assertEqual(result["total"], 3)
        self.assertEqual(orchestrator.state.active_count, 2)
        self.assertEqual(sorted(self.scripts.created), ["a", "b"])
        self.assertEqual(self.task("c")["status"], "pending")

        self.assertTrue(runner.run_next("autoreg-agent"))
        self.drain()
        self.assertIn("c", self.scripts.created)
        self.assertLessEqual(orchestrator.state.active_count, 2)

        self.settle()
        snapshot = orchestrator.snapshot()
        self.assertEqual(snapshot["mode"], MODE_COMPLETE)
        self.assertEqual(snapshot["stats"]["success"], 3)
        self.assertEqual(snapshot["stats"]["processed"], 3)
        self.assertEqual(len(self.of_type(REGISTRATION_RESULT)), 3)
        self.assertEqual(len(self.of_type(REGISTRATION_COMPLETE)), 1)
        self.assertEqual(len(self.ledger.records), 3)
        self.assertLessEqual(max(max_active), 2)

    def test_counters_add_up_on_every_status_update(self) -> None:
        scripts = AgentScripts({"b": [STATE_EVENT_FULL], "c": [STATE_UNKNOWN]})
        orchestrator = self.build(scripts=scripts)

        self.call(orchestrator.start_registration(events("a", "b", "c", "d")))
        self.settle()

        updates = self.of_type(STATUS_UPDATE)
        self.assertTrue(updates)
        for message in updates:
            data = message["data"]
            self.assertEqual(data["success"] + data["failed"] + data["manual"] + data["pending"], data["total"])
            self.assertEqual(data["processed"], data["success"] + data["failed"] + data["manual"])

    def test_result_broadcast_follows_snapshot(self) -> None:
        orchestrator = self.build()
        seen: list[tuple[str, str]] = []

        def _check(message: dict[str, Any]) -> None:
            if message["type"] == REGISTRATION_RESULT:
                url = message["data"]["url"]
                stored = next(task for task in orchestrator.snapshot()["tasks"] if task["url"] == url)
                seen.append((message["data"]["status"], stored["status"]))

        self.bus.subscribe(_check)
        self.call(orchestrator.start_registration(events("a", "b")))
        self.settle()

        self.assertEqual(len(seen), 2)
        for broadcast_status, stored_status in seen:
            self.assertEqual(broadcast_status, stored_status)
        persisted = self.store.load_snapshot()
        self.assertEqual(persisted["stats"]["success"], 2)

    def test_jitter_is_added_to_the_delay(self) -> None:
        orchestrator = self.build(config=make_config(delay_seconds=2, delay_jitter_seconds=1))
        orchestrator._rng = random.Random(7)
        self.call(orchestrator.start_registration(events("a"), {"concurrency_limit": 1}))

        delay = orchestrator._next_delay()

        self.assertGreaterEqual(delay, 2.0)
        self.assertLessEqual(delay, 3.0)

    def test_start_rejected_while_running(self) -> None:
        orchestrator = self.build(runner=ManualRunner())
        self.call(orchestrator.start_registration(events("a")))

        result = self.call(orchestrator.start_registration(events("b")))

        self.assertFalse(result["ok"])
        self.assertEqual(result["code"], "conflict")

    def test_start_without_selection_is_rejected(self) -> None:
        orchestrator = self.build()
        selection = [dict(item, selected=False) for item in events("a", "b")]

        result = self.call(orchestrator.start_registration(selection))

        self.assertFalse(result["ok"])
        self.assertEqual(orchestrator.state.mode, MODE_IDLE)

    def test_settings_are_clamped(self) -> None:
        orchestrator = self.build(runner=ManualRunner())

        self.call(orchestrator.start_registration(events("a"), {"concurrency_limit": 50, "inter_task_delay": -3}))

        self.assertEqual(orchestrator.state.concurrency_limit, 10)
        self.assertEqual(orchestrator.state.inter_task_delay, 0.0)

    def test_malformed_settings_are_rejected(self) -> None:
        orchestrator = self.build()

        bad_limit = self.call(orchestrator.start_registration(events("a"), {"concurrency_limit": "abc"}))
        bad_delay = self.call(orchestrator.start_registration(events("a"), {"inter_task_delay": None}))

        for result in (bad_limit, bad_delay):
            self.assertFalse(result["ok"])
            self.assertEqual(result["code"], "invalid")
            self.assertIn("invalid settings", result["error"])
        self.assertEqual(orchestrator.state.mode, MODE_IDLE)
        self.assertEqual(self.scripts.created, {})


class OutcomeTests(OrchestratorTestCase):
    def test_inspector_results_map_to_statuses(self) -> None:
        scripts = AgentScripts(
            {
                "done": [STATE_ALREADY_REGISTERED],
                "full": [STATE_EVENT_FULL],
                "fresh": [STATE_READY_TO_REGISTER, STATE_ALREADY_REGISTERED],
                "quiet": [STATE_READY_TO_REGISTER, STATE_UNKNOWN],
                "stuck": [STATE_READY_TO_REGISTER],
                "odd": [STATE_UNKNOWN],
                "elsewhere": [STATE_NOT_EVENT_PAGE],
            },
            rejected=("stuck",),
            lost_on_open=("crash",),
        )
        orchestrator = self.build(config=make_config(concurrency_limit=10), scripts=scripts)

        self.call(
            orchestrator.start_registration(
                events("done", "full", "fresh", "quiet", "stuck", "odd", "elsewhere", "crash")
            )
        )
        self.settle()

        self.assertEqual(self.task("done")["status"], "success")
        self.assertEqual(self.task("done")["message"], "already registered")
        self.assertEqual(self.task("full")["status"], "failed")
        self.assertEqual(self.task("full")["message"], "event full / waitlist")
        self.assertEqual(self.task("fresh")["status"], "success")
        self.assertEqual(self.task("fresh")["message"], "registered")
        self.assertEqual(self.task("quiet")["status"], "manual")
        self.assertIn("confirmation not detected", self.task("quiet")["message"])
        self.assertEqual(self.task("stuck")["status"], "failed")
        self.assertTrue(self.task("stuck")["message"].startswith("registration control not activated"))
        self.assertEqual(self.task("odd")["status"], "manual")
        self.assertEqual(self.task("elsewhere")["status"], "manual")
        self.assertEqual(self.task("crash")["status"], "failed")
        self.assertEqual(self.task("crash")["message"], "agent lost")
        self.assertIsNone(self.task("crash")["agent_handle"])
        self.assertEqual(scripts.created["stuck"].activations, 1)

    def test_event_full_keeps_agent_open(self) -> None:
        scripts = AgentScripts({"full": [STATE_EVENT_FULL]})
        orchestrator = self.build(scripts=scripts)

        self.call(orchestrator.start_registration(events("full")))
        self.settle()

        task = self.task("full")
        self.assertEqual(task["status"], "failed")
        self.assertIsNotNone(task["agent_handle"])
        self.assertFalse(scripts.created["full"].closed)
        self.assertIn(task["agent_handle"], orchestrator.agents.handles())

    def test_success_closes_agent(self) -> None:
        orchestrator = self.build()

        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.assertTrue(self.scripts.created["a"].closed)
        self.assertIsNone(self.task("a")["agent_handle"])
        self.assertEqual(orchestrator.agents.handles(), [])

    def test_ledger_record_carries_identity_and_calendar(self) -> None:
        orchestrator = self.build()

        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        record = self.ledger.records[0]
        self.assertEqual(record.event_url, "https://lu.ma/a")
        self.assertEqual(record.person_email, "me@example.com")
        self.assertEqual(record.person_name, "Me")
        self.assertEqual(record.calendar, "SF")
        appends = self.store.recent_audit_events(action="ledger_append")
        self.assertTrue(appends[0]["details"]["added"])

    def test_duplicate_ledger_append_is_suppressed(self) -> None:
        ledger = FakeLedger()
        ledger.records.append(LedgerRecord(event_url="https://luma.com/a?ref=x", person_email="ME@example.com"))
        orchestrator = self.build(ledger=ledger)

        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.assertEqual(self.task("a")["status"], "success")
        self.assertEqual(len(ledger.records), 1)
        appends = self.store.recent_audit_events(action="ledger_append")
        self.assertEqual(appends[0]["details"]["reason"], "duplicate")

    def test_ledger_outage_never_blocks_the_run(self) -> None:
        orchestrator = self.build(ledger=FakeLedger(error="503 Service Unavailable"))

        self.call(orchestrator.start_registration(events("a", "b")))
        self.settle()

        self.assertEqual(orchestrator.snapshot()["mode"], MODE_COMPLETE)
        self.assertEqual(orchestrator.snapshot()["stats"]["success"], 2)

    def test_no_ledger_append_without_identity(self) -> None:
        config = make_config()
        config.identity.email = ""
        orchestrator = self.build(config=config)

        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.assertEqual(self.ledger.records, [])
        self.assertFalse(orchestrator.snapshot()["dedup_enabled"])


class PauseStopTests(OrchestratorTestCase):
    def test_pause_lets_active_tasks_finish_without_promotions(self) -> None:
        runner = ManualRunner()
        orchestrator = self.build(runner=runner)
        self.call(orchestrator.start_registration(events("a", "b", "c", "d")))

        self.assertTrue(self.call(orchestrator.pause())["ok"])
        self.settle()

        self.assertEqual(orchestrator.state.mode, MODE_PAUSED)
        self.assertEqual(sorted(self.scripts.created), ["a", "b"])
        self.assertEqual(self.task("a")["status"], "success")
        self.assertEqual(self.task("c")["status"], "pending")
        self.assertEqual(self.of_type(REGISTRATION_COMPLETE), [])

        resumed = self.call(orchestrator.resume())

        self.assertEqual(resumed["promoted"], 2)
        self.settle()
        self.assertEqual(orchestrator.snapshot()["mode"], MODE_COMPLETE)
        self.assertEqual(len(self.of_type(REGISTRATION_COMPLETE)), 1)

    def test_resume_requires_paused_run(self) -> None:
        orchestrator = self.build()

        result = self.call(orchestrator.resume())

        self.assertFalse(result["ok"])
        self.assertEqual(result["code"], "conflict")

    def test_stop_waits_for_active_tasks_then_completes_once(self) -> None:
        runner = ManualRunner()
        orchestrator = self.build(runner=runner)
        self.call(orchestrator.start_registration(events("a", "b", "c")))

        stopped = self.call(orchestrator.stop())

        self.assertEqual(stopped["active"], 2)
        self.assertEqual(self.of_type(REGISTRATION_COMPLETE), [])
        self.settle()
        snapshot = orchestrator.snapshot()
        self.assertEqual(snapshot["mode"], MODE_STOPPED)
        self.assertEqual(snapshot["stats"]["success"], 2)
        self.assertEqual(snapshot["stats"]["pending"], 1)
        self.assertNotIn("c", self.scripts.created)
        self.assertEqual(len(self.of_type(REGISTRATION_COMPLETE)), 1)

    def test_stop_with_nothing_active_completes_immediately(self) -> None:
        runner = ManualRunner()
        orchestrator = self.build(runner=runner)
        self.call(orchestrator.start_registration(events("a", "b", "c"), {"concurrency_limit": 1}))
        self.call(orchestrator.pause())
        self.settle()

        self.call(orchestrator.stop())

        self.assertEqual(len(self.of_type(REGISTRATION_COMPLETE)), 1)
        self.assertEqual(orchestrator.snapshot()["stats"]["pending"], 2)

    def test_stopped_run_with_active_tasks_blocks_start_and_scan(self) -> None:
        runner = ManualRunner()
        orchestrator = self.build(runner=runner)
        self.call(orchestrator.start_registration(events("a", "b")))
        self.call(orchestrator.stop())

        restarted = self.call(orchestrator.start_registration(events("c")))
        scanned = self.call(orchestrator.scan(events("c")))

        self.assertEqual(restarted["code"], "conflict")
        self.assertEqual(scanned["code"], "conflict")
        self.assertEqual(orchestrator.state.mode, MODE_STOPPED)
        self.assertFalse(self.scripts.created["a"].closed)
        self.assertFalse(self.scripts.created["b"].closed)

        self.settle()

        self.assertEqual(orchestrator.snapshot()["stats"]["success"], 2)
        self.assertEqual(
            sorted(normalize_event_url(message["data"]["url"]) for message in self.of_type(REGISTRATION_RESULT)),
            ["a", "b"],
        )
        self.assertEqual(len(self.of_type(REGISTRATION_COMPLETE)), 1)

        self.assertTrue(self.call(orchestrator.start_registration(events("c")))["ok"])
        self.settle()
        self.assertEqual(self.task("c")["status"], "success")

    def test_reset_closes_every_agent(self) -> None:
        scripts = AgentScripts({"a": [STATE_EVENT_FULL]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.call(orchestrator.reset())
        self.settle()

        self.assertTrue(scripts.created["a"].closed)
        self.assertEqual(orchestrator.agents.handles(), [])
        self.assertEqual(orchestrator.snapshot()["mode"], MODE_IDLE)
        self.assertEqual(orchestrator.snapshot()["tasks"], [])
        self.assertEqual(self.store.recent_results(), [])


class RecheckOverrideTests(OrchestratorTestCase):
    def test_recheck_of_success_is_a_noop(self) -> None:
        orchestrator = self.build()
        self.call(orchestrator.start_registration(events("a")))
        self.settle()
        before = orchestrator.snapshot()
        updates_before = len(self.of_type(REGISTRATION_RESULT_UPDATE))

        result = self.call(orchestrator.recheck_single("https://lu.ma/a"))
        self.settle()

        self.assertTrue(result["ok"])
        self.assertFalse(result["rechecking"])
        self.assertEqual(orchestrator.snapshot()["tasks"], before["tasks"])
        self.assertEqual(len(self.of_type(REGISTRATION_RESULT_UPDATE)), updates_before)

    def test_recheck_promotes_manual_task_once_confirmed(self) -> None:
        scripts = AgentScripts({"a": [STATE_READY_TO_REGISTER, STATE_UNKNOWN, STATE_ALREADY_REGISTERED]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()
        self.assertEqual(self.task("a")["status"], "manual")
        self.assertEqual(self.ledger.records, [])
        handle = self.task("a")["agent_handle"]

        result = self.call(orchestrator.recheck_single("https://lu.ma/a", handle))
        self.settle()

        self.assertTrue(result["rechecking"])
        task = self.task("a")
        self.assertEqual(task["status"], "success")
        self.assertTrue(task["reverified"])
        self.assertEqual(task["message"], "re-verified: registration confirmed")
        self.assertTrue(scripts.created["a"].closed)
        self.assertEqual(len(self.ledger.records), 1)
        update = self.of_type(REGISTRATION_RESULT_UPDATE)[-1]["data"]
        self.assertTrue(update["reverified"])

    def test_recheck_without_change_leaves_task_alone(self) -> None:
        scripts = AgentScripts({"a": [STATE_EVENT_FULL]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.call(orchestrator.recheck_single("https://lu.ma/a"))
        self.settle()

        self.assertEqual(self.task("a")["status"], "failed")
        self.assertEqual(self.task("a")["message"], "event full / waitlist")
        self.assertFalse(scripts.created["a"].closed)

    def test_recheck_of_dead_agent_keeps_manual_status(self) -> None:
        scripts = AgentScripts({"a": [STATE_UNKNOWN]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()
        scripts.created["a"].closed = True

        self.call(orchestrator.recheck_single("https://lu.ma/a"))
        self.settle()

        self.assertEqual(self.task("a")["status"], "manual")
        self.assertTrue(self.task("a")["message"].startswith("agent lost during re-check"))
        self.assertEqual(len(self.of_type(REGISTRATION_RESULT_UPDATE)), 1)
        self.assertIsNone(self.task("a")["agent_handle"])

    def test_recheck_failed_tabs_covers_failed_and_manual(self) -> None:
        scripts = AgentScripts(
            {
                "a": [STATE_EVENT_FULL, STATE_ALREADY_REGISTERED],
                "b": [STATE_UNKNOWN, STATE_ALREADY_REGISTERED],
                "c": [STATE_ALREADY_REGISTERED],
            }
        )
        orchestrator = self.build(config=make_config(concurrency_limit=3), scripts=scripts)
        self.call(orchestrator.start_registration(events("a", "b", "c")))
        self.settle()

        result = self.call(orchestrator.recheck_failed())
        self.settle()

        self.assertEqual(result["rechecking"], 2)
        stats = orchestrator.snapshot()["stats"]
        self.assertEqual(stats["success"], 3)
        self.assertEqual(len(self.of_type(REGISTRATION_RESULT_UPDATE)), 2)

    def test_mark_as_registered_moves_counters(self) -> None:
        scripts = AgentScripts({"a": [STATE_UNKNOWN]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a", "b")))
        self.settle()
        before = orchestrator.snapshot()["stats"]

        result = self.call(orchestrator.mark_as_registered("https://lu.ma/a", self.task("a")["agent_handle"]))
        self.settle()

        after = orchestrator.snapshot()["stats"]
        self.assertTrue(result["changed"])
        self.assertEqual(result["title"], "Event A")
        self.assertEqual(after["success"], before["success"] + 1)
        self.assertEqual(after["manual"], before["manual"] - 1)
        self.assertEqual(after["total"], before["total"])
        task = self.task("a")
        self.assertTrue(task["overridden"])
        self.assertIn("marked as registered by operator (was manual", task["message"])
        self.assertTrue(scripts.created["a"].closed)
        self.assertEqual(len(self.ledger.records), 2)

    def test_mark_as_registered_rejects_unknown_and_pending(self) -> None:
        orchestrator = self.build(runner=ManualRunner())
        self.call(orchestrator.start_registration(events("a", "b", "c")))

        missing = self.call(orchestrator.mark_as_registered("https://lu.ma/zzz"))
        pending = self.call(orchestrator.mark_as_registered("https://lu.ma/c"))

        self.assertEqual(missing["code"], "not_found")
        self.assertEqual(pending["code"], "conflict")

    def test_stale_agent_handle_is_rejected(self) -> None:
        scripts = AgentScripts({"a": [STATE_UNKNOWN]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        result = self.call(orchestrator.recheck_single("https://lu.ma/a", "agent-999"))

        self.assertFalse(result["ok"])
        self.assertEqual(result["code"], "conflict")

    def test_focus_shows_kept_agent(self) -> None:
        scripts = AgentScripts({"a": [STATE_EVENT_FULL]})
        orchestrator = self.build(scripts=scripts)
        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        result = self.call(orchestrator.focus("https://lu.ma/a", self.task("a")["agent_handle"]))
        self.settle()

        self.assertTrue(result["ok"])
        self.assertEqual(scripts.created["a"].focused, 1)
        self.assertIn("Showing https://lu.ma/a", self.of_type(LOG)[-1]["data"]["message"])

    def test_focus_needs_a_live_agent(self) -> None:
        orchestrator = self.build()
        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        result = self.call(orchestrator.focus("https://lu.ma/a"))
        missing = self.call(orchestrator.focus("https://lu.ma/zzz"))

        self.assertEqual(result["code"], "conflict")
        self.assertEqual(missing["code"], "not_found")


class ScanTests(OrchestratorTestCase):
    def test_scan_classifies_against_ledger(self) -> None:
        status = ScanStatus.from_response(
            {
                "seenEvents": ["https://lu.ma/a", "https://luma.com/b"],
                "myRegistrations": ["https://lu.ma/a"],
                "teamRegistrations": {
                    "https://lu.ma/b": [{"email": "mate@example.com", "registeredAt": "2026-02-01T10:00:00Z"}]
                },
            }
        )
        ledger = FakeLedger(status=status)
        orchestrator = self.build(ledger=ledger)

        result = self.call(orchestrator.scan(events("a", "b", "c")))

        self.assertTrue(result["dedup_enabled"])
        by_slug = {normalize_event_url(item["url"]): item for item in result["events"]}
        self.assertTrue(by_slug["a"]["is_registered"])
        self.assertFalse(by_slug["a"]["selected"])
        self.assertFalse(by_slug["b"]["is_registered"])
        self.assertFalse(by_slug["b"]["is_new"])
        self.assertEqual(by_slug["b"]["team_registered"][0]["identity"], "mate@example.com")
        self.assertTrue(by_slug["c"]["is_new"])
        self.assertTrue(by_slug["c"]["selected"])
        self.assertEqual(result["registered_count"], 1)
        self.assertEqual(len(ledger.seen_batches[0]), 3)
        self.assertEqual(orchestrator.state.mode, MODE_IDLE)

    def test_scan_degrades_when_ledger_is_down(self) -> None:
        orchestrator = self.build(ledger=FakeLedger(error="timeout"))

        result = self.call(orchestrator.scan(events("a", "b")))

        self.assertFalse(result["dedup_enabled"])
        self.assertIn("ledger unavailable", result["reason"])
        self.assertTrue(all(item["selected"] for item in result["events"]))

        self.call(orchestrator.start_registration(result["events"]))
        self.settle()
        self.assertFalse(orchestrator.snapshot()["dedup_enabled"])
        self.assertEqual(orchestrator.snapshot()["stats"]["success"], 2)

    def test_start_skips_registered_events_by_default(self) -> None:
        orchestrator = self.build()
        selection = events("a", "b")
        selection[0]["is_registered"] = True

        result = self.call(orchestrator.start_registration(selection))
        self.settle()

        self.assertEqual(result["total"], 1)
        self.assertEqual(result["skipped_registered"], 1)

    def test_unexpected_scan_failure_releases_scanning_mode(self) -> None:
        ledger = FakeLedger()
        ledger.get_scan_status = mock.Mock(side_effect=ValueError("malformed reply"))
        orchestrator = self.build(ledger=ledger)

        result = self.call(orchestrator.scan(events("a", "b")))

        self.assertFalse(result["dedup_enabled"])
        self.assertIn("ledger unavailable", result["reason"])
        self.assertEqual(orchestrator.state.mode, MODE_IDLE)
        self.assertTrue(self.call(orchestrator.start_registration(result["events"]))["ok"])

    def test_seen_events_failure_keeps_dedup(self) -> None:
        ledger = FakeLedger(status=ScanStatus(seen_events={"a"}, my_registrations={"a"}))
        ledger.record_seen_events = mock.Mock(side_effect=ValueError("recorded: n/a"))
        orchestrator = self.build(ledger=ledger)

        result = self.call(orchestrator.scan(events("a", "b")))

        self.assertTrue(result["dedup_enabled"])
        self.assertTrue(any("seen events not recorded" in warning for warning in result["warnings"]))
        self.assertEqual(orchestrator.state.mode, MODE_IDLE)

    def test_unexpected_append_failure_is_audited(self) -> None:
        ledger = FakeLedger()
        ledger.add_registration = mock.Mock(side_effect=TypeError("bad record"))
        orchestrator = self.build(ledger=ledger)

        self.call(orchestrator.start_registration(events("a")))
        self.settle()

        self.assertEqual(orchestrator.snapshot()["stats"]["success"], 1)
        appends = self.store.recent_audit_events(action="ledger_append")
        self.assertEqual(len(appends), 1)
        self.assertFalse(appends[0]["details"]["added"])
        self.assertIn("bad record", appends[0]["details"]["error"])
        self.assertNotIn("a", self.scripts.created)


class RestoreTests(OrchestratorTestCase):
    def test_restore_marks_active_tasks_lost_and_pauses(self) -> None:
        saved = RunState(
            tasks=[
                EventTask(url="https://lu.ma/a", status="success"),
                EventTask(url="https://lu.ma/b", status="active", agent_handle="agent-2"),
                EventTask(url="https://lu.ma/c", status="pending"),
            ],
            concurrency_limit=2,
            inter_task_delay=0,
            confirm_wait=0,
            mode=MODE_RUNNING,
        )
        self.store.save_snapshot(saved.to_dict())
        orchestrator = self.build()

        self.assertTrue(orchestrator.restore())

        snapshot = orchestrator.snapshot()
        self.assertEqual(snapshot["mode"], MODE_PAUSED)
        self.assertEqual(self.task("b")["status"], "failed")
        self.assertEqual(self.task("b")["message"], "agent lost")
        self.assertIsNone(self.task("b")["agent_handle"])

        self.call(orchestrator.resume())
        self.settle()
        self.assertEqual(self.task("c")["status"], "success")
        self.assertEqual(orchestrator.snapshot()["mode"], MODE_COMPLETE)

    def test_restore_without_snapshot(self) -> None:
        orchestrator = self.build()

        self.assertFalse(orchestrator.restore())
        self.assertEqual(orchestrator.snapshot()["mode"], MODE_IDLE)


if __name__ == "__main__":
    unittest.main()
