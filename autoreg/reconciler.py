from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from autoreg.models import EventTask, ScanStatus, normalize_event_url


@dataclass
class ScanOutcome:
    tasks: list[EventTask]
    dedup_enabled: bool
    reason: str
    new_count: int = 0
    registered_count: int = 0
    team_count: int = 0
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        if not self.dedup_enabled:
            return f"Found {len(self.tasks)} events (dedup disabled: {self.reason})"
        available = len(self.tasks) - self.registered_count
        parts = [f"Found {self.new_count} NEW events"]
        if available > self.new_count:
            parts.append(f"{available - self.new_count} available")
        if self.registered_count:
            parts.append(f"{self.registered_count} already registered")
        return ", ".join(parts)


def dedupe_events(events: Iterable[dict[str, Any] | EventTask]) -> list[EventTask]:
    tasks: list[EventTask] = []
    seen: set[str] = set()
    for item in events:
        task = item if isinstance(item, EventTask) else EventTask.from_dict(item)
        key = normalize_event_url(task.url)
        if not key or key in seen:
            continue
        seen.add(key)
        tasks.append(task)
    return tasks


def classify_tasks(tasks: list[EventTask], status: ScanStatus | None, *, reason: str = "") -> ScanOutcome:
    """Mark each task registered / new / teammate-registered from a ledger snapshot.

    Without a snapshot every task is treated as having no prior data and is
    selected.
    """
    if status is None:
        for task in tasks:
            task.is_registered = False
            task.is_new = False
            task.team_registered = []
            task.seen_by_team = False
            task.selected = True
        return ScanOutcome(tasks=tasks, dedup_enabled=False, reason=reason or "ledger unavailable")

    outcome = ScanOutcome(tasks=tasks, dedup_enabled=True, reason="ok")
    for task in tasks:
        key = task.key
        task.is_registered = key in status.my_registrations
        task.is_new = key not in status.seen_events
        task.seen_by_team = key in status.seen_events and not task.is_registered
        if task.seen_by_team:
            task.team_registered = [dict(entry) for entry in status.team_registrations.get(key, [])]
        else:
            task.team_registered = []
        task.selected = not task.is_registered
        if task.is_registered:
            outcome.registered_count += 1
        if task.is_new:
            outcome.new_count += 1
        if task.seen_by_team:
            outcome.team_count += 1
    return outcome
