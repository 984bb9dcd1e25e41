from __future__ import annotations

import copy
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit


TASK_PENDING = "pending"
TASK_ACTIVE = "active"
TASK_SUCCESS = "success"
TASK_FAILED = "failed"
TASK_MANUAL = "manual"
TASK_STATUSES = (TASK_PENDING, TASK_ACTIVE, TASK_SUCCESS, TASK_FAILED, TASK_MANUAL)
TERMINAL_STATUSES = (TASK_SUCCESS, TASK_FAILED, TASK_MANUAL)
RECHECKABLE_STATUSES = (TASK_FAILED, TASK_MANUAL)

MODE_IDLE = "idle"
MODE_SCANNING = "scanning"
MODE_RUNNING = "running"
MODE_PAUSED = "paused"
MODE_STOPPED = "stopped"
MODE_COMPLETE = "complete"
RUN_MODES = (MODE_IDLE, MODE_SCANNING, MODE_RUNNING, MODE_PAUSED, MODE_STOPPED, MODE_COMPLETE)

STATE_NOT_EVENT_PAGE = "not_event_page"
STATE_ALREADY_REGISTERED = "already_registered"
STATE_EVENT_FULL = "event_full"
STATE_READY_TO_REGISTER = "ready_to_register"
STATE_UNKNOWN = "unknown"
PAGE_STATES = (
    STATE_NOT_EVENT_PAGE,
    STATE_ALREADY_REGISTERED,
    STATE_EVENT_FULL,
    STATE_READY_TO_REGISTER,
    STATE_UNKNOWN,
)

MAX_CONCURRENCY = 10

_SLUG_PATTERN = re.compile(r"(?:lu\.ma|luma\.com)/([a-zA-Z0-9_-]+)(?:[?#/]|$)", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_event_url(url: str | None) -> str:
    """Reduce an event URL to the lowercase slug the ledger keys on.

    ``https://lu.ma/abc?ref=x``, ``https://luma.com/abc`` and ``abc`` all map
    to ``abc``. Other hosts fall back to the last path segment.
    """
    text = str(url or "").strip()
    if not text:
        return ""
    if "/" not in text and "." not in text:
        return text.lower()
    match = _SLUG_PATTERN.search(text)
    if match:
        return match.group(1).lower()
    parts = urlsplit(text if "://" in text else f"https://{text}")
    segments = [segment for segment in parts.path.split("/") if segment]
    if segments:
        return segments[-1].lower()
    return text.lower()


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class IdentityConfig:
    email: str = ""
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IdentityConfig":
        data = data or {}
        return cls(
            email=str(data.get("email", "")).strip(),
            name=str(data.get("name", "")).strip(),
        )


@dataclass
class LedgerConfig:
    enabled: bool = True
    url: str = ""
    calendar: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LedgerConfig":
        data = data or {}
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            url=str(data.get("url", "")).strip(),
            calendar=str(data.get("calendar", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def is_configured(self) -> bool:
        return self.enabled and bool(self.url)


@dataclass
class RunConfig:
    concurrency_limit: int = 3
    delay_seconds: float = 2.0
    delay_jitter_seconds: float = 0.0
    confirm_wait_seconds: float = 3.0
    skip_registered: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RunConfig":
        data = data or {}
        return cls(
            concurrency_limit=min(MAX_CONCURRENCY, max(1, int(data.get("concurrency_limit", 3)))),
            delay_seconds=max(0.0, float(data.get("delay_seconds", 2.0))),
            delay_jitter_seconds=max(0.0, float(data.get("delay_jitter_seconds", 0.0))),
            confirm_wait_seconds=max(0.0, float(data.get("confirm_wait_seconds", 3.0))),
            skip_registered=_as_bool(data.get("skip_registered"), True),
        )


@dataclass
class BrowserConfig:
    headless: bool = False
    page_load_timeout_seconds: int = 30
    settle_seconds: float = 2.0
    user_data_dir: str = ""
    window_size: str = "1400,1800"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BrowserConfig":
        data = data or {}
        return cls(
            headless=_as_bool(data.get("headless"), False),
            page_load_timeout_seconds=max(5, int(data.get("page_load_timeout_seconds", 30))),
            settle_seconds=max(0.0, float(data.get("settle_seconds", 2.0))),
            user_data_dir=str(data.get("user_data_dir", "")).strip(),
            window_size=str(data.get("window_size", "1400,1800")).strip() or "1400,1800",
        )


@dataclass
class AppConfig:
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    run: RunConfig = field(default_factory=RunConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            identity=IdentityConfig.from_dict(data.get("identity")),
            ledger=LedgerConfig.from_dict(data.get("ledger")),
            run=RunConfig.from_dict(data.get("run")),
            browser=BrowserConfig.from_dict(data.get("browser")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class RunSettings:
    """Per-run knobs carried by START_REGISTRATION; defaults come from ``RunConfig``."""

    concurrency_limit: int = 3
    inter_task_delay: float = 2.0
    delay_jitter: float = 0.0
    confirm_wait: float = 3.0
    skip_registered: bool = True

    @classmethod
    def from_config(cls, config: RunConfig) -> "RunSettings":
        return cls(
            concurrency_limit=config.concurrency_limit,
            inter_task_delay=config.delay_seconds,
            delay_jitter=config.delay_jitter_seconds,
            confirm_wait=config.confirm_wait_seconds,
            skip_registered=config.skip_registered,
        )

    def merged(self, overrides: dict[str, Any] | None) -> "RunSettings":
        overrides = overrides or {}
        limit = overrides.get("concurrency_limit", self.concurrency_limit)
        delay = overrides.get("inter_task_delay", self.inter_task_delay)
        jitter = overrides.get("delay_jitter", self.delay_jitter)
        confirm = overrides.get("confirm_wait", self.confirm_wait)
        return RunSettings(
            concurrency_limit=min(MAX_CONCURRENCY, max(1, int(limit))),
            inter_task_delay=max(0.0, float(delay)),
            delay_jitter=max(0.0, float(jitter)),
            confirm_wait=max(0.0, float(confirm)),
            skip_registered=_as_bool(overrides.get("skip_registered"), self.skip_registered),
        )


@dataclass
class EventTask:
    url: str
    title: str = ""
    date: str = ""
    selected: bool = True
    is_registered: bool = False
    is_new: bool = False
    team_registered: list[dict[str, Any]] = field(default_factory=list)
    seen_by_team: bool = False
    status: str = TASK_PENDING
    agent_handle: str | None = None
    message: str = ""
    completed_at: datetime | None = None
    reverified: bool = False
    overridden: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventTask":
        status = str(data.get("status", TASK_PENDING) or TASK_PENDING).strip().lower()
        if status not in TASK_STATUSES:
            status = TASK_PENDING
        team = data.get("team_registered") or []
        return cls(
            url=str(data.get("url", "")).strip(),
            title=str(data.get("title", "") or "").strip(),
            date=str(data.get("date", "") or "").strip(),
            selected=_as_bool(data.get("selected"), True),
            is_registered=_as_bool(data.get("is_registered"), False),
            is_new=_as_bool(data.get("is_new"), False),
            team_registered=[dict(item) for item in team if isinstance(item, dict)],
            seen_by_team=_as_bool(data.get("seen_by_team"), False),
            status=status,
            agent_handle=(str(data["agent_handle"]) if data.get("agent_handle") else None),
            message=str(data.get("message", "") or ""),
            completed_at=parse_iso_datetime(data.get("completed_at")),
            reverified=_as_bool(data.get("reverified"), False),
            overridden=_as_bool(data.get("overridden"), False),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["completed_at"] = serialize_datetime(self.completed_at)
        return payload

    @property
    def key(self) -> str:
        return normalize_event_url(self.url)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def result_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "status": self.status,
            "message": self.message,
            "timestamp": serialize_datetime(self.completed_at or utc_now()),
            "agent_handle": self.agent_handle,
            "reverified": self.reverified,
            "overridden": self.overridden,
        }


@dataclass
class RunStats:
    total: int = 0
    success: int = 0
    failed: int = 0
    manual: int = 0
    pending: int = 0
    processed: int = 0

    @classmethod
    def from_tasks(cls, tasks: list[EventTask]) -> "RunStats":
        stats = cls(total=len(tasks))
        for task in tasks:
            if task.status == TASK_SUCCESS:
                stats.success += 1
            elif task.status == TASK_FAILED:
                stats.failed += 1
            elif task.status == TASK_MANUAL:
                stats.manual += 1
            else:
                stats.pending += 1
        stats.processed = stats.success + stats.failed + stats.manual
        return stats

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class RunState:
    tasks: list[EventTask] = field(default_factory=list)
    concurrency_limit: int = 3
    inter_task_delay: float = 2.0
    delay_jitter: float = 0.0
    confirm_wait: float = 3.0
    mode: str = MODE_IDLE
    dedup_enabled: bool = False
    calendar: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def stats(self) -> RunStats:
        return RunStats.from_tasks(self.tasks)

    def find(self, url: str) -> EventTask | None:
        key = normalize_event_url(url)
        for task in self.tasks:
            if task.url == url or task.key == key:
                return task
        return None

    def by_status(self, status: str) -> list[EventTask]:
        return [task for task in self.tasks if task.status == status]

    @property
    def active_count(self) -> int:
        return sum(1 for task in self.tasks if task.status == TASK_ACTIVE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "concurrency_limit": self.concurrency_limit,
            "inter_task_delay": self.inter_task_delay,
            "delay_jitter": self.delay_jitter,
            "confirm_wait": self.confirm_wait,
            "mode": self.mode,
            "dedup_enabled": self.dedup_enabled,
            "calendar": self.calendar,
            "started_at": serialize_datetime(self.started_at),
            "finished_at": serialize_datetime(self.finished_at),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RunState":
        data = data or {}
        mode = str(data.get("mode", MODE_IDLE) or MODE_IDLE)
        return cls(
            tasks=[EventTask.from_dict(item) for item in data.get("tasks", []) if isinstance(item, dict)],
            concurrency_limit=min(MAX_CONCURRENCY, max(1, int(data.get("concurrency_limit", 3)))),
            inter_task_delay=max(0.0, float(data.get("inter_task_delay", 2.0))),
            delay_jitter=max(0.0, float(data.get("delay_jitter", 0.0))),
            confirm_wait=max(0.0, float(data.get("confirm_wait", 3.0))),
            mode=mode if mode in RUN_MODES else MODE_IDLE,
            dedup_enabled=_as_bool(data.get("dedup_enabled"), False),
            calendar=str(data.get("calendar", "") or ""),
            started_at=parse_iso_datetime(data.get("started_at")),
            finished_at=parse_iso_datetime(data.get("finished_at")),
        )

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.to_dict())


@dataclass
class LedgerRecord:
    event_url: str
    title: str = ""
    event_date: str = ""
    person_email: str = ""
    person_name: str = ""
    calendar: str = ""
    registered_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerRecord":
        return cls(
            event_url=str(data.get("event_url", "") or "").strip(),
            title=str(data.get("title", "") or ""),
            event_date=str(data.get("event_date", "") or ""),
            person_email=str(data.get("person_email", "") or "").strip(),
            person_name=str(data.get("person_name", "") or ""),
            calendar=str(data.get("calendar", "") or ""),
            registered_at=str(data.get("registered_at", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return normalize_event_url(self.event_url), self.person_email.casefold()


@dataclass
class ScanStatus:
    seen_events: set[str] = field(default_factory=set)
    my_registrations: set[str] = field(default_factory=set)
    team_registrations: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    first_seen: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> "ScanStatus":
        team_raw = payload.get("teamRegistrations") or {}
        first_raw = payload.get("firstSeenDates") or {}
        team: dict[str, list[dict[str, Any]]] = {}
        if isinstance(team_raw, dict):
            for url, entries in team_raw.items():
                key = normalize_event_url(url)
                if not key or not isinstance(entries, list):
                    continue
                team[key] = [
                    {
                        "identity": str(entry.get("email", "") or ""),
                        "timestamp": str(entry.get("registeredAt", "") or ""),
                    }
                    for entry in entries
                    if isinstance(entry, dict)
                ]
        first_seen: dict[str, dict[str, Any]] = {}
        if isinstance(first_raw, dict):
            for url, info in first_raw.items():
                key = normalize_event_url(url)
                if key and isinstance(info, dict):
                    first_seen[key] = {"date": info.get("date"), "by": info.get("by")}
        return cls(
            seen_events={normalize_event_url(url) for url in payload.get("seenEvents") or [] if url},
            my_registrations={normalize_event_url(url) for url in payload.get("myRegistrations") or [] if url},
            team_registrations=team,
            first_seen=first_seen,
        )


@dataclass
class PageState:
    type: str
    action_handle: str | None = None
    detail: str = ""

    def __post_init__(self) -> None:
        if self.type not in PAGE_STATES:
            self.type = STATE_UNKNOWN


@dataclass
class ActivationResult:
    success: bool
    reason: str | None = None
