from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from autoreg.models import serialize_datetime, utc_now


def _utc_now() -> str:
    return serialize_datetime(utc_now()) or ""


CURRENT_SNAPSHOT = "current"


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS run_snapshots (
            name TEXT PRIMARY KEY,
            saved_at TEXT NOT NULL,
            mode TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS registration_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recorded_at TEXT NOT NULL,
            kind TEXT NOT NULL,
            url TEXT NOT NULL,
            title TEXT,
            status TEXT NOT NULL,
            message TEXT,
            agent_handle TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            url TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def save_snapshot(self, payload: dict[str, Any], name: str = CURRENT_SNAPSHOT) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO run_snapshots(name, saved_at, mode, payload_json)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        saved_at = excluded.saved_at,
                        mode = excluded.mode,
                        payload_json = excluded.payload_json
                    """,
                    (name, _utc_now(), str(payload.get("mode", "")), json.dumps(payload, ensure_ascii=False)),
                )
                conn.commit()

    def load_snapshot(self, name: str = CURRENT_SNAPSHOT) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM run_snapshots WHERE name = ?",
                    (name,),
                ).fetchone()
        if row is None:
            return None
        return json.loads(row["payload_json"] or "{}")

    def record_result(self, *, kind: str, result: dict[str, Any]) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO registration_results(recorded_at, kind, url, title, status, message, agent_handle)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(result.get("timestamp") or _utc_now()),
                        kind,
                        str(result.get("url", "")),
                        str(result.get("title", "") or ""),
                        str(result.get("status", "")),
                        str(result.get("message", "") or ""),
                        result.get("agent_handle"),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_results(self, limit: int = 500) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, recorded_at, kind, url, title, status, message, agent_handle
                    FROM registration_results
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def clear_results(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM registration_results")
                conn.commit()

    def record_audit_event(self, *, url: str, action: str, details: dict[str, Any]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, url, action, details_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (_utc_now(), url, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, url, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, url, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM app_meta WHERE key = ?",
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
