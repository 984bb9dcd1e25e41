from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from autoreg.models import AppConfig, default_app_config


MASK = "***"

# Values read from the environment win over the file and are never written back.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AUTOREG_LEDGER_URL": ("ledger", "url"),
    "AUTOREG_LEDGER_CALENDAR": ("ledger", "calendar"),
    "AUTOREG_IDENTITY_EMAIL": ("identity", "email"),
    "AUTOREG_IDENTITY_NAME": ("identity", "name"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(name, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _strip_masked_url(payload: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    """Drop a ``***`` or blank ledger url from an update when one is already stored."""
    ledger = payload.get("ledger")
    if not isinstance(ledger, dict) or "url" not in ledger:
        return payload
    if str(ledger.get("url") or "").strip() not in {"", MASK}:
        return payload
    if not stored.get("ledger", {}).get("url"):
        return payload
    cleaned = copy.deepcopy(payload)
    cleaned["ledger"].pop("url")
    return cleaned


class ConfigManager:
    """YAML-backed settings for identity, ledger, run defaults and the browser."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping, got {type(data).__name__}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read()
        return AppConfig.from_dict(_deep_merge(data, _env_overrides()))

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced, only rewritten.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            stored = AppConfig.from_dict(self._read()).to_dict()
            merged = _deep_merge(stored, _strip_masked_url(payload, stored))
            config = AppConfig.from_dict(merged)
            self.save(config)
        return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["ledger"]["url"]:
            config["ledger"]["url"] = MASK
        return config
