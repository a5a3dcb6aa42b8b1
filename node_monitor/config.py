from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from node_monitor.book_keeping import DEFAULT_MAILBOX_CAPACITY
from node_monitor.poll_loop import DEFAULT_POLL_INTERVAL_SECONDS
from node_monitor.probe import DEFAULT_PROBE_TIMEOUT_SECONDS
from node_monitor.status import DEFAULT_WINDOW_SIZE, DebounceMode, DebouncePolicy


DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")

ENV_PREFIX = "NODE_MONITOR_"


@dataclass(frozen=True)
class MonitorConfig:
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    window_size: int = DEFAULT_WINDOW_SIZE
    debounce_mode: DebounceMode = DebounceMode.UNANIMOUS
    mailbox_capacity: int = DEFAULT_MAILBOX_CAPACITY
    telegram_poll_timeout_seconds: int = 30
    telegram_bot_username: str | None = None
    # Endpoints watched from startup; their notifications go to the log.
    endpoints: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if float(self.poll_interval_seconds) <= 0:
            raise ValueError(f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds!r}")
        if float(self.probe_timeout_seconds) <= 0:
            raise ValueError(f"probe_timeout_seconds must be > 0, got {self.probe_timeout_seconds!r}")
        if int(self.window_size) < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size!r}")
        if int(self.mailbox_capacity) < 1:
            raise ValueError(f"mailbox_capacity must be >= 1, got {self.mailbox_capacity!r}")
        mode = self.debounce_mode
        try:
            if not isinstance(mode, DebounceMode):
                mode = DebounceMode(str(mode).strip().lower())
        except ValueError as exc:
            raise ValueError(
                f"Invalid debounce_mode {self.debounce_mode!r}; expected 'unanimous' or 'majority'"
            ) from exc
        object.__setattr__(self, "debounce_mode", mode)

    @property
    def debounce_policy(self) -> DebouncePolicy:
        return DebouncePolicy(window_size=int(self.window_size), mode=self.debounce_mode)


def load_config_file(path: Path) -> dict[str, Any]:
    # A missing file raises FileNotFoundError: a mistyped --config must not run on defaults.
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")
    return data


def _env_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _coerce_float(value: Any, *, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _coerce_int(value: Any, *, name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _coerce_endpoints(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"endpoints must be a list of URLs, got {type(value).__name__}")
    out: list[str] = []
    for idx, item in enumerate(value):
        url = str(item or "").strip()
        if not url:
            raise ValueError(f"endpoints[{idx}] is empty")
        if url not in out:
            out.append(url)
    return out


def load_config(path: Path | None = None) -> MonitorConfig:
    """
    YAML file first, then NODE_MONITOR_* environment overrides.
    """
    raw = load_config_file(path or DEFAULT_CONFIG_PATH)

    telegram_cfg = raw.get("telegram") or {}
    if not isinstance(telegram_cfg, dict):
        telegram_cfg = {}

    values: dict[str, Any] = {
        "poll_interval_seconds": raw.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        "probe_timeout_seconds": raw.get("probe_timeout_seconds", DEFAULT_PROBE_TIMEOUT_SECONDS),
        "window_size": raw.get("window_size", DEFAULT_WINDOW_SIZE),
        "debounce_mode": raw.get("debounce_mode", DebounceMode.UNANIMOUS.value),
        "mailbox_capacity": raw.get("mailbox_capacity", DEFAULT_MAILBOX_CAPACITY),
        "telegram_poll_timeout_seconds": telegram_cfg.get("poll_timeout_seconds", 30),
        "telegram_bot_username": telegram_cfg.get("bot_username"),
    }
    for key in ("poll_interval_seconds", "probe_timeout_seconds", "window_size", "debounce_mode", "mailbox_capacity"):
        override = _env_str(ENV_PREFIX + key.upper())
        if override is not None:
            values[key] = override

    username = str(values["telegram_bot_username"] or "").strip().lstrip("@")
    return MonitorConfig(
        poll_interval_seconds=_coerce_float(values["poll_interval_seconds"], name="poll_interval_seconds"),
        probe_timeout_seconds=_coerce_float(values["probe_timeout_seconds"], name="probe_timeout_seconds"),
        window_size=_coerce_int(values["window_size"], name="window_size"),
        debounce_mode=str(values["debounce_mode"]),
        mailbox_capacity=_coerce_int(values["mailbox_capacity"], name="mailbox_capacity"),
        telegram_poll_timeout_seconds=_coerce_int(
            values["telegram_poll_timeout_seconds"], name="telegram.poll_timeout_seconds"
        ),
        telegram_bot_username=username or None,
        endpoints=_coerce_endpoints(raw.get("endpoints")),
    )
