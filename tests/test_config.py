from __future__ import annotations

from pathlib import Path

import pytest

from node_monitor.config import DEFAULT_CONFIG_PATH, MonitorConfig, load_config
from node_monitor.status import DebounceMode


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "NODE_MONITOR_POLL_INTERVAL_SECONDS",
        "NODE_MONITOR_PROBE_TIMEOUT_SECONDS",
        "NODE_MONITOR_WINDOW_SIZE",
        "NODE_MONITOR_DEBOUNCE_MODE",
        "NODE_MONITOR_MAILBOX_CAPACITY",
    ):
        monkeypatch.delenv(key, raising=False)


def test_bundled_config_matches_defaults() -> None:
    config = load_config(DEFAULT_CONFIG_PATH)
    assert config.poll_interval_seconds == 10.0
    assert config.window_size == 5
    assert config.debounce_mode is DebounceMode.UNANIMOUS
    assert config.mailbox_capacity == 64
    assert config.endpoints == []
    assert config.debounce_policy.window_size == 5


def test_empty_file_uses_defaults(tmp_path: Path) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config(p) == MonitorConfig()


def test_missing_explicit_config_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "conifg.yaml")


def test_yaml_values_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "config.yaml"
    p.write_text(
        "\n".join(
            [
                "poll_interval_seconds: 30",
                "window_size: 3",
                "debounce_mode: majority",
                "telegram:",
                "  bot_username: '@caspiebot'",
                "endpoints:",
                "  - http://a/status",
                "  - http://a/status",
                "  - http://b/status",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("NODE_MONITOR_WINDOW_SIZE", "7")
    monkeypatch.setenv("NODE_MONITOR_POLL_INTERVAL_SECONDS", "2.5")

    config = load_config(p)
    assert config.poll_interval_seconds == 2.5
    assert config.window_size == 7
    assert config.debounce_mode is DebounceMode.MAJORITY
    assert config.telegram_bot_username == "caspiebot"
    assert config.endpoints == ["http://a/status", "http://b/status"]


@pytest.mark.parametrize(
    "body",
    [
        "window_size: 0",
        "poll_interval_seconds: -1",
        "debounce_mode: sometimes",
        "mailbox_capacity: zero",
        "endpoints: http://a/status",
        "- just\n- a list",
    ],
)
def test_invalid_config_raises(tmp_path: Path, body: str) -> None:
    p = tmp_path / "config.yaml"
    p.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(p)


def test_invalid_env_override_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("window_size: 3", encoding="utf-8")
    monkeypatch.setenv("NODE_MONITOR_DEBOUNCE_MODE", "eventually")
    with pytest.raises(ValueError):
        load_config(p)
