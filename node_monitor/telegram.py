from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from node_monitor.registry import SubscriberId


LOGGER = logging.getLogger("node-monitor")


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    api_base_url: str = "https://api.telegram.org"
    poll_timeout_seconds: int = 30
    bot_username: str | None = None

    def method_url(self, method: str) -> str:
        return f"{self.api_base_url.rstrip('/')}/bot{self.bot_token}/{method}"


TELEGRAM_MAX_MESSAGE_LEN = 3900


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


def _redact(config: TelegramConfig, e: Exception) -> str:
    msg = f"{type(e).__name__}: {e}"
    if config.bot_token:
        msg = msg.replace(config.bot_token, "<redacted>")
    return msg


async def send_telegram_message(
    client: httpx.AsyncClient, config: TelegramConfig, chat_id: SubscriberId, text: str
) -> tuple[bool, dict]:
    payload = {"chat_id": chat_id, "text": text}
    try:
        resp = await client.post(config.method_url("sendMessage"), json=payload, timeout=15.0)
        data = resp.json()
        return bool(data.get("ok")), data
    except Exception as e:
        return False, {"ok": False, "error": _redact(config, e)}


async def send_telegram_message_chunked(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    chat_id: SubscriberId,
    text: str,
    *,
    max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
) -> tuple[bool, list[dict]]:
    parts = split_telegram_message(text, max_len=max_len)
    ok_all = True
    responses: list[dict] = []
    for part in parts:
        ok, resp = await send_telegram_message(client, config, chat_id, part)
        ok_all = ok_all and ok
        responses.append(resp)
    return ok_all, responses


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("error"):
        safe["error"] = data.get("error")
    if data.get("description"):
        safe["description"] = data.get("description")
    return json.dumps(safe, ensure_ascii=False)


async def get_telegram_updates(
    client: httpx.AsyncClient, config: TelegramConfig, *, offset: int | None = None
) -> tuple[bool, list[dict[str, Any]]]:
    """
    Long-poll getUpdates. Network trouble is reported as (False, []), never raised.
    """
    params: dict[str, Any] = {"timeout": int(config.poll_timeout_seconds), "allowed_updates": '["message"]'}
    if offset is not None:
        params["offset"] = int(offset)
    try:
        resp = await client.get(
            config.method_url("getUpdates"),
            params=params,
            timeout=float(config.poll_timeout_seconds) + 10.0,
        )
        data = resp.json()
    except Exception as e:
        LOGGER.warning("Telegram getUpdates failed error=%s", _redact(config, e))
        return False, []

    if not isinstance(data, dict) or not data.get("ok"):
        LOGGER.warning("Telegram getUpdates rejected telegram=%s", redact_telegram_response(data or {}))
        return False, []
    result = data.get("result")
    if not isinstance(result, list):
        return True, []
    return True, [u for u in result if isinstance(u, dict)]


class TelegramNotificationSink:
    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig) -> None:
        self.client = client
        self.config = config

    async def notify(self, subscriber: SubscriberId, text: str) -> bool:
        ok, resps = await send_telegram_message_chunked(self.client, self.config, subscriber, text)
        if not ok:
            resp = resps[-1] if resps else {}
            LOGGER.warning(
                "Telegram delivery failed chat_id=%s telegram=%s",
                subscriber,
                redact_telegram_response(resp),
            )
        return ok


class LoggingNotificationSink:
    """Writes notifications to the log; used for console-seeded endpoints."""

    async def notify(self, subscriber: SubscriberId, text: str) -> bool:
        LOGGER.warning("Notification subscriber=%s text=%s", subscriber, text.replace("\n", " | "))
        return True


class RoutingNotificationSink:
    def __init__(self, default: Any, routes: dict[SubscriberId, Any] | None = None) -> None:
        self.default = default
        self.routes = dict(routes or {})

    async def notify(self, subscriber: SubscriberId, text: str) -> bool:
        sink = self.routes.get(subscriber, self.default)
        return await sink.notify(subscriber, text)
