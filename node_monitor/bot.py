from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from node_monitor.book_keeping import BookKeepingClient
from node_monitor.registry import SubscribeResult, SubscriberId, UnsubscribeResult
from node_monitor.status import Online, StatusSnapshot
from node_monitor.telegram import (
    TelegramConfig,
    get_telegram_updates,
    redact_telegram_response,
    send_telegram_message_chunked,
)


LOGGER = logging.getLogger("node-monitor")

HELP_TEXT = """
Hello! I'm the node status bot, here is a list of commands I respond to:

/subscribe {url} - Get notifications for the node at {url} when it goes offline or comes back online.
/unsubscribe {url} - Stop getting notifications for the node at {url}.
/list - Show the nodes you are subscribed to.
/status {url} - Show the current state of a node you are subscribed to.
/help - Display this help text.

Note: {url} must be the full url of the status endpoint for a node: `http://mynode.mysite.com:8888/status`.
""".strip()

ERROR_TEXT = "Something went wrong handling that command, please try again later."

COMMANDS_WITH_URL = {"subscribe", "unsubscribe", "status"}
COMMANDS_WITHOUT_ARG = {"help", "start", "list"}


@dataclass(frozen=True)
class BotCommand:
    name: str
    arg: str | None = None
    # `/name@otherbot` in a group chat: not ours to answer.
    for_other_bot: bool = False


def parse_command(text: str, *, bot_username: str | None = None) -> BotCommand | None:
    """
    Parse `/name [arg]`. Returns None for anything that is not a known, well-formed command.
    `/name@bot` addressed to a different bot (when a username is configured) comes back
    with `for_other_bot` set and is never executed.
    """
    s = (text or "").strip()
    if not s.startswith("/"):
        return None

    head, _, rest = s.partition(" ")
    name = head[1:]
    if "@" in name:
        name, _, target = name.partition("@")
        if bot_username and target.lower() != bot_username.lower().lstrip("@"):
            return BotCommand(name=name.lower(), for_other_bot=True)
    name = name.lower()
    arg = rest.strip() or None

    if name in COMMANDS_WITH_URL:
        if not arg or len(arg.split()) != 1:
            return None
        return BotCommand(name=name, arg=arg)
    if name in COMMANDS_WITHOUT_ARG:
        return BotCommand(name=name)
    return None


def subscribe_reply(url: str, result: SubscribeResult) -> str:
    if result is SubscribeResult.ALREADY_SUBSCRIBED:
        return f"You are already subscribed to updates for {url}"
    return f"You are now subscribed to updates for {url}"


def unsubscribe_reply(url: str, result: UnsubscribeResult) -> str:
    if result is UnsubscribeResult.NOT_SUBSCRIBED:
        return f"You are not subscribed to updates for {url}"
    return f"You will no longer receive updates for {url}"


def list_reply(endpoints: list[str]) -> str:
    if not endpoints:
        return "You are not subscribed to any nodes. Use /subscribe {url} to start."
    lines = ["You are subscribed to updates for:"]
    lines.extend(f"- {url}" for url in endpoints)
    return "\n".join(lines)


def status_reply(url: str, snapshot: StatusSnapshot | None) -> str:
    if snapshot is None:
        return f"{url} is not being monitored. Use /subscribe {url} to start."
    lines = [f"Node: {url}", f"State: {snapshot.current.value.upper()}"]
    if snapshot.previous is not None:
        lines.append(f"Previous state: {snapshot.previous.value}")
    if snapshot.samples < snapshot.window_size:
        lines.append(f"Collecting samples: {snapshot.samples}/{snapshot.window_size}")
    if isinstance(snapshot.latest, Online):
        lines.append(f"Last probe: online (api {snapshot.latest.details.api_version})")
    elif snapshot.latest is not None:
        lines.append("Last probe: offline")
    return "\n".join(lines)


async def handle_command(
    client: BookKeepingClient,
    chat_id: SubscriberId,
    text: str,
    *,
    bot_username: str | None = None,
) -> str | None:
    """
    Turn one chat message into book keeping requests and return the reply text.
    Plain (non-command) messages get no reply.
    """
    if not (text or "").strip().startswith("/"):
        return None

    command = parse_command(text, bot_username=bot_username)
    if command is not None and command.for_other_bot:
        return None
    if command is None or command.name in {"help", "start"}:
        return HELP_TEXT

    LOGGER.info("Bot command chat_id=%s command=%s", chat_id, command.name)
    if command.name == "subscribe":
        return subscribe_reply(command.arg, await client.subscribe(command.arg, chat_id))
    if command.name == "unsubscribe":
        return unsubscribe_reply(command.arg, await client.unsubscribe(command.arg, chat_id))
    if command.name == "list":
        return list_reply(await client.list_subscriptions(chat_id))
    if command.name == "status":
        if command.arg not in await client.list_subscriptions(chat_id):
            return f"You are not subscribed to updates for {command.arg}"
        return status_reply(command.arg, await client.get_status(command.arg))
    return HELP_TEXT


class TelegramFrontEnd:
    """Long-polls Telegram for chat messages and answers them via book keeping."""

    def __init__(self, http_client: httpx.AsyncClient, config: TelegramConfig, client: BookKeepingClient) -> None:
        self.http_client = http_client
        self.config = config
        self.client = client
        self.next_offset: int | None = None

    async def process_update(self, update: dict[str, Any]) -> None:
        update_id = update.get("update_id")
        if isinstance(update_id, int) and (self.next_offset is None or update_id >= self.next_offset):
            self.next_offset = update_id + 1

        message = update.get("message")
        if not isinstance(message, dict):
            return
        chat = message.get("chat") or {}
        chat_id = chat.get("id") if isinstance(chat, dict) else None
        text = message.get("text")
        if chat_id is None or not isinstance(text, str):
            return

        try:
            reply = await handle_command(self.client, chat_id, text, bot_username=self.config.bot_username)
        except Exception as exc:
            LOGGER.exception("Bot command failed chat_id=%s error=%s", chat_id, f"{type(exc).__name__}: {exc}")
            reply = ERROR_TEXT
        if reply is None:
            return

        ok, resps = await send_telegram_message_chunked(self.http_client, self.config, chat_id, reply)
        if not ok:
            LOGGER.warning(
                "Bot reply failed chat_id=%s telegram=%s",
                chat_id,
                redact_telegram_response(resps[-1] if resps else {}),
            )

    async def poll_once(self) -> int:
        ok, updates = await get_telegram_updates(self.http_client, self.config, offset=self.next_offset)
        for update in updates:
            await self.process_update(update)
        return len(updates) if ok else -1

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        LOGGER.info("Telegram front end started")
        while not stop.is_set():
            handled = await self.poll_once()
            if handled < 0:
                # Back off after a failed long poll instead of hammering the API.
                try:
                    await asyncio.wait_for(stop.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    pass
        LOGGER.info("Telegram front end stopped")
