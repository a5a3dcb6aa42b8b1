from __future__ import annotations

import asyncio
import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from node_monitor.book_keeping import BookKeeper, BookKeepingClient, Mailbox
from node_monitor.bot import HELP_TEXT, TelegramFrontEnd
from node_monitor.telegram import (
    TELEGRAM_MAX_MESSAGE_LEN,
    LoggingNotificationSink,
    RoutingNotificationSink,
    TelegramConfig,
    TelegramNotificationSink,
    get_telegram_updates,
    redact_telegram_response,
    send_telegram_message,
    send_telegram_message_chunked,
    split_telegram_message,
)


TOKEN = "123:secret-token"


class _FakeTelegramHandler(BaseHTTPRequestHandler):
    sent: list[dict] = []
    updates: list[dict] = []
    offsets: list[int | None] = []
    blocked_chats: set[int] = set()

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send_json(self, status: int, obj: dict) -> None:
        body = json.dumps(obj, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self) -> None:  # noqa: N802
        if self.path != f"/bot{TOKEN}/sendMessage":
            self._send_json(404, {"ok": False, "description": "Not Found"})
            return
        n = int(self.headers.get("Content-Length") or "0")
        payload = json.loads(self.rfile.read(n).decode("utf-8"))
        if payload.get("chat_id") in type(self).blocked_chats:
            self._send_json(403, {"ok": False, "description": "Forbidden: bot was blocked by the user"})
            return
        type(self).sent.append(payload)
        self._send_json(200, {"ok": True, "result": {"message_id": len(type(self).sent), "text": payload["text"]}})

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != f"/bot{TOKEN}/getUpdates":
            self._send_json(404, {"ok": False, "description": "Not Found"})
            return
        qs = parse_qs(parsed.query)
        offset = int(qs["offset"][0]) if "offset" in qs else None
        type(self).offsets.append(offset)
        pending = [u for u in type(self).updates if offset is None or u["update_id"] >= offset]
        self._send_json(200, {"ok": True, "result": pending})


@pytest.fixture()
def fake_telegram() -> type[_FakeTelegramHandler]:
    handler = type(
        "_Handler",
        (_FakeTelegramHandler,),
        {"sent": [], "updates": [], "offsets": [], "blocked_chats": set()},
    )
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    host, port = httpd.server_address
    handler.base_url = f"http://{host}:{port}"
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield handler
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def _config(fake) -> TelegramConfig:
    return TelegramConfig(bot_token=TOKEN, api_base_url=fake.base_url, poll_timeout_seconds=0)


def test_split_telegram_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = split_telegram_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_telegram_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = split_telegram_message(text)
    assert len(parts) == 2
    assert len(parts[0]) <= TELEGRAM_MAX_MESSAGE_LEN
    assert len(parts[1]) <= TELEGRAM_MAX_MESSAGE_LEN


def test_redact_telegram_response_keeps_only_safe_fields() -> None:
    data = {"ok": True, "result": {"message_id": 5, "text": "private", "chat": {"id": 1}}}
    assert json.loads(redact_telegram_response(data)) == {"ok": True, "result": {"message_id": 5}}


@pytest.mark.asyncio
async def test_send_message_to_chat(fake_telegram) -> None:
    async with httpx.AsyncClient() as client:
        ok, data = await send_telegram_message(client, _config(fake_telegram), 42, "hello")
    assert ok is True
    assert data["result"]["message_id"] == 1
    assert fake_telegram.sent == [{"chat_id": 42, "text": "hello"}]


@pytest.mark.asyncio
async def test_send_chunked_sends_every_part(fake_telegram) -> None:
    text = ("line\n" * 300).strip()
    async with httpx.AsyncClient() as client:
        ok, resps = await send_telegram_message_chunked(client, _config(fake_telegram), 42, text, max_len=200)
    assert ok is True
    assert len(resps) == len(fake_telegram.sent) > 1


@pytest.mark.asyncio
async def test_send_failure_redacts_token() -> None:
    # Nothing listens on port 9 locally; the error must not echo the token.
    config = TelegramConfig(bot_token=TOKEN, api_base_url="http://127.0.0.1:9")
    async with httpx.AsyncClient() as client:
        ok, data = await send_telegram_message(client, config, 42, "hello")
    assert ok is False
    assert TOKEN not in data["error"]


@pytest.mark.asyncio
async def test_sink_reports_blocked_chat(fake_telegram) -> None:
    fake_telegram.blocked_chats.add(7)
    async with httpx.AsyncClient() as client:
        sink = TelegramNotificationSink(client, _config(fake_telegram))
        assert await sink.notify(7, "node down") is False
        assert await sink.notify(8, "node down") is True
    assert [m["chat_id"] for m in fake_telegram.sent] == [8]


@pytest.mark.asyncio
async def test_routing_sink_sends_console_subscriber_to_log(fake_telegram) -> None:
    async with httpx.AsyncClient() as client:
        sink = RoutingNotificationSink(
            TelegramNotificationSink(client, _config(fake_telegram)),
            {0: LoggingNotificationSink()},
        )
        assert await sink.notify(0, "node down") is True
        assert await sink.notify(5, "node down") is True
    assert [m["chat_id"] for m in fake_telegram.sent] == [5]


@pytest.mark.asyncio
async def test_get_updates_passes_offset(fake_telegram) -> None:
    fake_telegram.updates.extend([{"update_id": 10}, {"update_id": 11}])
    async with httpx.AsyncClient() as client:
        ok, updates = await get_telegram_updates(client, _config(fake_telegram), offset=11)
    assert ok is True
    assert [u["update_id"] for u in updates] == [11]
    assert fake_telegram.offsets == [11]


@pytest.mark.asyncio
async def test_get_updates_network_error_is_not_raised() -> None:
    config = TelegramConfig(bot_token=TOKEN, api_base_url="http://127.0.0.1:9", poll_timeout_seconds=0)
    async with httpx.AsyncClient() as client:
        ok, updates = await get_telegram_updates(client, config)
    assert ok is False
    assert updates == []


def _message(update_id: int, chat_id: int, text: str) -> dict:
    return {"update_id": update_id, "message": {"message_id": update_id, "chat": {"id": chat_id}, "text": text}}


@pytest.mark.asyncio
async def test_front_end_round_trip(fake_telegram) -> None:
    url = "http://mynode.mysite.com:8888/status"
    fake_telegram.updates.extend(
        [
            _message(1, 100, f"/subscribe {url}"),
            _message(2, 100, f"/subscribe {url}"),
            _message(3, 100, "/list"),
            _message(4, 100, "just chatting"),
            _message(5, 100, "/bogus"),
            {"update_id": 6, "edited_message": {"chat": {"id": 100}, "text": "/help"}},
            _message(7, 100, f"/unsubscribe {url}"),
        ]
    )

    mailbox = Mailbox()
    keeper = BookKeeper(mailbox, LoggingNotificationSink())
    actor = asyncio.create_task(keeper.run())
    try:
        async with httpx.AsyncClient() as client:
            front_end = TelegramFrontEnd(client, _config(fake_telegram), BookKeepingClient(mailbox))
            assert await front_end.poll_once() == 7
            assert front_end.next_offset == 8
            # Already-seen updates are acknowledged by the offset.
            assert await front_end.poll_once() == 0
    finally:
        mailbox.close()
        await actor

    texts = [m["text"] for m in fake_telegram.sent]
    assert texts == [
        f"You are now subscribed to updates for {url}",
        f"You are already subscribed to updates for {url}",
        f"You are subscribed to updates for:\n- {url}",
        HELP_TEXT,
        f"You will no longer receive updates for {url}",
    ]
    assert all(m["chat_id"] == 100 for m in fake_telegram.sent)
    assert fake_telegram.offsets == [None, 8]
    assert keeper.registry.list_endpoints() == []
