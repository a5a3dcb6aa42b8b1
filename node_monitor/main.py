from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

import httpx

from node_monitor.book_keeping import BookKeeper, BookKeepingClient, Mailbox
from node_monitor.bot import TelegramFrontEnd
from node_monitor.config import DEFAULT_CONFIG_PATH, MonitorConfig, load_config
from node_monitor.poll_loop import PollLoop
from node_monitor.probe import HealthProbe
from node_monitor.telegram import (
    LoggingNotificationSink,
    RoutingNotificationSink,
    TelegramConfig,
    TelegramNotificationSink,
)


LOGGER = logging.getLogger("node-monitor")

# Subscriber id used for endpoints listed in the config file.
CONSOLE_SUBSCRIBER = 0


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; Ctrl+C still raises KeyboardInterrupt.
            pass


async def run_service(
    config: MonitorConfig,
    *,
    bot_token: str | None,
    once: bool = False,
    stop: asyncio.Event | None = None,
    telegram_api_base_url: str | None = None,
) -> int:
    if not once and not bot_token:
        raise RuntimeError("Missing TELEGRAM_BOT_TOKEN env var")

    mailbox = Mailbox(config.mailbox_capacity)
    async with httpx.AsyncClient() as http_client:
        telegram_cfg: TelegramConfig | None = None
        if bot_token:
            telegram_cfg = TelegramConfig(
                bot_token=bot_token,
                api_base_url=telegram_api_base_url or TelegramConfig.api_base_url,
                poll_timeout_seconds=config.telegram_poll_timeout_seconds,
                bot_username=config.telegram_bot_username,
            )
        console_sink = LoggingNotificationSink()
        default_sink = TelegramNotificationSink(http_client, telegram_cfg) if telegram_cfg else console_sink
        sink = RoutingNotificationSink(default_sink, {CONSOLE_SUBSCRIBER: console_sink})

        keeper = BookKeeper(mailbox, sink, policy=config.debounce_policy)
        actor_task = asyncio.create_task(keeper.run())
        client = BookKeepingClient(mailbox)
        try:
            for url in config.endpoints:
                await client.subscribe(url, CONSOLE_SUBSCRIBER)

            probe = HealthProbe(http_client, timeout_seconds=config.probe_timeout_seconds)
            poll_loop = PollLoop(client, probe.probe, interval_seconds=config.poll_interval_seconds)

            if once:
                results = await poll_loop.run_cycle()
                for url, outcome in results.items():
                    LOGGER.info("Probe result url=%s state=%s", url, outcome.state.value)
                return 0

            stop = stop or asyncio.Event()
            _install_signal_handlers(stop)
            components = [asyncio.create_task(poll_loop.run(stop), name="poll-loop")]
            if telegram_cfg is not None:
                front_end = TelegramFrontEnd(http_client, telegram_cfg, client)
                components.append(asyncio.create_task(front_end.run(stop), name="telegram-front-end"))

            stop_task = asyncio.create_task(stop.wait(), name="stop")
            done, _pending = await asyncio.wait([stop_task, *components], return_when=asyncio.FIRST_COMPLETED)
            exit_code = 0
            for task in components:
                if task in done and task.exception() is not None:
                    LOGGER.error(
                        "Component crashed component=%s error=%s",
                        task.get_name(),
                        f"{type(task.exception()).__name__}: {task.exception()}",
                    )
                    exit_code = 1

            LOGGER.info("Shutting down")
            stop.set()
            for task in [stop_task, *components]:
                task.cancel()
            await asyncio.gather(stop_task, *components, return_exceptions=True)
            return exit_code
        finally:
            mailbox.close()
            await actor_task


def main() -> int:
    parser = argparse.ArgumentParser(description="Node status monitor with Telegram notifications")
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one poll cycle over the configured endpoints and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    config = load_config(Path(args.config))
    bot_token = (os.getenv("TELEGRAM_BOT_TOKEN") or "").strip() or None
    return asyncio.run(run_service(config, bot_token=bot_token, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
