from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

from node_monitor.registry import SubscribeResult, SubscriberId, SubscriptionRegistry, UnsubscribeResult
from node_monitor.status import (
    DebouncePolicy,
    ProbeOutcome,
    StableState,
    StatusHistory,
    StatusSnapshot,
)


LOGGER = logging.getLogger("node-monitor")

DEFAULT_MAILBOX_CAPACITY = 64


class MailboxClosed(RuntimeError):
    pass


class ActorStopped(RuntimeError):
    pass


class NotificationSink(Protocol):
    async def notify(self, subscriber: SubscriberId, text: str) -> bool: ...


# Request commands: answered through the reply future of the Request that carries them.


@dataclass(frozen=True)
class Subscribe:
    endpoint: str
    subscriber: SubscriberId


@dataclass(frozen=True)
class Unsubscribe:
    endpoint: str
    subscriber: SubscriberId


@dataclass(frozen=True)
class ListEndpoints:
    pass


@dataclass(frozen=True)
class ListSubscriptions:
    subscriber: SubscriberId


@dataclass(frozen=True)
class GetStatus:
    endpoint: str


RequestCommand = Union[Subscribe, Unsubscribe, ListEndpoints, ListSubscriptions, GetStatus]


@dataclass(frozen=True)
class Request:
    command: RequestCommand
    reply: asyncio.Future


# One-way command: no reply slot.
@dataclass(frozen=True)
class StatusUpdate:
    endpoint: str
    outcome: ProbeOutcome


Envelope = Union[Request, StatusUpdate]


class Mailbox:
    """
    Multi-producer, single-consumer command queue.

    Bounded: `put` waits for space. After `close`, `put` raises MailboxClosed and
    `get` returns None once everything already queued has been handed out. Once the
    consumer has stopped, producers still waiting for space get MailboxClosed too.
    """

    def __init__(self, capacity: int = DEFAULT_MAILBOX_CAPACITY) -> None:
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue(maxsize=max(1, int(capacity)))
        self._closed = False
        self._stopped = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: Envelope) -> None:
        if self._closed:
            raise MailboxClosed("book keeping mailbox is closed")
        if not self._queue.full():
            self._queue.put_nowait(item)
            return

        put_task = asyncio.ensure_future(self._queue.put(item))
        stopped_task = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({put_task, stopped_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put_task.cancel()
            stopped_task.cancel()
        if self._stopped.is_set():
            raise MailboxClosed("book keeping stopped before reading the command")

    async def get(self) -> Envelope | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def drain(self) -> list[Envelope]:
        items: list[Envelope] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if item is not None:
                items.append(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake an idle consumer. A full queue means the consumer is busy and will
        # observe `closed` once it empties the queue.
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def mark_stopped(self) -> None:
        """Called by the consumer on exit; nothing put from now on will be read."""
        self._closed = True
        self._stopped.set()


def build_status_change_message(snapshot: StatusSnapshot) -> str:
    previous = snapshot.previous.value if snapshot.previous is not None else "unknown"
    if snapshot.current is StableState.ONLINE:
        lines = ["Node is back ONLINE ✅", f"Endpoint: {snapshot.endpoint}", f"Previous state: {previous}"]
        details = snapshot.stable_details
        if details is not None:
            lines.append(f"API version: {details.api_version}")
            lines.append(f"Chainspec: {details.chainspec_name}")
            lines.append(f"Public signing key: {details.our_public_signing_key}")
    else:
        lines = ["Node went OFFLINE ❌", f"Endpoint: {snapshot.endpoint}", f"Previous state: {previous}"]
    lines.append(f"Debounce: {snapshot.samples}/{snapshot.window_size} samples agree")
    return "\n".join(lines)


class BookKeeper:
    """
    Sole owner of subscriptions and status histories.

    All state is mutated from `run`, one mailbox item at a time. Handlers are
    synchronous, so no command can observe another half-applied.
    """

    def __init__(
        self,
        mailbox: Mailbox,
        sink: NotificationSink,
        *,
        policy: DebouncePolicy | None = None,
    ) -> None:
        self.mailbox = mailbox
        self.sink = sink
        self.policy = policy or DebouncePolicy()
        self.registry = SubscriptionRegistry()
        self.histories: dict[str, StatusHistory] = {}
        self._notification_tasks: set[asyncio.Task] = set()
        # Newest delivery per subscriber; the next one for that subscriber waits on it.
        self._last_delivery: dict[SubscriberId, asyncio.Task] = {}

    async def run(self) -> None:
        LOGGER.info(
            "Book keeping started window_size=%s mode=%s",
            self.policy.window_size,
            self.policy.mode.value,
        )
        try:
            while True:
                item = await self.mailbox.get()
                if item is None:
                    for queued in self.mailbox.drain():
                        self.handle(queued)
                    break
                self.handle(item)
        finally:
            # Also reached on cancellation: refuse new commands before failing the queued ones.
            self.mailbox.close()
            for queued in self.mailbox.drain():
                if isinstance(queued, Request) and not queued.reply.done():
                    queued.reply.set_exception(ActorStopped("book keeping stopped before replying"))
            self.mailbox.mark_stopped()
            await self.wait_for_notifications()
            LOGGER.info("Book keeping stopped endpoints=%s", len(self.registry))

    def handle(self, item: Envelope) -> None:
        if isinstance(item, StatusUpdate):
            self._on_status_update(item.endpoint, item.outcome)
            return

        try:
            result = self._on_request(item.command)
        except Exception as exc:
            LOGGER.exception("Book keeping request failed command=%r", item.command)
            if not item.reply.done():
                item.reply.set_exception(exc)
            return
        # The caller may have stopped waiting; the mutation still stands.
        if not item.reply.done():
            item.reply.set_result(result)

    def _on_request(self, command: RequestCommand) -> Any:
        if isinstance(command, Subscribe):
            result = self.registry.subscribe(command.endpoint, command.subscriber)
            if command.endpoint not in self.histories:
                self.histories[command.endpoint] = StatusHistory(self.policy)
            LOGGER.info(
                "Subscribe endpoint=%s subscriber=%s result=%s",
                command.endpoint,
                command.subscriber,
                result.value,
            )
            return result

        if isinstance(command, Unsubscribe):
            result = self.registry.unsubscribe(command.endpoint, command.subscriber)
            if command.endpoint not in self.registry:
                # Last subscriber left: the endpoint's history goes with it.
                self.histories.pop(command.endpoint, None)
            LOGGER.info(
                "Unsubscribe endpoint=%s subscriber=%s result=%s",
                command.endpoint,
                command.subscriber,
                result.value,
            )
            return result

        if isinstance(command, ListEndpoints):
            return self.registry.list_endpoints()

        if isinstance(command, ListSubscriptions):
            return self.registry.endpoints_for(command.subscriber)

        if isinstance(command, GetStatus):
            history = self.histories.get(command.endpoint)
            return history.snapshot(command.endpoint) if history is not None else None

        raise TypeError(f"Unknown book keeping command: {command!r}")

    def _on_status_update(self, endpoint: str, outcome: ProbeOutcome) -> None:
        history = self.histories.get(endpoint)
        if history is None:
            # Probe finished after the last unsubscribe.
            LOGGER.debug("Dropping status for unknown endpoint endpoint=%s", endpoint)
            return

        LOGGER.debug("Status update endpoint=%s state=%s", endpoint, outcome.state.value)
        if not history.push(outcome):
            return

        snapshot = history.snapshot(endpoint)
        level = logging.INFO if snapshot.current is StableState.ONLINE else logging.WARNING
        LOGGER.log(
            level,
            "Status changed endpoint=%s previous=%s current=%s",
            endpoint,
            snapshot.previous.value if snapshot.previous is not None else None,
            snapshot.current.value,
        )
        text = build_status_change_message(snapshot)
        for subscriber in self.registry.subscribers(endpoint):
            previous = self._last_delivery.get(subscriber)
            task = asyncio.create_task(self._deliver_after(previous, subscriber, endpoint, text))
            self._last_delivery[subscriber] = task
            self._notification_tasks.add(task)
            task.add_done_callback(self._notification_tasks.discard)
            task.add_done_callback(lambda t, s=subscriber: self._forget_delivery(s, t))

    def _forget_delivery(self, subscriber: SubscriberId, task: asyncio.Task) -> None:
        if self._last_delivery.get(subscriber) is task:
            del self._last_delivery[subscriber]

    async def _deliver_after(
        self,
        previous: asyncio.Task | None,
        subscriber: SubscriberId,
        endpoint: str,
        text: str,
    ) -> bool:
        # Same subscriber, same order as the transitions that produced the messages.
        if previous is not None:
            await asyncio.wait({previous})
        return await self._deliver(subscriber, endpoint, text)

    async def _deliver(self, subscriber: SubscriberId, endpoint: str, text: str) -> bool:
        try:
            ok = bool(await self.sink.notify(subscriber, text))
        except Exception as exc:
            LOGGER.warning(
                "Notification failed subscriber=%s endpoint=%s error=%s",
                subscriber,
                endpoint,
                f"{type(exc).__name__}: {exc}",
            )
            return False
        if not ok:
            LOGGER.warning("Notification not delivered subscriber=%s endpoint=%s", subscriber, endpoint)
        return ok

    async def wait_for_notifications(self) -> None:
        while self._notification_tasks:
            await asyncio.gather(*list(self._notification_tasks), return_exceptions=True)


class BookKeepingClient:
    """Sending handle for the book keeping mailbox; safe to share between producers."""

    def __init__(self, mailbox: Mailbox) -> None:
        self.mailbox = mailbox

    async def request(self, command: RequestCommand) -> Any:
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        await self.mailbox.put(Request(command=command, reply=reply))
        return await reply

    async def subscribe(self, endpoint: str, subscriber: SubscriberId) -> SubscribeResult:
        return await self.request(Subscribe(endpoint=endpoint, subscriber=subscriber))

    async def unsubscribe(self, endpoint: str, subscriber: SubscriberId) -> UnsubscribeResult:
        return await self.request(Unsubscribe(endpoint=endpoint, subscriber=subscriber))

    async def list_endpoints(self) -> list[str]:
        return await self.request(ListEndpoints())

    async def list_subscriptions(self, subscriber: SubscriberId) -> list[str]:
        return await self.request(ListSubscriptions(subscriber=subscriber))

    async def get_status(self, endpoint: str) -> StatusSnapshot | None:
        return await self.request(GetStatus(endpoint=endpoint))

    async def status_update(self, endpoint: str, outcome: ProbeOutcome) -> None:
        await self.mailbox.put(StatusUpdate(endpoint=endpoint, outcome=outcome))
