from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from node_monitor.book_keeping import BookKeepingClient
from node_monitor.status import OFFLINE, ProbeOutcome


LOGGER = logging.getLogger("node-monitor")

DEFAULT_POLL_INTERVAL_SECONDS = 10.0

ProbeFn = Callable[[str], Awaitable[ProbeOutcome]]


class PollLoop:
    """
    Every `interval_seconds`: snapshot the subscribed endpoints, probe each one
    concurrently and post every outcome back to book keeping as it arrives.
    """

    def __init__(
        self,
        client: BookKeepingClient,
        probe: ProbeFn,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        if float(interval_seconds) <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds!r}")
        self.client = client
        self.probe = probe
        self.interval_seconds = float(interval_seconds)
        self.cycles = 0

    async def _probe_and_report(self, url: str) -> ProbeOutcome:
        try:
            outcome = await self.probe(url)
        except Exception as exc:
            err = f"{type(exc).__name__}: {exc}"
            LOGGER.exception("Probe crashed url=%s error=%s", url, err)
            outcome = OFFLINE
        await self.client.status_update(url, outcome)
        return outcome

    async def run_cycle(self) -> dict[str, ProbeOutcome]:
        endpoints = await self.client.list_endpoints()
        LOGGER.info("Running poll cycle endpoints=%s", len(endpoints))

        tasks = [asyncio.create_task(self._probe_and_report(url)) for url in endpoints]
        done = await asyncio.gather(*tasks, return_exceptions=True)

        results: dict[str, ProbeOutcome] = {}
        for url, outcome in zip(endpoints, done):
            if isinstance(outcome, BaseException):
                LOGGER.error("Status update not delivered url=%s error=%s", url, f"{type(outcome).__name__}: {outcome}")
                continue
            results[url] = outcome
        self.cycles += 1
        return results

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            cycle_started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                # e.g. book keeping stopped mid-shutdown; try again next period.
                LOGGER.exception("Poll cycle failed")

            elapsed = time.monotonic() - cycle_started
            sleep_for = max(0.0, self.interval_seconds - elapsed)
            LOGGER.debug(
                "Cycle complete elapsed_seconds=%s sleep_seconds=%s",
                round(elapsed, 3),
                round(sleep_for, 3),
            )
            try:
                await asyncio.wait_for(stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Poll loop stopped cycles=%s", self.cycles)
