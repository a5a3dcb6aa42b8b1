from __future__ import annotations

import logging
import time
from urllib.parse import urlsplit, urlunsplit

import httpx

from node_monitor.status import OFFLINE, NodeStatusDetails, Online, ProbeOutcome


LOGGER = logging.getLogger("node-monitor")

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0


def _safe_url(url: str) -> str:
    """
    Strip querystrings/fragments so credentials in status URLs do not reach the logs.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return s[:500]


class HealthProbe:
    """
    One GET against a node status endpoint, classified as Online(details) or Offline.

    Never raises for remote conditions: transport errors, timeouts, non-2xx
    responses and malformed payloads all become Offline.
    """

    def __init__(self, client: httpx.AsyncClient, *, timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS) -> None:
        self.client = client
        self.timeout_seconds = float(timeout_seconds)

    async def probe(self, url: str) -> ProbeOutcome:
        started = time.perf_counter()
        try:
            resp = await self.client.get(url, follow_redirects=True, timeout=self.timeout_seconds)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            LOGGER.debug("Probe failed url=%s error=%s", _safe_url(url), f"{type(e).__name__}: {e}")
            return OFFLINE
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        if not (200 <= resp.status_code < 300):
            LOGGER.debug("Probe non-2xx url=%s status_code=%s", _safe_url(url), resp.status_code)
            return OFFLINE

        try:
            payload = resp.json()
        except ValueError:
            LOGGER.debug("Probe returned invalid JSON url=%s", _safe_url(url))
            return OFFLINE

        details = NodeStatusDetails.from_payload(payload)
        if details is None:
            LOGGER.debug("Probe payload missing status fields url=%s", _safe_url(url))
            return OFFLINE

        LOGGER.debug("Probe ok url=%s elapsed_ms=%s", _safe_url(url), round(elapsed_ms, 3))
        return Online(details)
