from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


DEFAULT_WINDOW_SIZE = 5

DETAIL_FIELDS = ("api_version", "chainspec_name", "our_public_signing_key")


class StableState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DebounceMode(str, Enum):
    # All samples in a full window must agree before the stable state flips.
    UNANIMOUS = "unanimous"
    # Strictly more than half of a full window must agree.
    MAJORITY = "majority"


@dataclass(frozen=True)
class NodeStatusDetails:
    api_version: str
    chainspec_name: str
    our_public_signing_key: str

    @classmethod
    def from_payload(cls, payload: Any) -> NodeStatusDetails | None:
        """
        Decode the JSON body of a node status endpoint.
        Returns None unless every detail field is present and a string.
        """
        if not isinstance(payload, dict):
            return None
        values: dict[str, str] = {}
        for name in DETAIL_FIELDS:
            value = payload.get(name)
            if not isinstance(value, str):
                return None
            values[name] = value
        return cls(**values)


@dataclass(frozen=True)
class Online:
    details: NodeStatusDetails

    @property
    def state(self) -> StableState:
        return StableState.ONLINE


@dataclass(frozen=True)
class Offline:
    @property
    def state(self) -> StableState:
        return StableState.OFFLINE


ProbeOutcome = Union[Online, Offline]

OFFLINE = Offline()


@dataclass(frozen=True)
class DebouncePolicy:
    window_size: int = DEFAULT_WINDOW_SIZE
    mode: DebounceMode = DebounceMode.UNANIMOUS

    def __post_init__(self) -> None:
        if int(self.window_size) < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size!r}")
        object.__setattr__(self, "mode", DebounceMode(self.mode))

    def verdict(self, online_count: int, offline_count: int) -> StableState | None:
        """
        Classify a full window. None means the window is mixed and no transition may fire.
        """
        if self.mode is DebounceMode.UNANIMOUS:
            if online_count == self.window_size:
                return StableState.ONLINE
            if offline_count == self.window_size:
                return StableState.OFFLINE
            return None

        if online_count * 2 > self.window_size:
            return StableState.ONLINE
        if offline_count * 2 > self.window_size:
            return StableState.OFFLINE
        return None


@dataclass(frozen=True)
class StatusSnapshot:
    endpoint: str
    current: StableState
    previous: StableState | None
    samples: int
    window_size: int
    latest: ProbeOutcome | None
    stable_details: NodeStatusDetails | None


class StatusHistory:
    """Sliding window of recent probe outcomes for one endpoint plus its debounced state."""

    def __init__(self, policy: DebouncePolicy | None = None) -> None:
        self.policy = policy or DebouncePolicy()
        self.history: deque[ProbeOutcome] = deque(maxlen=self.policy.window_size)
        self.current_stable: StableState = StableState.OFFLINE
        self.previous_stable: StableState | None = None
        # Payload of the outcome that confirmed the current Online state.
        self.stable_details: NodeStatusDetails | None = None

    def __len__(self) -> int:
        return len(self.history)

    @property
    def latest(self) -> ProbeOutcome | None:
        return self.history[-1] if self.history else None

    def add_latest_status(self, outcome: ProbeOutcome) -> None:
        # deque(maxlen=N) evicts the oldest entry on overflow.
        self.history.append(outcome)

    def counts(self) -> tuple[int, int]:
        online = sum(1 for o in self.history if isinstance(o, Online))
        return online, len(self.history) - online

    def status_changed(self) -> bool:
        """
        Evaluate the current window and apply a transition if one is due.

        Returns True exactly when the stable state flipped. Windows that are not yet
        full never transition.
        """
        if len(self.history) < self.policy.window_size:
            return False

        online_count, offline_count = self.counts()
        verdict = self.policy.verdict(online_count, offline_count)
        if verdict is None or verdict == self.current_stable:
            return False

        self.previous_stable = self.current_stable
        self.current_stable = verdict
        latest = self.history[-1]
        if verdict is StableState.ONLINE and isinstance(latest, Online):
            self.stable_details = latest.details
        elif verdict is StableState.ONLINE:
            # Majority mode can confirm Online on an Offline sample; use the newest payload.
            self.stable_details = next(
                (o.details for o in reversed(self.history) if isinstance(o, Online)), None
            )
        else:
            self.stable_details = None
        return True

    def push(self, outcome: ProbeOutcome) -> bool:
        self.add_latest_status(outcome)
        return self.status_changed()

    def snapshot(self, endpoint: str) -> StatusSnapshot:
        return StatusSnapshot(
            endpoint=endpoint,
            current=self.current_stable,
            previous=self.previous_stable,
            samples=len(self.history),
            window_size=self.policy.window_size,
            latest=self.latest,
            stable_details=self.stable_details,
        )
