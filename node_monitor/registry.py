from __future__ import annotations

from enum import Enum
from typing import Hashable

SubscriberId = Hashable


class SubscribeResult(str, Enum):
    ACK = "ack"
    ALREADY_SUBSCRIBED = "already_subscribed"


class UnsubscribeResult(str, Enum):
    ACK = "ack"
    NOT_SUBSCRIBED = "not_subscribed"


class SubscriptionRegistry:
    """
    Endpoint -> subscriber set.

    Endpoints with no subscribers are never kept. Keys iterate in first-subscribe
    order (dict insertion order).
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[SubscriberId]] = {}

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._subscribers

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, endpoint: str, subscriber: SubscriberId) -> SubscribeResult:
        subs = self._subscribers.setdefault(endpoint, set())
        if subscriber in subs:
            return SubscribeResult.ALREADY_SUBSCRIBED
        subs.add(subscriber)
        return SubscribeResult.ACK

    def unsubscribe(self, endpoint: str, subscriber: SubscriberId) -> UnsubscribeResult:
        subs = self._subscribers.get(endpoint)
        if subs is None or subscriber not in subs:
            return UnsubscribeResult.NOT_SUBSCRIBED
        subs.discard(subscriber)
        if not subs:
            del self._subscribers[endpoint]
        return UnsubscribeResult.ACK

    def list_endpoints(self) -> list[str]:
        return list(self._subscribers)

    def subscribers(self, endpoint: str) -> frozenset[SubscriberId]:
        return frozenset(self._subscribers.get(endpoint) or ())

    def endpoints_for(self, subscriber: SubscriberId) -> list[str]:
        return sorted(e for e, subs in self._subscribers.items() if subscriber in subs)
