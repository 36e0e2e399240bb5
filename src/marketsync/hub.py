from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RECEIVE_MESSAGE = "ReceiveMessage"
RECEIVE_NOTIFICATION = "ReceiveNotification"
AUCTION_UPDATE = "AuctionUpdate"

Handler = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    target: str
    handler: Handler

    def deliver(self, payload: Any) -> None:
        self.handler(payload)


class SubscriptionHub:
    """Registers handlers per hub target and fans payloads out to them.

    The registry is independent of any connection, so handlers stay
    registered while the channel reconnects.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, target: str, handler: Handler) -> Subscription:
        subscription = Subscription(target=target, handler=handler)
        self._subscriptions.setdefault(target.lower(), []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        key = subscription.target.lower()
        subs = self._subscriptions.get(key)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(key, None)

    def handler_count(self, target: str) -> int:
        return len(self._subscriptions.get(target.lower(), []))

    def broadcast(self, target: str, payload: Any) -> int:
        """Deliver ``payload`` to every handler of ``target``; return how many ran."""

        delivered = 0
        for subscription in list(self._subscriptions.get(target.lower(), [])):
            try:
                subscription.deliver(payload)
            except Exception:
                logger.exception("handler for %s failed", target)
                continue
            delivered += 1
        return delivered
