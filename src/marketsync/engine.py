"""Single-writer consumer that merges polled and pushed data.

Poll tasks and channel handlers only enqueue :class:`InboundEvent` values. One
consumer task applies them in turn to the ledger cache and the read-state
tracker, so neither needs locking and neither source can overwrite newer
state from the other.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from .channel import ChannelNotConnected, RealtimeChannel
from .client import CollaboratorError, MarketplaceClient
from .codec import LinkTarget, classify_link
from .config import SyncConfig
from .hub import AUCTION_UPDATE, RECEIVE_MESSAGE, RECEIVE_NOTIFICATION, Subscription
from .ids import EntityId, normalize_id
from .ledger import AuctionSnapshot, LedgerCache, LedgerView
from .poller import Poller
from .readstate import Contact, Message, Profile, ProfileCache, ReadStateTracker

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 50


class EventKind(str, enum.Enum):
    MESSAGES = "messages"
    AUCTION = "auction"
    READ = "read"
    OPEN = "open"
    CLOSE = "close"
    PROFILE = "profile"
    UNREAD_TOTAL = "unread_total"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class InboundEvent:
    kind: EventKind
    payload: Any
    source: str = "poll"


Listener = Callable[[InboundEvent], None]


class SyncEngine:
    def __init__(
        self,
        config: SyncConfig,
        *,
        client: MarketplaceClient | None = None,
        channel: RealtimeChannel | None = None,
        profiles: ProfileCache | None = None,
        tracker: ReadStateTracker | None = None,
        ledgers: LedgerCache | None = None,
    ) -> None:
        self.config = config
        self.client = client or MarketplaceClient(
            config.base_url,
            config.access_token,
            timeout_s=config.request_timeout_seconds,
        )
        self.channel = channel or RealtimeChannel(
            config.hub_url,
            config.access_token,
            reconnect_delays=config.reconnect_delays,
        )
        self.profiles = profiles if profiles is not None else ProfileCache()
        self.tracker = tracker or ReadStateTracker(config.self_id, self.profiles)
        self.ledgers = ledgers or LedgerCache()
        self.server_unread_total: int | None = None
        self.notifications: Deque[Any] = collections.deque(maxlen=MAX_NOTIFICATIONS)

        self._queue: asyncio.Queue[InboundEvent] | None = None
        self._consumer: asyncio.Task | None = None
        self._pollers: Dict[str, Poller] = {}
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Listener] = []
        self._background: Set[asyncio.Task] = set()
        self._profile_requests: Set[EntityId] = set()
        self._open_contact: EntityId | None = None

    # lifecycle

    @property
    def started(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self, *, connect: bool = True) -> None:
        if self.started:
            return
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(), name="marketsync-engine")
        self._subscriptions = [
            self.channel.subscribe(RECEIVE_MESSAGE, self._on_push_message),
            self.channel.subscribe(AUCTION_UPDATE, self._on_push_auction),
            self.channel.subscribe(RECEIVE_NOTIFICATION, self._on_push_notification),
        ]
        self._start_poller(Poller("inbox", self.config.inbox_poll_seconds, self.poll_inbox))
        if connect:
            await self.channel.connect(wait=False)

    async def stop(self) -> None:
        for poller in list(self._pollers.values()):
            await poller.stop()
        self._pollers.clear()
        for subscription in self._subscriptions:
            self.channel.unsubscribe(subscription)
        self._subscriptions = []
        await self.channel.disconnect()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
        await self.client.close()

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def poller(self, name: str) -> Optional[Poller]:
        return self._pollers.get(name)

    def _start_poller(self, poller: Poller) -> None:
        existing = self._pollers.get(poller.name)
        if existing is not None and existing.running:
            logger.debug("poller %s already running", poller.name)
            return
        self._pollers[poller.name] = poller
        poller.start()

    async def _stop_poller(self, name: str) -> None:
        poller = self._pollers.pop(name, None)
        if poller is not None:
            await poller.stop()

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.warning("%s failed: %s", label, exc)

        task.add_done_callback(_done)

    # producers

    def submit(self, event: InboundEvent) -> None:
        if self._queue is None:
            raise RuntimeError("engine is not started")
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every event queued so far has been applied."""

        if self._queue is not None:
            await self._queue.join()

    def _on_push_message(self, payload: Any) -> None:
        message = Message.from_payload(payload)
        if message is None:
            logger.debug("ignoring malformed pushed message: %r", payload)
            return
        self.submit(InboundEvent(EventKind.MESSAGES, (message,), source="push"))

    def _on_push_auction(self, payload: Any) -> None:
        snapshot = AuctionSnapshot.from_payload(payload)
        if snapshot is None:
            logger.debug("ignoring malformed auction update: %r", payload)
            return
        self.submit(InboundEvent(EventKind.AUCTION, snapshot, source="push"))

    def _on_push_notification(self, payload: Any) -> None:
        self.submit(InboundEvent(EventKind.NOTIFICATION, payload, source="push"))

    async def poll_inbox(self) -> None:
        inbox = await self.client.get_inbox()
        sent = await self.client.get_sent()
        self.submit(InboundEvent(EventKind.MESSAGES, tuple(inbox) + tuple(sent)))
        total = await self.client.get_unread_count()
        self.submit(InboundEvent(EventKind.UNREAD_TOTAL, total))

    async def poll_conversation(self, contact_id: EntityId) -> None:
        messages = await self.client.get_conversation(contact_id)
        self.submit(InboundEvent(EventKind.MESSAGES, tuple(messages)))

    async def poll_auction(self, auction_id: EntityId) -> None:
        snapshot = await self.client.get_auction_bids(auction_id)
        self.submit(InboundEvent(EventKind.AUCTION, snapshot))

    # view lifecycle

    async def open_conversation(self, contact_id: EntityId) -> None:
        normalized = normalize_id(contact_id)
        if normalized is None:
            raise ValueError("contact_id is required")
        previous, self._open_contact = self._open_contact, normalized
        if previous is not None and previous != normalized:
            await self._stop_poller(f"conversation:{previous}")
        self.submit(InboundEvent(EventKind.OPEN, normalized))
        self._start_poller(
            Poller(
                f"conversation:{normalized}",
                self.config.conversation_poll_seconds,
                lambda: self.poll_conversation(normalized),
            )
        )

    async def close_conversation(self) -> None:
        active, self._open_contact = self._open_contact, None
        if active is not None:
            await self._stop_poller(f"conversation:{active}")
        self.submit(InboundEvent(EventKind.CLOSE, active))

    async def watch_auction(self, auction_id: EntityId) -> None:
        normalized = normalize_id(auction_id)
        if normalized is None:
            raise ValueError("auction_id is required")
        self._start_poller(
            Poller(
                f"auction:{normalized}",
                self.config.auction_poll_seconds,
                lambda: self.poll_auction(normalized),
            )
        )
        try:
            await self.channel.join_auction_room(normalized)
        except ChannelNotConnected:
            logger.debug("auction room %s will be joined on connect", normalized)

    async def unwatch_auction(self, auction_id: EntityId) -> None:
        normalized = normalize_id(auction_id)
        await self._stop_poller(f"auction:{normalized}")
        try:
            await self.channel.leave_auction_room(normalized)  # type: ignore[arg-type]
        except ChannelNotConnected:
            pass

    def mark_read(self, message_id: EntityId) -> None:
        self.submit(InboundEvent(EventKind.READ, normalize_id(message_id)))

    async def send_message(self, receiver_id: EntityId, content: str) -> None:
        """Send over the hub when connected, else through the REST collaborator."""

        try:
            await self.channel.send_message(receiver_id, content)
            return
        except ChannelNotConnected:
            logger.info("hub offline; sending message to %s over REST", receiver_id)
        message = await self.client.send_message(receiver_id, content)
        if message is not None:
            self.submit(InboundEvent(EventKind.MESSAGES, (message,)))

    # consumer

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                changed = self._apply(event)
            except Exception:
                logger.exception("failed to apply %s event", event.kind.value)
                changed = False
            finally:
                self._queue.task_done()
            if changed:
                self._notify(event)

    def _notify(self, event: InboundEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("engine listener failed")

    def _apply(self, event: InboundEvent) -> bool:
        kind = event.kind
        if kind is EventKind.MESSAGES:
            changed = self.tracker.record_many(event.payload)
            changed = self._read_active_conversation() or changed
            self._request_missing_profiles()
            return changed
        if kind is EventKind.AUCTION:
            return self.ledgers.apply(event.payload)
        if kind is EventKind.READ:
            if self.tracker.mark_read(event.payload):
                self._push_read_receipts([event.payload])
                return True
            return False
        if kind is EventKind.OPEN:
            self.tracker.open_conversation(event.payload)
            self._read_active_conversation()
            self._request_missing_profiles()
            return True
        if kind is EventKind.CLOSE:
            self.tracker.close_conversation()
            return True
        if kind is EventKind.PROFILE:
            profile: Profile = event.payload
            self._profile_requests.discard(profile.user_id)
            self.profiles.put(profile)
            return True
        if kind is EventKind.UNREAD_TOTAL:
            changed = event.payload != self.server_unread_total
            self.server_unread_total = event.payload
            return changed
        if kind is EventKind.NOTIFICATION:
            self.notifications.append(event.payload)
            return True
        logger.debug("unhandled event kind %s", kind)
        return False

    def _read_active_conversation(self) -> bool:
        active = self.tracker.active_contact
        if active is None:
            return False
        flipped = self.tracker.mark_conversation_read(active)
        if flipped:
            self._push_read_receipts(flipped)
        return bool(flipped)

    def _push_read_receipts(self, message_ids: Iterable[EntityId]) -> None:
        for message_id in message_ids:
            self._spawn(self.client.mark_read(message_id), f"mark_read {message_id}")

    def _request_missing_profiles(self) -> None:
        for contact_id in self.profiles.missing(self.tracker.contact_ids()):
            if contact_id in self._profile_requests:
                continue
            self._profile_requests.add(contact_id)
            self._spawn(self._fetch_profile(contact_id), f"profile {contact_id}")

    async def _fetch_profile(self, contact_id: EntityId) -> None:
        try:
            profile = await self.client.get_user(contact_id)
        except CollaboratorError:
            self._profile_requests.discard(contact_id)
            raise
        if profile is None:
            self._profile_requests.discard(contact_id)
            return
        self.submit(InboundEvent(EventKind.PROFILE, profile))

    # read-only views

    def ledger(self, auction_id: EntityId) -> Optional[LedgerView]:
        normalized = normalize_id(auction_id)
        return self.ledgers.view(normalized) if normalized is not None else None

    def contacts(self) -> List[Contact]:
        return self.tracker.contacts()

    def unread_count_for(self, contact_id: EntityId) -> int:
        return self.tracker.unread_count_for(contact_id)

    def timeline(self, contact_id: EntityId) -> List[Message]:
        return self.tracker.timeline(contact_id)

    def link_target(self, url: str) -> LinkTarget:
        """Classify a reference link against the configured site origin."""

        return classify_link(url, self.config.site_origin or None)
