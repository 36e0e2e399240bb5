"""Push channel to the chat hub.

Delivery is best effort: events that arrive while the connection is down are
lost, which is why every consumer also polls. Handlers live in a
:class:`~marketsync.hub.SubscriptionHub` that outlives individual connections,
and joined auction rooms are re-joined after each reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Any, Callable, Dict, List, Sequence, Set

import aiohttp

from . import hub_protocol
from .hub import AUCTION_UPDATE, RECEIVE_MESSAGE, RECEIVE_NOTIFICATION, Handler, Subscription, SubscriptionHub
from .hub_protocol import HubProtocolError, MessageType
from .ids import EntityId

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAYS = (0.0, 2.0, 10.0, 30.0)


class ChannelState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ChannelNotConnected(RuntimeError):
    pass


StateListener = Callable[[ChannelState], None]


class RealtimeChannel:
    def __init__(
        self,
        hub_url: str,
        access_token: str = "",
        *,
        hub: SubscriptionHub | None = None,
        reconnect_delays: Sequence[float] = DEFAULT_RECONNECT_DELAYS,
        max_attempts: int | None = None,
        session: aiohttp.ClientSession | None = None,
        negotiate: bool = True,
        handshake_timeout_s: float = 10.0,
        keepalive_s: float = 15.0,
    ) -> None:
        if not reconnect_delays:
            raise ValueError("reconnect_delays must not be empty")
        self.hub_url = hub_url.rstrip("/")
        self.access_token = access_token
        self.hub = hub if hub is not None else SubscriptionHub()
        self.reconnect_delays = tuple(float(delay) for delay in reconnect_delays)
        self.max_attempts = max_attempts
        self.negotiate = negotiate
        self.handshake_timeout_s = handshake_timeout_s
        self.keepalive_s = keepalive_s
        self.connection_id: str | None = None
        self.connect_count = 0

        self._session = session
        self._owns_session = session is None
        self._state = ChannelState.DISCONNECTED
        self._state_listeners: List[StateListener] = []
        self._rooms: Set[str] = set()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._connected: asyncio.Event | None = None
        self._stopping = False

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED and self._ws is not None and not self._ws.closed

    @property
    def rooms(self) -> Set[str]:
        return set(self._rooms)

    def subscribe(self, target: str, handler: Handler) -> Subscription:
        return self.hub.subscribe(target, handler)

    def on_new_message(self, handler: Handler) -> Subscription:
        return self.hub.subscribe(RECEIVE_MESSAGE, handler)

    def on_notification(self, handler: Handler) -> Subscription:
        return self.hub.subscribe(RECEIVE_NOTIFICATION, handler)

    def on_auction_update(self, handler: Handler) -> Subscription:
        return self.hub.subscribe(AUCTION_UPDATE, handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        with contextlib.suppress(ValueError):
            self._state_listeners.remove(listener)

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.info("hub channel %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("channel state listener failed")

    def _connected_event(self) -> asyncio.Event:
        if self._connected is None:
            self._connected = asyncio.Event()
        return self._connected

    async def connect(self, *, wait: bool = True, timeout: float | None = None) -> bool:
        """Start the connection loop; optionally wait for the first connection.

        Returns whether the channel is connected. A timeout leaves the loop
        running so it keeps retrying in the background.
        """

        connected = self._connected_event()
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self._run(), name="marketsync-hub")
        if not wait:
            return self.is_connected
        try:
            await asyncio.wait_for(connected.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("hub channel not connected after %ss; retrying in background", timeout)
        return self.is_connected

    async def disconnect(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self.connection_id = None
        if self._connected is not None:
            self._connected.clear()
        self._set_state(ChannelState.DISCONNECTED)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _run(self) -> None:
        attempt = 0
        while not self._stopping:
            self._set_state(ChannelState.CONNECTING)
            connections_before = self.connect_count
            try:
                await self._open_and_listen()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, HubProtocolError, OSError) as exc:
                logger.warning("hub connection failed: %s", exc)
            except Exception:
                logger.exception("unexpected hub channel failure")
            finally:
                self._ws = None
                self.connection_id = None
                self._connected_event().clear()
                self._set_state(ChannelState.DISCONNECTED)
            if self._stopping:
                break
            if self.connect_count > connections_before:
                attempt = 0
            if self.max_attempts is not None and attempt >= self.max_attempts:
                logger.warning("giving up on hub after %d reconnect attempts", attempt)
                break
            delay = self.reconnect_delays[min(attempt, len(self.reconnect_delays) - 1)]
            attempt += 1
            logger.info("reconnecting to hub in %.1fs (attempt %d)", delay, attempt)
            await asyncio.sleep(delay)

    async def _negotiate(self, session: aiohttp.ClientSession) -> tuple[str | None, str | None]:
        async with session.post(
            f"{self.hub_url}/negotiate",
            params={"negotiateVersion": "1"},
            headers=self._headers(),
        ) as response:
            if response.status >= 400:
                raise HubProtocolError(f"negotiate failed with status {response.status}")
            try:
                body = await response.json(content_type=None)
            except ValueError as exc:
                raise HubProtocolError("negotiate response is not JSON") from exc
        if not isinstance(body, dict):
            raise HubProtocolError("negotiate response must be an object")
        if body.get("error"):
            raise HubProtocolError(f"negotiate rejected: {body['error']}")
        connection_id = body.get("connectionId")
        token = body.get("connectionToken") or connection_id
        return (
            str(connection_id) if connection_id is not None else None,
            str(token) if token is not None else None,
        )

    async def _open_and_listen(self) -> None:
        session = self._ensure_session()
        connection_id = token = None
        if self.negotiate:
            connection_id, token = await self._negotiate(session)
        params: Dict[str, str] = {}
        if token:
            params["id"] = token
        if self.access_token:
            params["access_token"] = self.access_token

        async with session.ws_connect(self.hub_url, params=params, headers=self._headers()) as ws:
            self._ws = ws
            await ws.send_str(hub_protocol.handshake_request())
            reply = await ws.receive(timeout=self.handshake_timeout_s)
            if reply.type != aiohttp.WSMsgType.TEXT:
                raise HubProtocolError(f"handshake failed: unexpected {reply.type!r}")
            trailing = hub_protocol.check_handshake_response(reply.data)

            self.connection_id = connection_id
            self.connect_count += 1
            self._set_state(ChannelState.CONNECTED)
            self._connected_event().set()
            await self._rejoin_rooms()
            for frame in trailing:
                if not self._dispatch(frame):
                    return

            keepalive = asyncio.create_task(self._keepalive(ws))
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            frames = hub_protocol.parse_records(msg.data)
                        except HubProtocolError as exc:
                            logger.warning("dropping malformed hub frame: %s", exc)
                            continue
                        for frame in frames:
                            if not self._dispatch(frame):
                                return
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
            finally:
                keepalive.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keepalive

    async def _keepalive(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not ws.closed:
                await asyncio.sleep(self.keepalive_s)
                await ws.send_str(hub_protocol.encode_record(hub_protocol.ping()))
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionError) as exc:
            logger.debug("hub keepalive stopped: %s", exc)

    def _dispatch(self, frame: Dict[str, Any]) -> bool:
        """Route one frame; return False when the server closed the connection."""

        kind = hub_protocol.frame_type(frame)
        if kind is MessageType.INVOCATION:
            target = frame.get("target")
            if not isinstance(target, str):
                logger.debug("invocation without target: %r", frame)
                return True
            arguments = frame.get("arguments")
            if arguments is None:
                arguments = []
            if not isinstance(arguments, list):
                logger.warning("dropping %s invocation with non-list arguments: %r", target, arguments)
                return True
            payload = arguments[0] if len(arguments) == 1 else arguments
            if not self.hub.broadcast(target, payload):
                logger.debug("no handler registered for %s", target)
        elif kind is MessageType.CLOSE:
            logger.info("hub closed the connection: %s", frame.get("error") or "no error")
            if frame.get("allowReconnect") is False:
                logger.info("hub asked not to reconnect; stopping")
                self._stopping = True
            return False
        elif kind is MessageType.COMPLETION and frame.get("error"):
            logger.warning("hub invocation %s failed: %s", frame.get("invocationId"), frame["error"])
        return True

    async def invoke(self, target: str, *arguments: Any) -> None:
        """Send a fire-and-forget invocation to the hub."""

        ws = self._ws
        if ws is None or ws.closed or self._state is not ChannelState.CONNECTED:
            raise ChannelNotConnected(f"cannot invoke {target}: hub channel is {self._state.value}")
        await ws.send_str(hub_protocol.encode_record(hub_protocol.invocation(target, arguments)))

    async def send_message(self, receiver_id: EntityId, content: str) -> None:
        await self.invoke("SendMessage", str(receiver_id), content)

    async def join_auction_room(self, auction_id: EntityId) -> None:
        room = str(auction_id)
        self._rooms.add(room)
        if self.is_connected:
            await self.invoke("JoinAuctionRoom", room)

    async def leave_auction_room(self, auction_id: EntityId) -> None:
        room = str(auction_id)
        self._rooms.discard(room)
        if self.is_connected:
            await self.invoke("LeaveAuctionRoom", room)

    async def _rejoin_rooms(self) -> None:
        for room in sorted(self._rooms):
            try:
                await self.invoke("JoinAuctionRoom", room)
            except (ChannelNotConnected, aiohttp.ClientError, ConnectionError) as exc:
                logger.warning("could not rejoin auction room %s: %s", room, exc)
                return
