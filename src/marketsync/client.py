"""Async client for the marketplace REST collaborators."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .ids import EntityId
from .ledger import AuctionSnapshot, first_of
from .readstate import Message, Profile

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    def __init__(self, status: int | None, message: str):
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}" if status is not None else message)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _unwrap(payload: Any, status: int) -> Any:
    """Strip the ``{"success": ..., "data": ...}`` envelope when present."""

    if isinstance(payload, dict) and "success" in payload:
        if payload.get("success") is False:
            raise CollaboratorError(status, str(payload.get("message") or "request failed"))
        if "data" in payload:
            return payload["data"]
    return payload


def _messages_from(payload: Any) -> List[Message]:
    if isinstance(payload, dict):
        payload = first_of(payload, "items", "messages")
    if not isinstance(payload, list):
        return []
    messages = []
    for item in payload:
        message = Message.from_payload(item)
        if message is not None:
            messages.append(message)
    return messages


class MarketplaceClient:
    def __init__(
        self,
        base_url: str,
        access_token: str = "",
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.access_token = access_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "MarketplaceClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        session = self._ensure_session()
        url = _build_url(self.base_url, path)
        try:
            async with session.request(method, url, json=payload, headers=self._headers()) as response:
                raw = await response.text()
                status = response.status
                reason = response.reason
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CollaboratorError(None, f"{method} {path} failed: {exc}") from exc
        if status >= 400:
            raise CollaboratorError(status, raw.strip() or reason or "request failed")
        if not raw:
            return None
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CollaboratorError(status, f"{method} {path} returned invalid JSON") from exc
        return _unwrap(body, status)

    async def get_auction_bids(self, auction_id: EntityId) -> AuctionSnapshot:
        payload = await self._request("GET", f"/Auction/{auction_id}")
        snapshot = AuctionSnapshot.from_payload(payload, auction_id=auction_id)
        if snapshot is None:
            raise CollaboratorError(None, f"auction {auction_id} payload is not an object")
        return snapshot

    async def get_conversation(self, contact_id: EntityId) -> List[Message]:
        return _messages_from(await self._request("GET", f"/Message/conversation/{contact_id}"))

    async def get_inbox(self) -> List[Message]:
        return _messages_from(await self._request("GET", "/Message/inbox"))

    async def get_sent(self) -> List[Message]:
        return _messages_from(await self._request("GET", "/Message/sent"))

    async def mark_read(self, message_id: EntityId) -> bool:
        result = await self._request("PUT", f"/Message/{message_id}/read")
        return result is not False

    async def send_message(self, receiver_id: EntityId, content: str, subject: str | None = None) -> Message | None:
        payload: Dict[str, Any] = {"receiverId": receiver_id, "content": content}
        if subject:
            payload["subject"] = subject
        return Message.from_payload(await self._request("POST", "/Message", payload))

    async def get_unread_count(self) -> int:
        payload = await self._request("GET", "/Message/unread-count")
        if isinstance(payload, dict):
            payload = first_of(payload, "count", "unreadCount")
        try:
            return max(0, int(payload))
        except (TypeError, ValueError):
            logger.warning("unread count payload %r is not a number", payload)
            return 0

    async def get_user(self, user_id: EntityId) -> Profile | None:
        payload = await self._request("GET", f"/User/{user_id}")
        if not isinstance(payload, dict):
            return None
        name = first_of(payload, "username", "userName", "name", "fullName")
        avatar = first_of(payload, "profilePicture", "avatar", "imageUrl")
        return Profile(
            user_id=user_id,
            name=str(name) if name is not None else str(user_id),
            avatar=str(avatar) if avatar else None,
        )
