"""Per-contact conversation state with idempotent read transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from . import codec
from .ids import EntityId, id_order, normalize_id
from .ledger import first_of
from .timestamps import parse_ts_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    file_url: str
    file_type: str | None = None


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def _attachments_from_payload(payload: Mapping[str, Any]) -> Tuple[Attachment, ...]:
    found: List[Attachment] = []
    items = payload.get("attachments")
    if isinstance(items, list):
        for item in items:
            if not isinstance(item, Mapping):
                continue
            url = first_of(item, "fileUrl", "url")
            if not url:
                continue
            kind = first_of(item, "fileType", "type")
            found.append(Attachment(file_url=str(url), file_type=str(kind) if kind is not None else None))
    url = payload.get("fileUrl")
    if url and not any(attachment.file_url == url for attachment in found):
        kind = payload.get("fileType")
        found.insert(0, Attachment(file_url=str(url), file_type=str(kind) if kind is not None else None))
    return tuple(found)


@dataclass(frozen=True)
class Message:
    id: EntityId
    sender_id: EntityId
    receiver_id: EntityId
    content: str
    ts_ms: int
    is_read: bool = False
    attachments: Tuple[Attachment, ...] = ()

    def decoded(self) -> codec.DecodedMessage | None:
        return codec.decode(self.content)

    @classmethod
    def from_payload(cls, payload: object) -> "Message | None":
        """Build a message from a collaborator or hub payload; ``None`` if unusable."""

        if not isinstance(payload, Mapping):
            return None
        message_id = normalize_id(first_of(payload, "id", "messageId"))
        sender_id = normalize_id(first_of(payload, "senderId", "sender_id"))
        receiver_id = normalize_id(first_of(payload, "receiverId", "receiver_id"))
        if message_id is None or sender_id is None or receiver_id is None:
            logger.debug("dropping message payload missing ids: %r", payload)
            return None
        ts_ms = parse_ts_ms(first_of(payload, "sentAt", "timestamp", "createdAt", "ts_ms"))
        content = first_of(payload, "content", "text")
        return cls(
            id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=str(content) if content is not None else "",
            ts_ms=ts_ms if ts_ms is not None else 0,
            is_read=_as_bool(first_of(payload, "isRead", "is_read")),
            attachments=_attachments_from_payload(payload),
        )


def _recency(message: Message) -> Tuple[int, Tuple[int, Any]]:
    return (message.ts_ms, id_order(message.id))


@dataclass(frozen=True)
class Profile:
    user_id: EntityId
    name: str
    avatar: str | None = None


class ProfileCache:
    """Display names and avatars keyed by user id.

    Owned by whoever builds the tracker; entries are only decoration and are
    dropped when a conversation is reopened so the next lookup refreshes them.
    """

    def __init__(self) -> None:
        self._profiles: Dict[EntityId, Profile] = {}

    def get(self, user_id: EntityId) -> Profile | None:
        return self._profiles.get(user_id)

    def put(self, profile: Profile) -> None:
        self._profiles[profile.user_id] = profile

    def invalidate(self, user_id: EntityId) -> None:
        self._profiles.pop(user_id, None)

    def clear(self) -> None:
        self._profiles.clear()

    def missing(self, user_ids: Iterable[EntityId]) -> List[EntityId]:
        return [user_id for user_id in user_ids if user_id not in self._profiles]

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)


@dataclass(frozen=True)
class Contact:
    contact_id: EntityId
    last_message: Message | None
    unread_count: int
    name: str | None = None
    avatar: str | None = None

    @property
    def last_message_time_ms(self) -> int | None:
        return self.last_message.ts_ms if self.last_message is not None else None


@dataclass
class _ContactState:
    contact_id: EntityId
    last_message: Message | None = None
    unread_count: int = 0
    message_ids: Set[EntityId] = field(default_factory=set)


class ReadStateTracker:
    """Conversation map for one signed-in user.

    Messages from polls and pushes are merged by id. A message counts toward
    a contact's unread total only when it was sent to ``self_id`` and has not
    been read; the read-state set makes :meth:`mark_read` idempotent when the
    same message arrives again from another source.
    """

    def __init__(self, self_id: EntityId, profiles: ProfileCache | None = None) -> None:
        normalized = normalize_id(self_id)
        if normalized is None:
            raise ValueError("self_id is required")
        self.self_id: EntityId = normalized
        self.profiles = profiles if profiles is not None else ProfileCache()
        self._messages: Dict[EntityId, Message] = {}
        self._contacts: Dict[EntityId, _ContactState] = {}
        self._read_ids: Set[EntityId] = set()
        self.active_contact: EntityId | None = None

    def counterpart(self, message: Message) -> EntityId | None:
        if message.receiver_id == self.self_id:
            return message.sender_id
        if message.sender_id == self.self_id:
            return message.receiver_id
        return None

    def _counts_as_unread(self, message: Message) -> bool:
        return message.receiver_id == self.self_id and not message.is_read and message.id not in self._read_ids

    def record_incoming(self, message: Message) -> bool:
        """Merge ``message`` into its conversation; return True when state changed."""

        contact_id = self.counterpart(message)
        if contact_id is None:
            logger.debug("message %s does not involve %s; ignored", message.id, self.self_id)
            return False
        state = self._contacts.get(contact_id)
        if state is None:
            state = _ContactState(contact_id=contact_id)
            self._contacts[contact_id] = state

        known = self._messages.get(message.id)
        if known is None:
            if message.id in self._read_ids and not message.is_read:
                message = replace(message, is_read=True)
            merged = message
            if self._counts_as_unread(merged):
                state.unread_count += 1
        else:
            # is_read only ever flips False -> True
            merged = replace(message, is_read=known.is_read or message.is_read)
            if self._counts_as_unread(known) and not self._counts_as_unread(merged):
                state.unread_count = max(0, state.unread_count - 1)
                self._read_ids.add(merged.id)
            if merged == known:
                return False

        self._messages[merged.id] = merged
        state.message_ids.add(merged.id)
        last = state.last_message
        if last is None or last.id == merged.id or _recency(merged) > _recency(last):
            state.last_message = merged
        return True

    def record_many(self, messages: Iterable[Message]) -> bool:
        changed = False
        for message in messages:
            changed = self.record_incoming(message) or changed
        return changed

    def mark_read(self, message_id: EntityId) -> bool:
        """Apply the read transition once; repeated calls are no-ops."""

        normalized = normalize_id(message_id)
        if normalized is None or normalized in self._read_ids:
            return False
        known = self._messages.get(normalized)
        if known is None:
            logger.debug("mark_read for unknown message %s ignored", normalized)
            return False
        contact_id = self.counterpart(known)
        state = self._contacts.get(contact_id) if contact_id is not None else None
        if state is None:
            logger.debug("mark_read for message %s of unknown contact %s ignored", normalized, contact_id)
            return False

        was_unread = self._counts_as_unread(known)
        self._read_ids.add(normalized)
        if not known.is_read:
            updated = replace(known, is_read=True)
            self._messages[normalized] = updated
            if state.last_message is not None and state.last_message.id == normalized:
                state.last_message = updated
        if was_unread:
            state.unread_count = max(0, state.unread_count - 1)
        return True

    def mark_conversation_read(self, contact_id: EntityId) -> List[EntityId]:
        """Mark every unread message from ``contact_id``; return the ids that flipped."""

        flipped = []
        for message_id in self.unread_ids_for(contact_id):
            if self.mark_read(message_id):
                flipped.append(message_id)
        return flipped

    def is_processed(self, message_id: EntityId) -> bool:
        return normalize_id(message_id) in self._read_ids

    def unread_count_for(self, contact_id: EntityId) -> int:
        state = self._contacts.get(normalize_id(contact_id))  # type: ignore[arg-type]
        return state.unread_count if state is not None else 0

    def total_unread(self) -> int:
        return sum(state.unread_count for state in self._contacts.values())

    def unread_ids_for(self, contact_id: EntityId) -> List[EntityId]:
        return [message.id for message in self.timeline(contact_id) if self._counts_as_unread(message)]

    def timeline(self, contact_id: EntityId) -> List[Message]:
        state = self._contacts.get(normalize_id(contact_id))  # type: ignore[arg-type]
        if state is None:
            return []
        messages = [self._messages[message_id] for message_id in state.message_ids]
        return sorted(messages, key=_recency)

    def message(self, message_id: EntityId) -> Optional[Message]:
        return self._messages.get(normalize_id(message_id))  # type: ignore[arg-type]

    def contact(self, contact_id: EntityId) -> Optional[Contact]:
        state = self._contacts.get(normalize_id(contact_id))  # type: ignore[arg-type]
        if state is None:
            return None
        return self._to_contact(state)

    def contacts(self) -> List[Contact]:
        """Contacts with the most recent conversation first."""

        ordered = sorted(
            self._contacts.values(),
            key=lambda state: _recency(state.last_message) if state.last_message else (0, (0, 0)),
            reverse=True,
        )
        return [self._to_contact(state) for state in ordered]

    def contact_ids(self) -> List[EntityId]:
        return list(self._contacts)

    def open_conversation(self, contact_id: EntityId) -> None:
        normalized = normalize_id(contact_id)
        if normalized is None:
            return
        self.active_contact = normalized
        self.profiles.invalidate(normalized)

    def close_conversation(self) -> None:
        self.active_contact = None

    def _to_contact(self, state: _ContactState) -> Contact:
        profile = self.profiles.get(state.contact_id)
        return Contact(
            contact_id=state.contact_id,
            last_message=state.last_message,
            unread_count=state.unread_count,
            name=profile.name if profile is not None else None,
            avatar=profile.avatar if profile is not None else None,
        )
