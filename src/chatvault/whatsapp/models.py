"""Canonical WhatsApp entity deltas produced by the normalizer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class MessageKind(str, Enum):
    """Closed classification of message content."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT_CARD = "contact_card"
    POLL = "poll"
    SYSTEM = "system"
    REACTION = "reaction"
    PROTOCOL = "protocol"
    UNKNOWN = "unknown"


MEDIA_KINDS = frozenset(
    {
        MessageKind.IMAGE,
        MessageKind.VIDEO,
        MessageKind.AUDIO,
        MessageKind.DOCUMENT,
        MessageKind.STICKER,
    }
)


class ChatKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    BROADCAST = "broadcast"


class ParticipantRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class ParticipantAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    PROMOTE = "promote"
    DEMOTE = "demote"


@dataclass(frozen=True)
class MediaDescriptor:
    """Media attributes of an image/video/audio/document/sticker message."""

    mimetype: str | None = None
    filename: str | None = None
    caption: str | None = None
    size_bytes: int | None = None
    duration_seconds: int | None = None
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class LocationPayload:
    latitude: float | None
    longitude: float | None
    name: str | None = None
    address: str | None = None
    caption: str | None = None
    is_live: bool = False

    def as_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        if self.is_live:
            data["caption"] = self.caption
            data["live"] = True
        else:
            data["name"] = self.name
            data["address"] = self.address
        return data


@dataclass(frozen=True)
class PollPayload:
    name: str | None
    options: tuple[str, ...] = ()
    selectable_count: int | None = None

    def as_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "options": list(self.options),
            "selectableOptionsCount": self.selectable_count,
        }


@dataclass(frozen=True)
class ContactCardPayload:
    """A shared contact (vCard) or an array of them."""

    display_name: str | None = None
    vcard: str | None = None
    contacts: tuple[dict[str, Any], ...] = ()

    def as_json(self) -> dict[str, Any]:
        if self.contacts:
            return {"contacts": list(self.contacts)}
        return {"displayName": self.display_name, "vcard": self.vcard}


# Exactly one variant matches the classification that produced it.
StructuredPayload = Union[LocationPayload, PollPayload, ContactCardPayload]


@dataclass(frozen=True)
class NormalizedMessage:
    """One message event reduced to canonical fields.

    body, media and payload are independently nullable; which one is
    primary follows from kind.
    """

    message_id: str
    chat_id: str
    chat_kind: ChatKind
    sender_id: str | None
    sender_name: str | None
    from_me: bool
    kind: MessageKind
    body: str | None
    timestamp: int
    media: MediaDescriptor | None = None
    payload: StructuredPayload | None = None
    quoted_message_id: str | None = None
    mentions: tuple[str, ...] = ()
    is_forwarded: bool = False
    is_starred: bool = False
    revoked_message_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_media(self) -> bool:
        return self.kind in MEDIA_KINDS


@dataclass(frozen=True)
class ChatDelta:
    """Fields to apply to a chat. Only keys present in changes are written."""

    chat_id: str
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContactDelta:
    """Fields to apply to a contact. A null name is never part of changes."""

    contact_id: str
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParticipantState:
    participant_id: str
    role: ParticipantRole = ParticipantRole.MEMBER


@dataclass(frozen=True)
class GroupDelta:
    """Group metadata changes, with the full roster when the event carries one."""

    group_id: str
    changes: dict[str, Any] = field(default_factory=dict)
    participants: tuple[ParticipantState, ...] | None = None


@dataclass(frozen=True)
class ParticipantsEvent:
    """Membership change; action stays a raw string so unknown ones can be logged."""

    group_id: str
    participant_ids: tuple[str, ...]
    action: str


@dataclass(frozen=True)
class HistoryBatch:
    """One batch of the historical backfill feed, items still raw."""

    chats: tuple[dict[str, Any], ...] = ()
    contacts: tuple[dict[str, Any], ...] = ()
    messages: tuple[dict[str, Any], ...] = ()
    is_latest: bool = False

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> HistoryBatch:
        return cls(
            chats=tuple(event.get("chats") or ()),
            contacts=tuple(event.get("contacts") or ()),
            messages=tuple(event.get("messages") or ()),
            is_latest=bool(event.get("isLatest")),
        )
