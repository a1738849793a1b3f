"""WhatsApp event normalizer - classify and reduce raw transport payloads.

Raw payloads follow the WhatsApp Web message shape (WebMessageInfo): a
``key`` with ``remoteJid``/``id``/``participant``/``fromMe``, a ``message``
object holding exactly one content-kind entry (plus optional
``messageContextInfo`` or ``senderKeyDistributionMessage`` noise), a
``messageTimestamp`` and a ``pushName``.

Nothing here touches the store. Malformed content never raises: it
classifies as UNKNOWN. Only a message without chat or message id is
rejected, since it cannot be keyed.
"""

from __future__ import annotations

import base64
from typing import Any, Callable

from chatvault.infra.time import epoch_seconds_now, from_epoch_seconds

from .models import (
    MEDIA_KINDS,
    ChatDelta,
    ChatKind,
    ContactCardPayload,
    ContactDelta,
    GroupDelta,
    LocationPayload,
    MediaDescriptor,
    MessageKind,
    NormalizedMessage,
    ParticipantRole,
    ParticipantsEvent,
    ParticipantState,
    PollPayload,
    StructuredPayload,
)


class InvalidPayloadError(Exception):
    """Raised when a message event cannot be keyed (no chat or message id)."""

    pass


# First match wins. Media outranks text, protocol plumbing comes last so a
# payload carrying real content next to a key-distribution entry is kept.
KIND_PRIORITY: tuple[tuple[MessageKind, tuple[str, ...]], ...] = (
    (MessageKind.IMAGE, ("imageMessage",)),
    (MessageKind.VIDEO, ("videoMessage",)),
    (MessageKind.AUDIO, ("audioMessage",)),
    (MessageKind.DOCUMENT, ("documentMessage", "documentWithCaptionMessage")),
    (MessageKind.STICKER, ("stickerMessage",)),
    (MessageKind.LOCATION, ("locationMessage", "liveLocationMessage")),
    (MessageKind.CONTACT_CARD, ("contactMessage", "contactsArrayMessage")),
    (
        MessageKind.POLL,
        (
            "pollCreationMessage",
            "pollCreationMessageV2",
            "pollCreationMessageV3",
            "pollUpdateMessage",
        ),
    ),
    (MessageKind.REACTION, ("reactionMessage",)),
    (MessageKind.TEXT, ("conversation", "extendedTextMessage")),
    (MessageKind.PROTOCOL, ("protocolMessage", "senderKeyDistributionMessage")),
)

_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)

_MEDIA_KEYS = {
    MessageKind.IMAGE: "imageMessage",
    MessageKind.VIDEO: "videoMessage",
    MessageKind.AUDIO: "audioMessage",
    MessageKind.DOCUMENT: "documentMessage",
    MessageKind.STICKER: "stickerMessage",
}

_CONTEXT_INFO_KEYS = (
    "extendedTextMessage",
    "imageMessage",
    "videoMessage",
    "audioMessage",
    "documentMessage",
)

_POLL_CREATION_KEYS = (
    "pollCreationMessage",
    "pollCreationMessageV2",
    "pollCreationMessageV3",
)

_REVOKE_TYPES = (0, "REVOKE")

_ROLE_BY_ADMIN_FLAG = {
    "admin": ParticipantRole.ADMIN,
    "superadmin": ParticipantRole.SUPER_ADMIN,
}

# groups.update field -> group_metadata column
_GROUP_FIELDS = {
    "subject": "subject",
    "subjectOwner": "subject_owner",
    "owner": "owner",
    "desc": "description",
    "linkedParent": "community_id",
    "inviteCode": "invite_code",
}
_GROUP_FLAGS = {
    "announce": "announce",
    "restrict": "restrict_mode",
    "joinApprovalMode": "join_approval_mode",
    "memberAddMode": "member_add_mode",
    "isCommunity": "is_community",
    "isCommunityAnnounce": "is_community_announce",
}


def chat_kind_from_jid(jid: str) -> ChatKind:
    """Derive chat kind from the shape of an external chat id."""
    if jid.endswith("@g.us"):
        return ChatKind.GROUP
    if jid.endswith("@broadcast"):
        return ChatKind.BROADCAST
    return ChatKind.PRIVATE


def to_int(value: Any) -> int | None:
    """Read a plain or split 64-bit integer.

    Accepts ints, numeric strings and {"low": .., "high": ..} pairs (the low
    word is used). Returns None when the value is absent or unreadable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    low = value.get("low") if isinstance(value, dict) else getattr(value, "low", None)
    if low is None:
        return None
    return to_int(low)


def extract_timestamp(value: Any, now: Callable[[], int] = epoch_seconds_now) -> int:
    """Normalize a source timestamp to epoch seconds, falling back to now."""
    seconds = to_int(value)
    return seconds if seconds is not None else now()


def _is_positive(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    number = to_int(value)
    return number is not None and number > 0


def _sub(content: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = content.get(key)
    return value if isinstance(value, dict) else None


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def unwrap_content(content: Any) -> dict[str, Any] | None:
    """Strip ephemeral / view-once / document-with-caption envelopes."""
    if not isinstance(content, dict):
        return None
    for _ in range(len(_WRAPPER_KEYS)):
        for wrapper in _WRAPPER_KEYS:
            inner = _sub(content, wrapper)
            if inner is not None and isinstance(inner.get("message"), dict):
                content = inner["message"]
                break
        else:
            break
    return content


def classify(content: dict[str, Any] | None) -> MessageKind:
    """Resolve the content kind by fixed priority; first present key wins."""
    if not content:
        return MessageKind.UNKNOWN
    for kind, keys in KIND_PRIORITY:
        if any(content.get(key) is not None for key in keys):
            return kind
    return MessageKind.UNKNOWN


def _poll_creation(content: dict[str, Any]) -> dict[str, Any] | None:
    for key in _POLL_CREATION_KEYS:
        poll = _sub(content, key)
        if poll is not None:
            return poll
    return None


def extract_body(content: dict[str, Any] | None) -> str | None:
    """First non-empty text field, in a fixed fallback order."""
    if not content:
        return None

    def field_of(key: str, name: str) -> Any:
        sub = _sub(content, key)
        return sub.get(name) if sub else None

    poll = _poll_creation(content)
    return _first_text(
        content.get("conversation"),
        field_of("extendedTextMessage", "text"),
        field_of("imageMessage", "caption"),
        field_of("videoMessage", "caption"),
        field_of("documentMessage", "caption"),
        poll.get("name") if poll else None,
        field_of("reactionMessage", "text"),
        field_of("contactMessage", "displayName"),
        field_of("locationMessage", "name"),
        field_of("liveLocationMessage", "caption"),
    )


def extract_context_info(content: dict[str, Any] | None) -> dict[str, Any] | None:
    """The contextInfo (quote, mentions, forwarding) of the first carrier."""
    if not content:
        return None
    for key in _CONTEXT_INFO_KEYS:
        sub = _sub(content, key)
        if sub is not None and isinstance(sub.get("contextInfo"), dict):
            return sub["contextInfo"]
    return None


def extract_media(
    kind: MessageKind, content: dict[str, Any] | None, body: str | None
) -> MediaDescriptor | None:
    """Media descriptor for media-bearing kinds, None otherwise."""
    if kind not in MEDIA_KINDS or not content:
        return None
    media = _sub(content, _MEDIA_KEYS[kind]) or {}
    return MediaDescriptor(
        mimetype=media.get("mimetype"),
        filename=media.get("fileName") if kind is MessageKind.DOCUMENT else None,
        caption=body,
        size_bytes=to_int(media.get("fileLength")),
        duration_seconds=to_int(media.get("seconds")),
        width=to_int(media.get("width")),
        height=to_int(media.get("height")),
    )


def extract_structured_payload(
    kind: MessageKind, content: dict[str, Any] | None
) -> StructuredPayload | None:
    """Location, poll or contact-card payload matching the kind."""
    if not content:
        return None

    if kind is MessageKind.LOCATION:
        static = _sub(content, "locationMessage")
        if static is not None:
            return LocationPayload(
                latitude=static.get("degreesLatitude"),
                longitude=static.get("degreesLongitude"),
                name=static.get("name"),
                address=static.get("address"),
            )
        live = _sub(content, "liveLocationMessage")
        if live is not None:
            return LocationPayload(
                latitude=live.get("degreesLatitude"),
                longitude=live.get("degreesLongitude"),
                caption=live.get("caption"),
                is_live=True,
            )

    if kind is MessageKind.POLL:
        poll = _poll_creation(content)
        if poll is not None:
            options = tuple(
                option.get("optionName") if isinstance(option, dict) else str(option)
                for option in poll.get("options") or ()
            )
            return PollPayload(
                name=poll.get("name"),
                options=options,
                selectable_count=to_int(poll.get("selectableOptionsCount")),
            )

    if kind is MessageKind.CONTACT_CARD:
        single = _sub(content, "contactMessage")
        if single is not None:
            return ContactCardPayload(
                display_name=single.get("displayName"), vcard=single.get("vcard")
            )
        many = _sub(content, "contactsArrayMessage")
        if many is not None:
            return ContactCardPayload(
                display_name=many.get("displayName"),
                contacts=tuple(c for c in many.get("contacts") or () if isinstance(c, dict)),
            )

    return None


def _revoked_message_id(content: dict[str, Any] | None) -> str | None:
    protocol = _sub(content or {}, "protocolMessage")
    if protocol is None or protocol.get("type") not in _REVOKE_TYPES:
        return None
    target = _sub(protocol, "key") or {}
    target_id = target.get("id")
    return target_id if isinstance(target_id, str) and target_id else None


def json_safe(value: Any) -> Any:
    """Make a raw payload storable as JSON (bytes become base64 text)."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def normalize_message(
    raw: Any, now: Callable[[], int] = epoch_seconds_now
) -> NormalizedMessage:
    """Normalize one message event.

    Args:
        raw: WebMessageInfo-shaped dict from the transport.
        now: Clock used when the event carries no timestamp.

    Returns:
        NormalizedMessage; PROTOCOL kind means "do not persist".

    Raises:
        InvalidPayloadError: If the chat id or message id is missing.
    """
    if not isinstance(raw, dict):
        raise InvalidPayloadError("message event is not an object")

    key = raw.get("key") or {}
    chat_id = key.get("remoteJid")
    if not chat_id or not isinstance(chat_id, str):
        raise InvalidPayloadError("missing remoteJid")
    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    content = unwrap_content(raw.get("message"))
    kind = classify(content)
    if kind is MessageKind.UNKNOWN and not content and raw.get("messageStubType") is not None:
        kind = MessageKind.SYSTEM

    body = extract_body(content)
    context = extract_context_info(content) or {}
    quoted = context.get("stanzaId")
    mentions = context.get("mentionedJid") or ()

    return NormalizedMessage(
        message_id=message_id,
        chat_id=chat_id,
        chat_kind=chat_kind_from_jid(chat_id),
        sender_id=key.get("participant") or chat_id,
        sender_name=raw.get("pushName") or None,
        from_me=bool(key.get("fromMe")),
        kind=kind,
        body=body,
        timestamp=extract_timestamp(raw.get("messageTimestamp"), now),
        media=extract_media(kind, content, body),
        payload=extract_structured_payload(kind, content),
        quoted_message_id=quoted if isinstance(quoted, str) and quoted else None,
        mentions=tuple(m for m in mentions if isinstance(m, str)),
        is_forwarded=bool(context.get("isForwarded")),
        is_starred=bool(raw.get("starred")),
        revoked_message_id=_revoked_message_id(content) if kind is MessageKind.PROTOCOL else None,
        raw=json_safe(raw),
    )


def _entity_id(raw: Any, error: str) -> str:
    entity_id = raw.get("id") if isinstance(raw, dict) else None
    if not entity_id or not isinstance(entity_id, str):
        raise InvalidPayloadError(error)
    return entity_id


def normalize_chat_update(raw: dict[str, Any]) -> ChatDelta:
    """Chat metadata delta; only keys present in the event become changes.

    pin and mute arrive as "epoch-or-zero" values and become booleans.
    """
    chat_id = _entity_id(raw, "chat update without id")

    changes: dict[str, Any] = {}
    if "archive" in raw:
        changes["is_archived"] = bool(raw["archive"])
    if "pin" in raw:
        changes["is_pinned"] = _is_positive(raw["pin"])
    if "mute" in raw:
        changes["is_muted"] = _is_positive(raw["mute"])
    # an explicit null clears the name
    if "name" in raw:
        changes["name"] = raw["name"] or None
    if "unreadCount" in raw:
        changes["unread_count"] = to_int(raw["unreadCount"]) or 0
    if "description" in raw:
        changes["description"] = raw["description"]
    if "readOnly" in raw:
        changes["is_read_only"] = bool(raw["readOnly"])

    return ChatDelta(chat_id=chat_id, changes=changes)


def normalize_contact_update(raw: dict[str, Any]) -> ContactDelta:
    """Contact delta. A missing or null name never clears a stored one."""
    contact_id = _entity_id(raw, "contact update without id")

    changes: dict[str, Any] = {}
    name = _first_text(raw.get("name"), raw.get("notify"))
    if name is not None:
        changes["name"] = name
    if "verifiedName" in raw and raw["verifiedName"]:
        changes["nickname"] = raw["verifiedName"]
    # "changed" only signals a new avatar, the URL itself is not known yet
    if "imgUrl" in raw and raw["imgUrl"] != "changed":
        changes["avatar_url"] = raw["imgUrl"]
    if "status" in raw:
        changes["about"] = raw["status"]

    return ContactDelta(contact_id=contact_id, changes=changes)


def _participant_state(raw: Any) -> ParticipantState | None:
    if isinstance(raw, str) and raw:
        return ParticipantState(participant_id=raw)
    if isinstance(raw, dict) and isinstance(raw.get("id"), str) and raw["id"]:
        role = _ROLE_BY_ADMIN_FLAG.get(raw.get("admin") or "", ParticipantRole.MEMBER)
        return ParticipantState(participant_id=raw["id"], role=role)
    return None


def normalize_group_update(raw: dict[str, Any]) -> GroupDelta:
    """Group metadata delta plus the roster when the event carries one."""
    group_id = _entity_id(raw, "group update without id")

    changes: dict[str, Any] = {}
    for source, column in _GROUP_FIELDS.items():
        if source in raw:
            changes[column] = raw[source]
    for source, column in _GROUP_FLAGS.items():
        if source in raw:
            changes[column] = bool(raw[source])
    if "ephemeralDuration" in raw:
        changes["ephemeral_duration"] = to_int(raw["ephemeralDuration"])
    if "creation" in raw:
        created = to_int(raw["creation"])
        changes["creation_time"] = from_epoch_seconds(created) if created else None

    participants = None
    if isinstance(raw.get("participants"), list):
        states = (_participant_state(p) for p in raw["participants"])
        participants = tuple(s for s in states if s is not None)

    return GroupDelta(group_id=group_id, changes=changes, participants=participants)


def normalize_participants_event(raw: dict[str, Any]) -> ParticipantsEvent:
    """Membership change event; participants may be ids or {id: ..} objects."""
    group_id = _entity_id(raw, "participants update without group id")

    states = (_participant_state(p) for p in raw.get("participants") or ())
    return ParticipantsEvent(
        group_id=group_id,
        participant_ids=tuple(s.participant_id for s in states if s is not None),
        action=str(raw.get("action") or ""),
    )
