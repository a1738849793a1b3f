"""Message ingestion - apply normalized messages to the entity store.

Per message:
  1. find-or-create the owning chat (kind derived from the chat id)
  2. find-or-create the sender contact
  3. resolve the quoted message by external id (best effort, never retried)
  4. find-or-create the message; an existing id is a duplicate, not an error
  5. on first insert, refresh the chat preview / activity fields

Delivery is at-least-once, so every step is keyed on an external id and safe
to repeat. total_message_count is maintained by a store trigger.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from chatvault.infra.store import EntityStore, EntityType, Row
from chatvault.infra.time import epoch_seconds_now, from_epoch_seconds
from chatvault.observability.logging import get_logger
from chatvault.observability.redaction import log_context
from chatvault.whatsapp.models import (
    ChatKind,
    ContactCardPayload,
    LocationPayload,
    MessageKind,
    NormalizedMessage,
    PollPayload,
)
from chatvault.whatsapp.normalizer import InvalidPayloadError, normalize_message

from .results import BatchResult, ItemOutcome

logger = get_logger(__name__)

PREVIEW_LENGTH = 200

_PAYLOAD_COLUMNS = {
    LocationPayload: "location_data",
    PollPayload: "poll_data",
    ContactCardPayload: "contact_data",
}


def preview_text(message: NormalizedMessage) -> str:
    """Chat list preview: truncated body, or a bracketed kind tag."""
    if message.body:
        return message.body[:PREVIEW_LENGTH]
    return f"[{message.kind.value}]"


def message_row(
    message: NormalizedMessage, chat_pk: int, quoted_message_pk: int | None
) -> dict[str, Any]:
    """Column values for a new messages row."""
    row: dict[str, Any] = {
        "chat_pk": chat_pk,
        "sender_id": message.sender_id,
        "sender_name": message.sender_name,
        "from_me": message.from_me,
        "kind": message.kind.value,
        "body": message.body,
        "has_media": message.has_media,
        "message_timestamp": from_epoch_seconds(message.timestamp),
        "quoted_message_pk": quoted_message_pk,
        "mentions": list(message.mentions) or None,
        "is_forwarded": message.is_forwarded,
        "is_starred": message.is_starred,
        "raw_data": message.raw or None,
    }

    media = message.media
    if media is not None:
        row.update(
            media_mimetype=media.mimetype,
            media_filename=media.filename,
            media_caption=media.caption,
            media_size=media.size_bytes,
            media_duration=media.duration_seconds,
            media_width=media.width,
            media_height=media.height,
        )

    if message.payload is not None:
        row[_PAYLOAD_COLUMNS[type(message.payload)]] = message.payload.as_json()

    return row


def resolve_quoted_pk(store: EntityStore, quoted_message_id: str | None) -> int | None:
    """Internal id of an already-ingested quoted message, else None."""
    if not quoted_message_id:
        return None
    quoted = store.find_by_unique_key(EntityType.MESSAGE, {"message_id": quoted_message_id})
    if quoted is None:
        logger.debug(
            "quoted message not ingested yet, reference left null",
            extra={"extra_fields": log_context(quoted_message_id=quoted_message_id)},
        )
        return None
    return quoted["id"]


def apply_revoke(store: EntityStore, target_message_id: str) -> bool:
    """Soft-delete a revoked message. Returns False if it was never ingested."""
    target = store.find_by_unique_key(EntityType.MESSAGE, {"message_id": target_message_id})
    if target is None:
        logger.debug(
            "revoked message not found",
            extra={"extra_fields": log_context(message_id=target_message_id)},
        )
        return False
    if not target.get("is_deleted"):
        store.update(EntityType.MESSAGE, target, {"is_deleted": True})
        logger.info(
            "message marked deleted",
            extra={"extra_fields": log_context(message_id=target_message_id)},
        )
    return True


def _ensure_sender(store: EntityStore, message: NormalizedMessage) -> None:
    if not message.sender_id:
        return
    defaults: dict[str, Any] = {}
    # an outbound push name is the account owner's own name
    if not message.from_me and message.sender_name:
        defaults["name"] = message.sender_name
    store.find_or_create(EntityType.CONTACT, {"contact_id": message.sender_id}, defaults)


def refresh_chat_activity(store: EntityStore, chat: Row, message: NormalizedMessage) -> Row:
    """Update preview, activity time and (private, unnamed) chat name."""
    fields: dict[str, Any] = {}

    message_at = from_epoch_seconds(message.timestamp)
    current = chat.get("last_message_at")
    if current is None or message_at >= current:
        fields["last_message_at"] = message_at
        fields["last_message_preview"] = preview_text(message)

    if (
        message.chat_kind is ChatKind.PRIVATE
        and not message.from_me
        and message.sender_name
        and not chat.get("name")
    ):
        fields["name"] = message.sender_name

    if not fields:
        return chat
    return store.update(EntityType.CHAT, chat, fields)


def ingest_message(store: EntityStore, message: NormalizedMessage) -> ItemOutcome:
    """Persist one normalized message.

    Returns:
        APPLIED for a new message, DUPLICATE when the id already exists,
        SKIPPED for protocol messages (never persisted).
    """
    if message.kind is MessageKind.PROTOCOL:
        if message.revoked_message_id:
            apply_revoke(store, message.revoked_message_id)
        logger.debug(
            "skipping protocol message",
            extra={"extra_fields": log_context(message_id=message.message_id)},
        )
        return ItemOutcome.SKIPPED

    chat, _ = store.find_or_create(
        EntityType.CHAT, {"chat_id": message.chat_id}, {"kind": message.chat_kind.value}
    )
    _ensure_sender(store, message)
    quoted_pk = resolve_quoted_pk(store, message.quoted_message_id)

    _, created = store.find_or_create(
        EntityType.MESSAGE,
        {"message_id": message.message_id},
        message_row(message, chat["id"], quoted_pk),
    )
    if not created:
        logger.debug(
            "duplicate message ignored",
            extra={"extra_fields": log_context(message_id=message.message_id)},
        )
        return ItemOutcome.DUPLICATE

    refresh_chat_activity(store, chat, message)
    return ItemOutcome.APPLIED


def _raw_message_id(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    key = raw.get("key")
    if not isinstance(key, dict):
        return None
    message_id = key.get("id")
    return message_id if isinstance(message_id, str) else None


def ingest_message_events(
    store: EntityStore,
    raws: Iterable[Any],
    *,
    now: Callable[[], int] = epoch_seconds_now,
) -> BatchResult:
    """Normalize and persist a batch; one bad item never stops the rest."""
    result = BatchResult()
    for raw in raws:
        message_id = _raw_message_id(raw)
        try:
            message = normalize_message(raw, now)
        except InvalidPayloadError as exc:
            logger.warning(
                "skipping message with missing key fields",
                extra={"extra_fields": log_context(message_id=message_id, reason=str(exc))},
            )
            result.record(ItemOutcome.SKIPPED)
            continue

        try:
            outcome = ingest_message(store, message)
        except Exception:
            logger.exception(
                "failed to ingest message",
                extra={
                    "extra_fields": log_context(
                        message_id=message.message_id,
                        chat_id=message.chat_id,
                        kind=message.kind,
                    )
                },
            )
            result.record(ItemOutcome.FAILED, message.message_id)
            continue
        result.record(outcome)
    return result
