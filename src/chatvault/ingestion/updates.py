"""Chat, contact and group metadata updates.

Only fields present in an incoming delta are written; everything else keeps
its stored value. Chats and group metadata for ids not seen before are
created on the spot. Participant removal is a soft delete.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

from chatvault.infra.store import EntityStore, EntityType, Row
from chatvault.infra.time import utc_now
from chatvault.observability.logging import get_logger
from chatvault.observability.redaction import log_context
from chatvault.whatsapp.models import (
    ChatDelta,
    ContactDelta,
    GroupDelta,
    ParticipantAction,
    ParticipantRole,
    ParticipantsEvent,
    ParticipantState,
)
from chatvault.whatsapp.normalizer import (
    InvalidPayloadError,
    chat_kind_from_jid,
    normalize_chat_update,
    normalize_contact_update,
    normalize_group_update,
    normalize_participants_event,
)

from .results import BatchResult, ItemOutcome

logger = get_logger(__name__)

D = TypeVar("D")

Clock = Callable[[], datetime]


def ensure_chat(store: EntityStore, chat_id: str, defaults: dict[str, Any] | None = None) -> tuple[Row, bool]:
    """find-or-create a chat; kind is derived from the id once, at creation."""
    return store.find_or_create(
        EntityType.CHAT,
        {"chat_id": chat_id},
        {"kind": chat_kind_from_jid(chat_id).value, **(defaults or {})},
    )


def ensure_group(store: EntityStore, group_id: str) -> tuple[Row, Row]:
    """Chat and group_metadata rows of a group, created if absent."""
    chat, _ = ensure_chat(store, group_id)
    group, _ = store.find_or_create(EntityType.GROUP_METADATA, {"chat_pk": chat["id"]})
    return chat, group


def _changed(row: Row, changes: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in changes.items() if row.get(key) != value}


def apply_chat_update(store: EntityStore, delta: ChatDelta) -> ItemOutcome:
    chat, created = ensure_chat(store, delta.chat_id, delta.changes)
    if created:
        return ItemOutcome.APPLIED
    changes = _changed(chat, delta.changes)
    if not changes:
        return ItemOutcome.DUPLICATE
    store.update(EntityType.CHAT, chat, changes)
    logger.info(
        "chat updated",
        extra={"extra_fields": log_context(chat_id=delta.chat_id, fields=sorted(changes))},
    )
    return ItemOutcome.APPLIED


def apply_contact_update(
    store: EntityStore, delta: ContactDelta, *, now: Clock = utc_now
) -> ItemOutcome:
    """Last writer wins for every supplied field; last_seen_at moves on change."""
    contact, created = store.find_or_create(
        EntityType.CONTACT, {"contact_id": delta.contact_id}, delta.changes
    )
    if created:
        logger.info(
            "contact created",
            extra={"extra_fields": log_context(contact_id=delta.contact_id)},
        )
        return ItemOutcome.APPLIED

    changes = _changed(contact, delta.changes)
    if not changes:
        return ItemOutcome.DUPLICATE
    store.update(EntityType.CONTACT, contact, {**changes, "last_seen_at": now()})
    logger.info(
        "contact updated",
        extra={"extra_fields": log_context(contact_id=delta.contact_id, fields=sorted(changes))},
    )
    return ItemOutcome.APPLIED


def sync_participant(
    store: EntityStore, group: Row, state: ParticipantState, *, now: Clock = utc_now
) -> Row:
    """Make a roster entry active with the given role."""
    key = {"group_metadata_id": group["id"], "participant_id": state.participant_id}
    row, created = store.find_or_create(
        EntityType.GROUP_PARTICIPANT,
        key,
        {"role": state.role.value, "is_active": True, "added_at": now()},
    )
    if created:
        return row

    fields: dict[str, Any] = {}
    if row.get("role") != state.role.value:
        fields["role"] = state.role.value
    if not row.get("is_active"):
        fields.update(is_active=True, added_at=now(), removed_at=None)
    return store.update(EntityType.GROUP_PARTICIPANT, row, fields) if fields else row


def apply_group_update(
    store: EntityStore, delta: GroupDelta, *, now: Clock = utc_now
) -> ItemOutcome:
    chat, group = ensure_group(store, delta.group_id)

    changes = _changed(group, delta.changes)
    if changes:
        store.update(EntityType.GROUP_METADATA, group, changes)
        logger.info(
            "group metadata updated",
            extra={"extra_fields": log_context(group_id=delta.group_id, fields=sorted(changes))},
        )

    subject = delta.changes.get("subject")
    if subject and chat.get("name") != subject:
        store.update(EntityType.CHAT, chat, {"name": subject})

    if delta.participants is not None:
        for state in delta.participants:
            sync_participant(store, group, state, now=now)

    return ItemOutcome.APPLIED if changes or delta.participants else ItemOutcome.DUPLICATE


def _apply_action(
    store: EntityStore,
    group: Row,
    participant_id: str,
    action: ParticipantAction,
    now: Clock,
) -> None:
    if action is ParticipantAction.ADD:
        sync_participant(store, group, ParticipantState(participant_id), now=now)
        return

    key = {"group_metadata_id": group["id"], "participant_id": participant_id}
    row = store.find_by_unique_key(EntityType.GROUP_PARTICIPANT, key)
    if row is None:
        logger.debug(
            "participant not on roster, action ignored",
            extra={"extra_fields": log_context(participant_id=participant_id, action=action)},
        )
        return

    if action is ParticipantAction.REMOVE:
        if row.get("is_active"):
            store.update(
                EntityType.GROUP_PARTICIPANT, row, {"is_active": False, "removed_at": now()}
            )
    elif action is ParticipantAction.PROMOTE:
        store.update(EntityType.GROUP_PARTICIPANT, row, {"role": ParticipantRole.ADMIN.value})
    elif action is ParticipantAction.DEMOTE:
        store.update(EntityType.GROUP_PARTICIPANT, row, {"role": ParticipantRole.MEMBER.value})


def apply_participants_event(
    store: EntityStore, event: ParticipantsEvent, *, now: Clock = utc_now
) -> BatchResult:
    """Apply one membership change; each participant is its own item."""
    result = BatchResult()
    try:
        action = ParticipantAction(event.action)
    except ValueError:
        logger.warning(
            "unknown participant action",
            extra={"extra_fields": log_context(group_id=event.group_id, action=event.action)},
        )
        result.record(ItemOutcome.SKIPPED)
        return result

    _, group = ensure_group(store, event.group_id)
    for participant_id in event.participant_ids:
        try:
            _apply_action(store, group, participant_id, action, now)
        except Exception:
            logger.exception(
                "failed to process participant update",
                extra={
                    "extra_fields": log_context(
                        group_id=event.group_id, participant_id=participant_id, action=action
                    )
                },
            )
            result.record(ItemOutcome.FAILED, participant_id)
            continue
        result.record(ItemOutcome.APPLIED)

    logger.info(
        "group participants updated",
        extra={
            "extra_fields": {
                **log_context(group_id=event.group_id, action=action),
                **result.as_log_fields(),
            }
        },
    )
    return result


def apply_each(
    store: EntityStore,
    raws: Iterable[Any],
    normalize: Callable[[Any], D],
    apply: Callable[[EntityStore, D], ItemOutcome],
    *,
    label: str,
) -> BatchResult:
    """Run normalize + apply per item, isolating failures per item."""
    result = BatchResult()
    for raw in raws:
        item_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            delta = normalize(raw)
        except InvalidPayloadError as exc:
            logger.warning(
                f"skipping {label} update",
                extra={"extra_fields": log_context(reason=str(exc))},
            )
            result.record(ItemOutcome.SKIPPED)
            continue
        try:
            outcome = apply(store, delta)
        except Exception:
            logger.exception(
                f"failed to process {label} update",
                extra={"extra_fields": log_context(external_id=item_id)},
            )
            result.record(ItemOutcome.FAILED, item_id)
            continue
        result.record(outcome)
    return result


def apply_chat_updates(store: EntityStore, raws: Iterable[Any]) -> BatchResult:
    return apply_each(store, raws, normalize_chat_update, apply_chat_update, label="chat")


def apply_contact_updates(store: EntityStore, raws: Iterable[Any]) -> BatchResult:
    return apply_each(store, raws, normalize_contact_update, apply_contact_update, label="contact")


def apply_group_updates(store: EntityStore, raws: Iterable[Any]) -> BatchResult:
    return apply_each(store, raws, normalize_group_update, apply_group_update, label="group")


def apply_participants_update(store: EntityStore, raw: Any) -> BatchResult:
    """Normalize and apply a group-participants.update event."""
    try:
        event = normalize_participants_event(raw if isinstance(raw, dict) else {})
    except InvalidPayloadError as exc:
        logger.warning(
            "skipping participants update",
            extra={"extra_fields": log_context(reason=str(exc))},
        )
        result = BatchResult()
        result.record(ItemOutcome.SKIPPED)
        return result
    return apply_participants_event(store, event)
