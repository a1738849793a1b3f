"""Tests for chat, contact, group and participant updates."""

from datetime import datetime, timezone

from chatvault.infra.store import EntityType
from chatvault.ingestion.results import ItemOutcome
from chatvault.ingestion.updates import (
    apply_chat_updates,
    apply_contact_update,
    apply_contact_updates,
    apply_group_updates,
    apply_participants_update,
)
from chatvault.whatsapp.normalizer import normalize_contact_update

ALICE = "5511999990001@s.whatsapp.net"
BOB = "5511999990002@s.whatsapp.net"
CAROL = "5511999990003@s.whatsapp.net"
GROUP_JID = "120363000000000001@g.us"

FIXED_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _participant(store, participant_id):
    group_chat = store.get(EntityType.CHAT, chat_id=GROUP_JID)
    group = store.get(EntityType.GROUP_METADATA, chat_pk=group_chat["id"])
    return store.get(
        EntityType.GROUP_PARTICIPANT, group_metadata_id=group["id"], participant_id=participant_id
    )


class TestContactUpdates:
    """Contact names: last writer wins, null never clears."""

    def test_name_sequence(self, store):
        apply_contact_updates(store, [{"id": ALICE, "name": "Alice"}])
        apply_contact_updates(store, [{"id": ALICE, "name": None}])
        assert store.get(EntityType.CONTACT, contact_id=ALICE)["name"] == "Alice"

        apply_contact_updates(store, [{"id": ALICE, "name": "Alicia"}])
        assert store.get(EntityType.CONTACT, contact_id=ALICE)["name"] == "Alicia"

    def test_change_moves_last_seen(self, store):
        apply_contact_updates(store, [{"id": ALICE, "name": "Alice"}])
        outcome = apply_contact_update(
            store, normalize_contact_update({"id": ALICE, "name": "Alicia"}), now=lambda: FIXED_NOW
        )

        assert outcome is ItemOutcome.APPLIED
        assert store.get(EntityType.CONTACT, contact_id=ALICE)["last_seen_at"] == FIXED_NOW

    def test_unchanged_is_duplicate(self, store):
        apply_contact_updates(store, [{"id": ALICE, "name": "Alice"}])
        result = apply_contact_updates(store, [{"id": ALICE, "name": "Alice"}])
        assert result.duplicates == 1
        assert store.get(EntityType.CONTACT, contact_id=ALICE)["last_seen_at"] is None

    def test_item_without_id_skipped(self, store):
        result = apply_contact_updates(store, [{"name": "ghost"}, {"id": BOB, "name": "Bob"}])
        assert (result.skipped, result.applied) == (1, 1)

    def test_failure_isolated(self, store):
        store.fail_on(EntityType.CONTACT, {"contact_id": ALICE})
        result = apply_contact_updates(
            store, [{"id": ALICE, "name": "Alice"}, {"id": BOB, "name": "Bob"}]
        )
        assert result.failed_ids == [ALICE]
        assert store.get(EntityType.CONTACT, contact_id=BOB)["name"] == "Bob"


class TestChatUpdates:
    def test_unknown_chat_created_with_fields(self, store):
        result = apply_chat_updates(store, [{"id": ALICE, "pin": 1700000000, "mute": 0}])

        assert result.applied == 1
        chat = store.get(EntityType.CHAT, chat_id=ALICE)
        assert chat["kind"] == "private"
        assert chat["is_pinned"] is True
        assert chat["is_muted"] is False

    def test_kind_derived_once_at_creation(self, store):
        apply_chat_updates(store, [{"id": "status@broadcast", "archive": True}])
        apply_chat_updates(store, [{"id": "status@broadcast", "name": "Status"}])

        chat = store.get(EntityType.CHAT, chat_id="status@broadcast")
        assert chat["kind"] == "broadcast"
        assert chat["name"] == "Status"

    def test_only_present_fields_written(self, store):
        apply_chat_updates(store, [{"id": ALICE, "name": "Alice", "archive": True}])
        apply_chat_updates(store, [{"id": ALICE, "pin": 0}])

        chat = store.get(EntityType.CHAT, chat_id=ALICE)
        assert chat["name"] == "Alice"
        assert chat["is_archived"] is True
        assert chat["is_pinned"] is False

    def test_explicit_null_name_clears_stored(self, store):
        apply_chat_updates(store, [{"id": ALICE, "name": "Alice"}])
        result = apply_chat_updates(store, [{"id": ALICE, "name": None}])

        assert result.applied == 1
        assert store.get(EntityType.CHAT, chat_id=ALICE)["name"] is None

    def test_absent_name_keeps_stored(self, store):
        apply_chat_updates(store, [{"id": ALICE, "name": "Alice"}])
        apply_chat_updates(store, [{"id": ALICE, "archive": True}])

        assert store.get(EntityType.CHAT, chat_id=ALICE)["name"] == "Alice"


class TestGroupUpdates:
    def test_subject_renames_chat(self, store):
        apply_group_updates(store, [{"id": GROUP_JID, "subject": "Family", "announce": True}])

        chat = store.get(EntityType.CHAT, chat_id=GROUP_JID)
        group = store.get(EntityType.GROUP_METADATA, chat_pk=chat["id"])
        assert chat["kind"] == "group"
        assert chat["name"] == "Family"
        assert group["subject"] == "Family"
        assert group["announce"] is True

    def test_roster_synced(self, store):
        apply_group_updates(
            store,
            [
                {
                    "id": GROUP_JID,
                    "participants": [{"id": ALICE, "admin": "superadmin"}, {"id": BOB}],
                }
            ],
        )

        assert _participant(store, ALICE)["role"] == "super_admin"
        assert _participant(store, BOB)["role"] == "member"
        assert _participant(store, BOB)["is_active"] is True

    def test_repeat_is_duplicate(self, store):
        apply_group_updates(store, [{"id": GROUP_JID, "desc": "notes"}])
        result = apply_group_updates(store, [{"id": GROUP_JID, "desc": "notes"}])
        assert result.duplicates == 1


class TestParticipantsUpdate:
    """Membership actions on the group roster."""

    def _event(self, action, *participants):
        return {"id": GROUP_JID, "participants": list(participants), "action": action}

    def test_add_promote_demote_remove(self, store):
        apply_participants_update(store, self._event("add", ALICE, BOB))
        assert _participant(store, ALICE)["role"] == "member"

        apply_participants_update(store, self._event("promote", ALICE))
        assert _participant(store, ALICE)["role"] == "admin"

        apply_participants_update(store, self._event("demote", ALICE))
        assert _participant(store, ALICE)["role"] == "member"

        result = apply_participants_update(store, self._event("remove", BOB))
        assert result.applied == 1
        bob = _participant(store, BOB)
        assert bob["is_active"] is False
        assert bob["removed_at"] is not None

    def test_readd_reactivates(self, store):
        apply_participants_update(store, self._event("add", BOB))
        apply_participants_update(store, self._event("remove", BOB))

        apply_participants_update(store, self._event("add", BOB))

        bob = _participant(store, BOB)
        assert bob["is_active"] is True
        assert bob["removed_at"] is None
        assert len(store.rows(EntityType.GROUP_PARTICIPANT)) == 1

    def test_action_on_absent_participant_ignored(self, store):
        apply_participants_update(store, self._event("promote", CAROL))
        apply_participants_update(store, self._event("remove", CAROL))
        assert _participant(store, CAROL) is None

    def test_unknown_action_skipped(self, store):
        result = apply_participants_update(store, self._event("modify", ALICE))

        assert result.skipped == 1
        assert store.rows(EntityType.GROUP_PARTICIPANT) == []

    def test_failure_isolated_per_participant(self, store):
        apply_participants_update(store, self._event("add", ALICE, BOB))
        group_chat = store.get(EntityType.CHAT, chat_id=GROUP_JID)
        group = store.get(EntityType.GROUP_METADATA, chat_pk=group_chat["id"])
        store.fail_on(
            EntityType.GROUP_PARTICIPANT,
            {"group_metadata_id": group["id"], "participant_id": ALICE},
        )

        result = apply_participants_update(store, self._event("promote", ALICE, BOB))

        assert result.failed_ids == [ALICE]
        assert result.applied == 1
        assert _participant(store, BOB)["role"] == "admin"

    def test_missing_group_id_skipped(self, store):
        result = apply_participants_update(store, {"participants": [ALICE], "action": "add"})
        assert result.skipped == 1
