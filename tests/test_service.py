"""Tests for the live service and the one-shot history sync composition."""

import threading
from unittest.mock import patch

import pytest
from PIL import Image

from chatvault.connection.transport import TransportEvent, load_transport
from chatvault.infra.store import EntityType
from chatvault.ingestion.history import CompletionReason
from chatvault.operations.sync_history import run_sync
from chatvault.service import build_connection_manager, pairing_file_writer, run_service
from chatvault.settings import HistorySettings, Settings, WhatsAppSettings

from .helpers import FakeSession, FakeTransport, make_message

ALICE = "5511999990001@s.whatsapp.net"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _settings(tmp_path, **whatsapp):
    return Settings(
        whatsapp=WhatsAppSettings(session_dir=str(tmp_path / "auth"), **whatsapp),
        history=HistorySettings(idle_timeout_s=60, max_wait_s=600, poll_interval_s=1),
    )


class BackfillSession(FakeSession):
    """Delivers one complete history batch as soon as the importer subscribes."""

    def on(self, event, handler):
        super().on(event, handler)
        if event is TransportEvent.HISTORY_BATCH_RECEIVED:
            handler(
                {
                    "chats": [{"id": ALICE, "name": "Alice"}],
                    "contacts": [{"id": ALICE, "name": "Alice"}],
                    "messages": [make_message("H1", ALICE), make_message("H2", ALICE)],
                    "isLatest": True,
                }
            )


class TestLoadTransport:
    def test_import_path(self):
        assert isinstance(load_transport("tests.helpers:FakeTransport"), FakeTransport)

    def test_malformed_path(self):
        with pytest.raises(ValueError, match="module:callable"):
            load_transport("tests.helpers.FakeTransport")


class TestBuildConnectionManager:
    def test_requires_transport_factory(self, tmp_path):
        with pytest.raises(RuntimeError, match="TRANSPORT_FACTORY"):
            build_connection_manager(_settings(tmp_path))

    def test_credentials_persisted_to_session_dir(self, tmp_path, transport):
        manager = build_connection_manager(_settings(tmp_path), transport=transport)
        session = manager.connect()

        session.emit(TransportEvent.CREDENTIALS_UPDATED, {"me": {"id": ALICE}})
        manager.disconnect()

        assert (tmp_path / "auth" / "creds.json").exists()
        manager.connect()
        assert transport.latest.config.credentials == {"me": {"id": ALICE}}

    def test_pairing_file_written(self, tmp_path, transport):
        pairing = tmp_path / "pairing" / "qr.png"
        manager = build_connection_manager(
            _settings(tmp_path, pairing_file=str(pairing)), transport=transport
        )
        manager.connect().emit(TransportEvent.CONNECTION_STATE_CHANGED, {"qr": "2@abc"})

        assert pairing.read_bytes().startswith(PNG_SIGNATURE)


class TestPairingFileWriter:
    def test_renders_png_within_width(self, tmp_path):
        target = tmp_path / "qr.png"

        pairing_file_writer(str(target))("2@" + "A" * 80)

        with Image.open(target) as image:
            assert image.format == "PNG"
            assert image.width == image.height
            assert 500 < image.width <= 600

    def test_new_challenge_replaces_image(self, tmp_path):
        target = tmp_path / "qr.png"
        write = pairing_file_writer(str(target))

        write("2@first")
        first = target.read_bytes()
        write("2@second-challenge")

        assert target.read_bytes() != first
        assert target.read_bytes().startswith(PNG_SIGNATURE)


class TestRunService:
    def test_stop_requested(self, tmp_path, store, transport):
        stop = threading.Event()
        stop.set()

        assert run_service(_settings(tmp_path), stop, store=store, transport=transport) == 0
        assert transport.latest.ended

    def test_events_ingested_while_running(self, tmp_path, store, transport):
        stop = threading.Event()

        def deliver(_stop):
            session = transport.latest
            session.open()
            session.emit(TransportEvent.MESSAGES_RECEIVED, {"messages": [make_message("M1", ALICE)]})

        with patch("chatvault.service.wait_until", side_effect=deliver):
            assert run_service(_settings(tmp_path), stop, store=store, transport=transport) == 0

        assert store.get(EntityType.MESSAGE, message_id="M1") is not None

    def test_logged_out_exits_nonzero(self, tmp_path, store, transport):
        stop = threading.Event()

        def log_out(_stop):
            transport.latest.close(401)
            assert stop.is_set()

        with patch("chatvault.service.wait_until", side_effect=log_out):
            assert run_service(_settings(tmp_path), stop, store=store, transport=transport) == 1


class TestRunSync:
    def test_completes_on_latest(self, tmp_path, store, transport):
        transport.session_class = BackfillSession

        reason, progress, fatal = run_sync(
            _settings(tmp_path), threading.Event(), store=store, transport=transport
        )

        assert reason is CompletionReason.LATEST
        assert fatal is False
        assert progress.batches == 1
        assert progress.messages_stored == 2
        assert transport.latest.config.sync_full_history is True
        assert transport.latest.ended
        assert len(store.rows(EntityType.MESSAGE)) == 2

    def test_cancelled(self, tmp_path, store, transport):
        cancel = threading.Event()
        cancel.set()

        reason, progress, _ = run_sync(_settings(tmp_path), cancel, store=store, transport=transport)

        assert reason is CompletionReason.CANCELLED
        assert progress.batches == 0
        assert transport.latest.ended
