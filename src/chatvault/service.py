"""Live ingestion service - composition root.

Wires settings -> entity store -> ingestion pipeline -> connection manager,
keeps the transport connected and shuts down on SIGINT/SIGTERM or on a
terminal connection condition (logged out, reconnect budget spent).
"""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Callable

import qrcode

from chatvault.connection.credentials import FileCredentialStore
from chatvault.connection.errors import ConnectionFatalError
from chatvault.connection.manager import ConnectionManager
from chatvault.connection.transport import Transport, load_transport
from chatvault.infra.db import create_pool
from chatvault.infra.store import EntityStore, PostgresStore
from chatvault.ingestion.pipeline import IngestionPipeline
from chatvault.observability.logging import get_logger
from chatvault.settings import Settings, load_settings

logger = get_logger(__name__)

# Poll interval of the main thread while waiting for a stop signal
_WAIT_SLICE_S = 1.0

PAIRING_QR_WIDTH_PX = 600


def pairing_file_writer(path: str, width: int = PAIRING_QR_WIDTH_PX) -> Callable[[str], None]:
    """Pairing-challenge callback that renders the QR string to a PNG file."""
    target = Path(path)

    def write(challenge: str) -> None:
        qr = qrcode.QRCode(border=4)
        qr.add_data(challenge)
        qr.make(fit=True)
        # largest whole-pixel module size that keeps the image within width
        qr.box_size = max(1, width // (qr.modules_count + 2 * qr.border))
        target.parent.mkdir(parents=True, exist_ok=True)
        qr.make_image().save(target)
        logger.info(
            "pairing QR code saved as PNG, scan it to link the account",
            extra={"extra_fields": {"path": str(target)}},
        )

    return write


def build_store(settings: Settings) -> PostgresStore:
    pool = create_pool(settings.database.pool_min, settings.database.pool_max)
    return PostgresStore(pool)


def build_connection_manager(
    settings: Settings,
    *,
    transport: Transport | None = None,
    on_fatal: Callable[[ConnectionFatalError], None] | None = None,
) -> ConnectionManager:
    """ConnectionManager with file-backed credentials.

    Raises:
        RuntimeError: If no transport is given and TRANSPORT_FACTORY is unset.
    """
    if transport is None:
        if not settings.whatsapp.transport_factory:
            raise RuntimeError("TRANSPORT_FACTORY environment variable not set")
        transport = load_transport(settings.whatsapp.transport_factory)

    credentials = FileCredentialStore(settings.whatsapp.session_dir)
    pairing_file = settings.whatsapp.pairing_file
    return ConnectionManager(
        transport,
        save_credentials=credentials.save,
        load_credentials=credentials.load,
        on_fatal=on_fatal,
        on_pairing_challenge=pairing_file_writer(pairing_file) if pairing_file else None,
        sync_full_history=settings.whatsapp.sync_full_history,
    )


def install_signal_handlers(stop: threading.Event) -> None:
    """Set stop on SIGINT/SIGTERM (main thread only)."""

    def handle(signum: int, _frame: object) -> None:
        logger.info("shutdown signal received", extra={"extra_fields": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def wait_until(stop: threading.Event) -> None:
    # sliced so signal handlers get to run on the main thread
    while not stop.wait(_WAIT_SLICE_S):
        pass


def run_service(
    settings: Settings,
    stop: threading.Event,
    *,
    store: EntityStore | None = None,
    transport: Transport | None = None,
) -> int:
    """Run until stop is set or the connection fails terminally.

    Returns:
        Process exit code: 0 on requested shutdown, 1 on a terminal
        connection condition.
    """
    owned_store = store is None
    if store is None:
        store = build_store(settings)

    pipeline = IngestionPipeline(store)
    manager = build_connection_manager(
        settings, transport=transport, on_fatal=lambda _error: stop.set()
    )
    pipeline.register(manager)

    try:
        manager.connect()
        logger.info("ingestion service started")
        wait_until(stop)
    finally:
        manager.disconnect()
        if owned_store:
            store.close()

    if manager.fatal_error is not None:
        logger.error(
            "ingestion service stopped on a terminal connection condition",
            extra={"extra_fields": {"error": type(manager.fatal_error).__name__}},
        )
        return 1
    logger.info("ingestion service stopped")
    return 0


def main() -> int:
    settings = load_settings()
    stop = threading.Event()
    install_signal_handlers(stop)
    return run_service(settings, stop)


if __name__ == "__main__":
    raise SystemExit(main())
