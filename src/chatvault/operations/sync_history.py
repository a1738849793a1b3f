"""One-shot historical backfill.

Connects with full history sync, imports every history batch, also stores
live events arriving meanwhile, and disconnects once the backfill is
complete (isLatest, idle timeout or max wait) or on SIGINT/SIGTERM.

Usage:
    DATABASE_URL=... TRANSPORT_FACTORY=pkg.module:factory chatvault-sync-history
"""

from __future__ import annotations

import threading

from chatvault.connection.manager import ConnectOptions
from chatvault.connection.transport import Transport
from chatvault.infra.store import EntityStore
from chatvault.ingestion.history import CompletionMonitor, CompletionReason, HistoryProgress
from chatvault.ingestion.pipeline import IngestionPipeline
from chatvault.observability.logging import get_logger
from chatvault.service import build_connection_manager, build_store, install_signal_handlers
from chatvault.settings import Settings, load_settings

logger = get_logger(__name__)


def run_sync(
    settings: Settings,
    cancel: threading.Event,
    *,
    store: EntityStore | None = None,
    transport: Transport | None = None,
) -> tuple[CompletionReason, HistoryProgress, bool]:
    """Run a backfill to completion.

    Returns:
        Tuple of (completion reason, final totals, whether the connection
        ended on a terminal condition).
    """
    owned_store = store is None
    if store is None:
        store = build_store(settings)

    pipeline = IngestionPipeline(store)
    manager = build_connection_manager(
        settings, transport=transport, on_fatal=lambda _error: cancel.set()
    )
    pipeline.register(manager)
    monitor = CompletionMonitor(
        pipeline.history,
        idle_timeout_s=settings.history.idle_timeout_s,
        max_wait_s=settings.history.max_wait_s,
        poll_interval_s=settings.history.poll_interval_s,
    )

    logger.info("starting historical message sync")
    try:
        manager.connect(ConnectOptions(sync_full_history=True))
        reason = monitor.wait(cancel)
    finally:
        manager.disconnect()
        if owned_store:
            store.close()

    return reason, pipeline.history.progress, manager.fatal_error is not None


def main() -> int:
    settings = load_settings()
    cancel = threading.Event()
    install_signal_handlers(cancel)

    reason, progress, fatal = run_sync(settings, cancel)

    print()
    print("=== History Sync Complete ===")
    print(f"  reason:    {reason.value}")
    print(f"  batches:   {progress.batches}")
    print(f"  chats:     {progress.chats}")
    print(f"  contacts:  {progress.contacts}")
    print(f"  messages:  {progress.messages} ({progress.messages_stored} new, "
          f"{progress.messages_duplicate} duplicate, {progress.messages_failed} failed)")
    if progress.failed_batches:
        print(f"  failed batches: {progress.failed_batches}")
    print()

    return 1 if fatal else 0


if __name__ == "__main__":
    raise SystemExit(main())
