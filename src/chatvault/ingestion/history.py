"""Historical backfill import.

A backfill arrives as a sequence of messaging-history.set batches. For each
batch:

  1. chats and contacts are applied in ONE transaction (all or nothing);
  2. messages go through message ingestion in sub-batches of 100, outside
     any long-lived transaction, so a large backfill never holds row locks
     for its whole duration.

A failed chat/contact transaction aborts the batch (HistoryBatchError); the
batch can be redelivered safely since every write is find-or-create. A
failed message only affects itself.

The feed signals its end with isLatest. When that flag never comes, the
completion monitor falls back to an idle timeout and an absolute ceiling.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from chatvault.infra.store import EntityStore, EntityType
from chatvault.observability.logging import get_logger
from chatvault.whatsapp.models import HistoryBatch
from chatvault.whatsapp.normalizer import chat_kind_from_jid

from .messages import ingest_message_events
from .results import BatchResult

logger = get_logger(__name__)

SUB_BATCH_SIZE = 100
PROGRESS_LOG_INTERVAL = 500

Clock = Callable[[], float]


class HistoryBatchError(Exception):
    """The chat/contact transaction of a history batch failed and was rolled back."""

    pass


@dataclass
class HistoryProgress:
    """Running totals across every batch seen so far."""

    batches: int = 0
    chats: int = 0
    contacts: int = 0
    messages: int = 0
    messages_stored: int = 0
    messages_duplicate: int = 0
    messages_failed: int = 0
    failed_batches: int = 0

    def as_log_fields(self) -> dict[str, int]:
        return {
            "batches": self.batches,
            "chats": self.chats,
            "contacts": self.contacts,
            "messages": self.messages,
            "messages_stored": self.messages_stored,
            "messages_duplicate": self.messages_duplicate,
            "messages_failed": self.messages_failed,
            "failed_batches": self.failed_batches,
        }


@dataclass(frozen=True)
class BatchSummary:
    chats: int
    contacts: int
    messages: BatchResult
    is_latest: bool


def _apply_chats_and_contacts(tx: EntityStore, batch: HistoryBatch) -> tuple[int, int]:
    chats = 0
    for raw in batch.chats:
        chat_id = raw.get("id") if isinstance(raw, dict) else None
        if not chat_id:
            continue
        name = raw.get("name") or None
        chat, created = tx.find_or_create(
            EntityType.CHAT,
            {"chat_id": chat_id},
            {"kind": chat_kind_from_jid(chat_id).value, "name": name},
        )
        # never overwrite a name that is already set
        if not created and name and not chat.get("name"):
            tx.update(EntityType.CHAT, chat, {"name": name})
        chats += 1

    contacts = 0
    for raw in batch.contacts:
        contact_id = raw.get("id") if isinstance(raw, dict) else None
        if not contact_id:
            continue
        name = raw.get("name") or raw.get("notify") or None
        tx.find_or_create(EntityType.CONTACT, {"contact_id": contact_id}, {"name": name})
        contacts += 1

    return chats, contacts


class HistoryImporter:
    """Applies history batches and keeps the running totals.

    import_batch may be called from the transport's event thread while a
    CompletionMonitor reads progress from another one.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        sub_batch_size: int = SUB_BATCH_SIZE,
        clock: Clock = time.monotonic,
    ) -> None:
        self._store = store
        self._sub_batch_size = sub_batch_size
        self._clock = clock
        self._lock = threading.Lock()
        self._progress = HistoryProgress()
        self._next_progress_log = PROGRESS_LOG_INTERVAL
        self._last_batch_at: float | None = None
        self._latest = threading.Event()

    @property
    def progress(self) -> HistoryProgress:
        """Snapshot of the running totals."""
        with self._lock:
            return replace(self._progress)

    @property
    def last_batch_at(self) -> float | None:
        return self._last_batch_at

    @property
    def latest_received(self) -> bool:
        return self._latest.is_set()

    def handle_event(self, event: Any) -> BatchSummary | None:
        """messaging-history.set handler; batch errors are logged, not raised."""
        batch = event if isinstance(event, HistoryBatch) else HistoryBatch.from_event(event or {})
        try:
            return self.import_batch(batch)
        except HistoryBatchError:
            logger.exception("history batch aborted, awaiting redelivery")
            return None

    def import_batch(self, batch: HistoryBatch) -> BatchSummary:
        """Import one batch.

        Raises:
            HistoryBatchError: If the chat/contact transaction failed.
        """
        with self._lock:
            self._progress.batches += 1
            self._last_batch_at = self._clock()
            batch_number = self._progress.batches

        logger.info(
            "processing history sync batch",
            extra={
                "extra_fields": {
                    "batch": batch_number,
                    "chat_count": len(batch.chats),
                    "contact_count": len(batch.contacts),
                    "message_count": len(batch.messages),
                    "is_latest": batch.is_latest,
                }
            },
        )

        try:
            chats, contacts = self._store.run_in_transaction(
                lambda tx: _apply_chats_and_contacts(tx, batch)
            )
        except Exception as exc:
            with self._lock:
                self._progress.failed_batches += 1
            raise HistoryBatchError(
                f"history batch {batch_number}: chat/contact transaction rolled back"
            ) from exc

        with self._lock:
            self._progress.chats += chats
            self._progress.contacts += contacts

        messages = BatchResult()
        for start in range(0, len(batch.messages), self._sub_batch_size):
            chunk = batch.messages[start : start + self._sub_batch_size]
            result = ingest_message_events(self._store, chunk)
            messages.merge(result)
            self._record_messages(len(chunk), result)

        logger.info(
            "history batch processed",
            extra={
                "extra_fields": {
                    "batch": batch_number,
                    "chats": chats,
                    "contacts": contacts,
                    **messages.as_log_fields(),
                }
            },
        )

        if batch.is_latest:
            self._latest.set()
            logger.info(
                "history sync complete (isLatest=true)",
                extra={"extra_fields": self.progress.as_log_fields()},
            )

        return BatchSummary(
            chats=chats, contacts=contacts, messages=messages, is_latest=batch.is_latest
        )

    def _record_messages(self, count: int, result: BatchResult) -> None:
        with self._lock:
            self._progress.messages += count
            self._progress.messages_stored += result.applied
            self._progress.messages_duplicate += result.duplicates
            self._progress.messages_failed += result.failed
            if self._progress.messages < self._next_progress_log:
                return
            while self._next_progress_log <= self._progress.messages:
                self._next_progress_log += PROGRESS_LOG_INTERVAL
            fields = self._progress.as_log_fields()
        logger.info("history sync progress", extra={"extra_fields": fields})

    def log_progress(self) -> None:
        logger.info("history sync progress", extra={"extra_fields": self.progress.as_log_fields()})


class CompletionReason(str, Enum):
    LATEST = "latest"
    IDLE_TIMEOUT = "idle_timeout"
    MAX_WAIT = "max_wait"
    CANCELLED = "cancelled"


class CompletionMonitor:
    """Decides when a backfill is over.

    isLatest wins. Without it, the import is declared complete after
    idle_timeout_s with no batch (counted from the start until the first
    batch arrives) or after max_wait_s in total. Both are heuristics: the
    feed's cadence is not documented.
    """

    def __init__(
        self,
        importer: HistoryImporter,
        *,
        idle_timeout_s: float,
        max_wait_s: float,
        poll_interval_s: float = 10.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if idle_timeout_s <= 0 or max_wait_s <= 0:
            raise ValueError("idle_timeout_s and max_wait_s must be positive")
        self._importer = importer
        self._idle_timeout_s = idle_timeout_s
        self._max_wait_s = max_wait_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock

    def check(self, started_at: float) -> CompletionReason | None:
        """One evaluation; None means keep waiting."""
        if self._importer.latest_received:
            return CompletionReason.LATEST
        now = self._clock()
        if now - started_at >= self._max_wait_s:
            return CompletionReason.MAX_WAIT
        last = self._importer.last_batch_at
        idle_since = started_at if last is None else max(last, started_at)
        if now - idle_since >= self._idle_timeout_s:
            return CompletionReason.IDLE_TIMEOUT
        return None

    def wait(self, cancel: threading.Event | None = None) -> CompletionReason:
        """Block until the backfill is considered complete or cancel is set."""
        cancel = cancel or threading.Event()
        started_at = self._clock()
        while True:
            if cancel.is_set():
                reason = CompletionReason.CANCELLED
                break
            reason = self.check(started_at)
            if reason is not None:
                break
            if self._importer.progress.batches:
                self._importer.log_progress()
            cancel.wait(self._poll_interval_s)

        fields = {"reason": reason.value, **self._importer.progress.as_log_fields()}
        if reason is CompletionReason.MAX_WAIT:
            logger.warning("history sync timed out after max wait", extra={"extra_fields": fields})
        else:
            logger.info("history sync finished", extra={"extra_fields": fields})
        return reason
