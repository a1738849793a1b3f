"""Per-batch ingestion counters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ItemOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BatchResult:
    """Outcome counts of one batch; failed_ids lists ids to re-drive by hand."""

    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.applied + self.duplicates + self.skipped + self.failed

    def record(self, outcome: ItemOutcome, item_id: str | None = None) -> None:
        if outcome is ItemOutcome.APPLIED:
            self.applied += 1
        elif outcome is ItemOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is ItemOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            if item_id:
                self.failed_ids.append(item_id)

    def merge(self, other: BatchResult) -> None:
        self.applied += other.applied
        self.duplicates += other.duplicates
        self.skipped += other.skipped
        self.failed += other.failed
        self.failed_ids.extend(other.failed_ids)

    def as_log_fields(self) -> dict[str, int]:
        return {
            "applied": self.applied,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": self.failed,
        }
