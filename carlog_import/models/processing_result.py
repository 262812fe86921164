from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

"""Result models for import reconciliation and bulk field-edit saves.

Every batch-shaped operation returns one of the summaries below: counts plus
the per-row (or per-patch) detail list, even when some rows failed.
"""

__all__ = [
    "ImportAction",
    "RowOutcome",
    "ImportSummary",
    "PatchResult",
    "BulkUpdateSummary",
]


class ImportAction(Enum):
    """Outcome of reconciling one normalized row.

    - CREATED: a new record was inserted (supplied or allocated key)
    - UPDATED: an existing record was patched with the row's fields
    - FAILED: the row contributed no record (duplicate key, store error, cancel)
    """
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(frozen=True)
class RowOutcome:
    success: bool
    row_index: int  # 0-based position in the normalized row sequence
    action: ImportAction
    internal_car_number: str | None = None
    error: str | None = None
    error_type: str | None = None  # DUPLICATE_KEY / STORE_ERROR / CANCELLED

    def to_dict(self) -> dict[str, object]:
        doc: dict[str, object] = {
            "success": self.success,
            "rowIndex": self.row_index,
            "action": self.action.value,
        }
        if self.internal_car_number is not None:
            doc["internalCarNumber"] = self.internal_car_number
        if self.error is not None:
            doc["error"] = self.error
        return doc


@dataclass(frozen=True)
class ImportSummary:
    """Aggregated reconciliation result.

    Invariant: ``created + updated + failed == total == len(outcomes)``.
    """
    total: int
    created: int
    updated: int
    failed: int
    outcomes: list[RowOutcome] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failures(self) -> list[RowOutcome]:
        return [o for o in self.outcomes if not o.success]

    @staticmethod
    def from_outcomes(
        outcomes: list[RowOutcome],
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> ImportSummary:
        ordered = sorted(outcomes, key=lambda o: o.row_index)
        return ImportSummary(
            total=len(ordered),
            created=sum(1 for o in ordered if o.action is ImportAction.CREATED),
            updated=sum(1 for o in ordered if o.action is ImportAction.UPDATED),
            failed=sum(1 for o in ordered if o.action is ImportAction.FAILED),
            outcomes=ordered,
            start_time=start_time,
            end_time=end_time,
        )


@dataclass(frozen=True)
class PatchResult:
    """Result of saving one record's pending field edits.

    ``conflict`` is set when the stored record was modified after the editor
    loaded it; the caller should reload rather than resubmit.
    """
    success: bool
    id: str
    conflict: bool = False
    error: str | None = None


@dataclass(frozen=True)
class BulkUpdateSummary:
    results: list[PatchResult] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def conflicts(self) -> list[PatchResult]:
        return [r for r in self.results if r.conflict]
