from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..excel.coercion import is_blank
from ..excel.normalizer import coercer_for
from ..models.processing_result import BulkUpdateSummary, PatchResult
from ..models.record import CANONICAL_FIELDS, parse_timestamp
from ..store.base import ConflictError, RecordNotFoundError, RecordStore, StoreError

"""Bulk field-edit saves.

Pending edits live in an explicit PatchSet value owned by the caller: one
entry per record id holding the changed fields and the ``updated_at`` the
editor saw when the record was loaded. Nothing is written until the set is
saved; each record is then patched independently, and a record modified by
someone else in the meantime is reported as a conflict instead of being
overwritten.
"""

__all__ = [
    "RecordPatch",
    "PatchSet",
    "coerce_patch_value",
    "apply_patches",
    "save_patch_set",
]

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Record was modified by another user"
NOT_FOUND_MESSAGE = "Record not found"


@dataclass(frozen=True)
class RecordPatch:
    id: str
    changes: dict[str, Any]
    expected_updated_at: datetime | None = None


def coerce_patch_value(field_name: str, value: Any) -> Any:
    """Coerce an edited cell value to its field type.

    Blank input clears the field (returns None).

    Raises:
        ValueError: unknown field, or a non-blank value that does not parse
    """
    if field_name not in CANONICAL_FIELDS:
        raise ValueError(f"unknown field: {field_name}")
    if is_blank(value):
        return None
    coerced = coercer_for(field_name)(value)
    if coerced is None:
        raise ValueError(f"invalid value for {field_name}: {value!r}")
    return coerced


@dataclass
class _PendingEdit:
    fields: dict[str, Any] = field(default_factory=dict)
    expected_updated_at: datetime | None = None


class PatchSet:
    """Pending edits keyed by record id."""

    def __init__(self) -> None:
        self._edits: dict[str, _PendingEdit] = {}

    def set_field(
        self,
        record_id: str,
        field_name: str,
        value: Any,
        seen_updated_at: datetime | str | None = None,
    ) -> None:
        """Stage one field edit.

        ``seen_updated_at`` is kept from the first edit of a record; later
        edits of the same record do not move it forward.
        """
        coerced = coerce_patch_value(field_name, value)
        edit = self._edits.get(record_id)
        if edit is None:
            edit = _PendingEdit(expected_updated_at=parse_timestamp(seen_updated_at))
            self._edits[record_id] = edit
        edit.fields[field_name] = coerced

    def pending_value(self, record_id: str, field_name: str, default: Any = None) -> Any:
        edit = self._edits.get(record_id)
        if edit is None or field_name not in edit.fields:
            return default
        return edit.fields[field_name]

    def discard(self, record_id: str | None = None) -> None:
        """Drop pending edits for one record, or all of them."""
        if record_id is None:
            self._edits.clear()
        else:
            self._edits.pop(record_id, None)

    def is_empty(self) -> bool:
        return not self._edits

    def __len__(self) -> int:
        return len(self._edits)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._edits

    def patches(self) -> list[RecordPatch]:
        return [
            RecordPatch(id=record_id, changes=dict(edit.fields), expected_updated_at=edit.expected_updated_at)
            for record_id, edit in self._edits.items()
        ]

    @classmethod
    def from_patches(cls, patches: Iterable[RecordPatch]) -> PatchSet:
        patch_set = cls()
        for patch in patches:
            patch_set._edits[patch.id] = _PendingEdit(dict(patch.changes), patch.expected_updated_at)
        return patch_set


def _apply_one(store: RecordStore, patch: RecordPatch) -> PatchResult:
    try:
        store.update_record(patch.id, patch.changes, expected_updated_at=patch.expected_updated_at)
    except ConflictError:
        logger.warning(f"record {patch.id}: modified by another user, not saved")
        return PatchResult(success=False, id=patch.id, conflict=True, error=CONFLICT_MESSAGE)
    except RecordNotFoundError:
        logger.warning(f"record {patch.id}: not found")
        return PatchResult(success=False, id=patch.id, error=NOT_FOUND_MESSAGE)
    except StoreError as e:
        logger.error(f"record {patch.id}: {e}")
        return PatchResult(success=False, id=patch.id, error=str(e))
    except Exception as e:
        # unexpected driver errors stay scoped to their patch
        logger.exception(f"record {patch.id}: unexpected store failure")
        return PatchResult(success=False, id=patch.id, error=str(e) or type(e).__name__)
    return PatchResult(success=True, id=patch.id)


def _patch_from_document(item: Mapping[str, Any]) -> RecordPatch:
    if "id" not in item or is_blank(item["id"]):
        raise ValueError("missing id")
    changes = item.get("changes") or {}
    if not isinstance(changes, Mapping):
        raise ValueError("changes must be a mapping")
    return RecordPatch(
        id=str(item["id"]),
        changes=dict(changes),
        expected_updated_at=parse_timestamp(item.get("updatedAt")),
    )


def _document_id(item: Any) -> str:
    if isinstance(item, Mapping) and not is_blank(item.get("id")):
        return str(item["id"])
    return ""


def apply_patches(store: RecordStore, patches: Iterable[RecordPatch | Mapping[str, Any]]) -> BulkUpdateSummary:
    """Apply independent per-record patches; never raises for a single patch.

    Mappings are accepted in the document form
    ``{"id": ..., "changes": {...}, "updatedAt": ...}``. A malformed entry
    (no id, non-mapping changes, unparseable ``updatedAt``) fails on its own
    without stopping the rest.
    """
    results: list[PatchResult] = []
    for item in patches:
        if isinstance(item, RecordPatch):
            patch = item
        else:
            try:
                patch = _patch_from_document(item)
            except (AttributeError, TypeError, ValueError) as e:
                record_id = _document_id(item)
                logger.warning(f"record {record_id or '?'}: invalid patch: {e}")
                results.append(PatchResult(success=False, id=record_id, error=f"invalid patch: {e}"))
                continue
        results.append(_apply_one(store, patch))
    summary = BulkUpdateSummary(results=results)
    logger.info(
        f"bulk update saved={summary.saved} failed={summary.failed} conflicts={len(summary.conflicts)}"
    )
    return summary


def save_patch_set(store: RecordStore, patch_set: PatchSet) -> tuple[BulkUpdateSummary, PatchSet]:
    """Save all pending edits.

    Returns the summary and a new PatchSet holding only the edits that were
    not saved (conflicts and failures), so the caller can reload and retry.
    """
    patches = patch_set.patches()
    summary = apply_patches(store, patches)
    unsaved = {r.id for r in summary.results if not r.success}
    remaining = PatchSet.from_patches(p for p in patches if p.id in unsaved)
    return summary, remaining
