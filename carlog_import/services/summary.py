from __future__ import annotations

from ..models.processing_result import BulkUpdateSummary, ImportSummary

"""SUMMARY line rendering.

Import:
    SUMMARY total={n} created={n} updated={n} failed={n} dropped={n} elapsed_sec={s}
Bulk patch save:
    SUMMARY patches={n} saved={n} failed={n} conflicts={n}
"""

__all__ = [
    "format_elapsed",
    "render_summary_line",
    "render_patch_summary_line",
]


def format_elapsed(seconds: float) -> str:
    """Render seconds without scientific notation or trailing zeros.

    >>> format_elapsed(2.0)
    '2'
    >>> format_elapsed(0.000125)
    '0.000125'
    """
    if seconds == 0:
        return "0"
    if seconds == int(seconds):
        return str(int(seconds))
    if seconds < 0.01:
        return f"{seconds:.6f}".rstrip("0").rstrip(".")
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def render_summary_line(summary: ImportSummary, dropped: int = 0) -> str:
    return (
        f"SUMMARY total={summary.total} "
        f"created={summary.created} "
        f"updated={summary.updated} "
        f"failed={summary.failed} "
        f"dropped={dropped} "
        f"elapsed_sec={format_elapsed(summary.elapsed_seconds)}"
    )


def render_patch_summary_line(summary: BulkUpdateSummary) -> str:
    return (
        f"SUMMARY patches={len(summary.results)} "
        f"saved={summary.saved} "
        f"failed={summary.failed} "
        f"conflicts={len(summary.conflicts)}"
    )
