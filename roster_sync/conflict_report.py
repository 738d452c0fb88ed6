"""
Conflict report codec.

Writes merge conflicts to a reviewable CSV with the fixed columns
Record ID, Field, Base Value, Other Value, Resolution (every cell quoted),
reads such reports back, and renders conflicts as a terminal table.
"""
import csv
import io
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .file_utils import atomic_write_text
from .merge_engine import (
    ConflictType, MergeConflict, NEW_RECORD_FIELD, DELETED_FIELD,
)

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["Record ID", "Field", "Base Value", "Other Value", "Resolution"]


def conflicts_to_dataframe(conflicts: Sequence[MergeConflict]) -> pd.DataFrame:
    """One row per conflict with the report columns."""
    rows = [
        [c.record_id, c.field, c.base_value, c.other_value, c.resolution]
        for c in conflicts
    ]
    return pd.DataFrame(rows, columns=REPORT_COLUMNS, dtype=str)


def render_conflict_report(conflicts: Sequence[MergeConflict]) -> str:
    """Serialize conflicts to report text."""
    buffer = io.StringIO()
    conflicts_to_dataframe(conflicts).to_csv(
        buffer, index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")
    return buffer.getvalue()


def write_conflict_report(conflicts: Sequence[MergeConflict], path: Path) -> Path:
    """Atomically write a conflict report to `path`."""
    path = Path(path)
    atomic_write_text(path, render_conflict_report(conflicts))
    logger.info(f"Wrote {len(conflicts)} conflicts to {path.name}")
    return path


def classify_field(field_name: str) -> ConflictType:
    if field_name == NEW_RECORD_FIELD:
        return ConflictType.NEW_RECORD
    if field_name == DELETED_FIELD:
        return ConflictType.DELETED
    return ConflictType.FIELD_CHANGED


def read_conflict_report(path: Path) -> List[MergeConflict]:
    """
    Read a conflict report back into conflicts.

    The classification is inferred from the field column; denormalized
    name fields are not part of the report and come back empty.

    Raises:
        ValueError: if the report columns are missing
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding='utf-8-sig')
    missing = [c for c in REPORT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Not a conflict report, missing columns: {', '.join(missing)}")

    conflicts = []
    for row in df.itertuples(index=False):
        values: Dict[str, str] = dict(zip(df.columns, row))
        conflicts.append(MergeConflict(
            record_id=values["Record ID"],
            field=values["Field"],
            base_value=values["Base Value"],
            other_value=values["Other Value"],
            resolution=values["Resolution"],
            conflict_type=classify_field(values["Field"]),
        ))
    return conflicts


def format_conflict_table(conflicts: Sequence[MergeConflict],
                          title: Optional[str] = None) -> str:
    """Return a box-drawing table of conflicts for terminal review."""
    headers = ["Record", "Field", "Base", "Other", "Resolution"]
    rows = [
        [c.display_name, c.field, c.base_value, c.other_value, c.resolution]
        for c in conflicts
    ]
    widths = [
        max(len(headers[i]), *(len(r[i]) for r in rows)) if rows else len(headers[i])
        for i in range(len(headers))
    ]

    sep = "─"
    div = [sep * (w + 2) for w in widths]

    def line(cells):
        return "│" + "│".join(f" {cell:<{w}} " for cell, w in zip(cells, widths)) + "│"

    lines: List[str] = []
    if title:
        lines.append(f"  {title}")
        lines.append("")
    lines.append("┌" + "┬".join(div) + "┐")
    lines.append(line(headers))
    lines.append("├" + "┼".join(div) + "┤")
    for row in rows:
        lines.append(line(row))
    lines.append("└" + "┴".join(div) + "┘")
    return "\n".join(lines)
