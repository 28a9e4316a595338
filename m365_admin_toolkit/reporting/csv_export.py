"""
CSV exporter — Flat, Excel-friendly CSV files for list rows and import results.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Iterable, Optional


def _cell(value: Any) -> Any:
    # Lookup, person and multi-choice fields arrive as dicts/lists
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if value is None:
        return ""
    return value


def collect_fieldnames(rows: Iterable[dict]) -> list[str]:
    """Union of keys across rows, in first-seen order."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


def export_csv(
    rows: list[dict],
    output_dir: Path,
    filename: str,
    fieldnames: Optional[list[str]] = None,
) -> Path:
    """
    Write rows to output_dir/filename.

    Returns:
        Path to the created CSV file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / filename
    fields = fieldnames or collect_fieldnames(rows)

    with open(filepath, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _cell(row.get(k)) for k in fields})

    return filepath
