"""Optional CSV of descriptive session labels, keyed by filename."""
from __future__ import annotations

import csv
import io
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("inspector.csv")


def read_csv_text(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning(f"Failed to read CSV metadata {path}: {exc}")
        return None


def parse_csv(text: str) -> list[dict[str, str]]:
    """Rows as header -> value dicts; blank lines are ignored."""
    lines = [line for line in (text or "").splitlines() if line.strip()]
    if len(lines) < 2:
        return []
    reader = csv.reader(io.StringIO("\n".join(lines)), skipinitialspace=True)
    headers = [h.strip() for h in next(reader)]
    rows: list[dict[str, str]] = []
    for values in reader:
        row = {header: (values[idx].strip() if idx < len(values) else "") for idx, header in enumerate(headers)}
        rows.append(row)
    return rows


def rows_by_filename(rows: list[dict[str, str]]) -> dict[str, dict[str, str]]:
    return {row["Filename"]: row for row in rows if row.get("Filename")}
