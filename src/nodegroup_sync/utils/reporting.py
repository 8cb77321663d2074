"""
Reporting helpers (table or JSON) for convergence results and group listings.

`print_rows` keeps the columns that carry data and prints a compact table
for CLI usage. JSON output is also supported for machine consumption.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Sequence

CANDIDATES = [
    "name",
    "id",
    "parent",
    "environment",
    "result",
    "changes",
    "pinned",
    "error",
]
MANDATORY = {"name", "result"}


def _present(v: Any) -> bool:
    return not (v is None or v == "" or v == [] or v == {})


def _fmt(v: Any, col: str) -> str:
    if v is None or v == "":
        return "—"
    if col == "id" and len(str(v)) > 16:
        s = str(v)
        return f"{s[:8]}…{s[-4:]}"
    if col == "error":
        return str(v).strip()[:160]
    if isinstance(v, bool):
        return "✓" if v else "✗"
    if isinstance(v, (list, tuple)):
        return ", ".join(str(x) for x in v) or "—"
    return str(v)


def select_columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Mandatory columns plus every candidate column holding a value."""
    present = [c for c in CANDIDATES if c in MANDATORY or any(_present(r.get(c)) for r in rows)]
    return [c for c in present if any(c in r for r in rows)] or ["name"]


def print_rows(rows: List[Dict[str, Any]], fmt: str = "table") -> None:
    """Render result rows as a table or JSON.

    Args:
        rows: Dict rows (``name``, ``id``, ``result``, ``changes``, ``error``...).
        fmt: Either ``"table"`` (default) or ``"json"``.
    """
    if fmt == "json":
        print(json.dumps(rows, indent=2, default=str))
        return

    cols = select_columns(rows)
    widths = {c: len(c) for c in cols}
    for r in rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c), c)))

    print("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |")
    print("| " + " | ".join("-" * widths[c] for c in cols) + " |")
    for r in rows:
        print("| " + " | ".join(_fmt(r.get(c), c).ljust(widths[c]) for c in cols) + " |")


def summarize_counts(counts: Dict[str, int]) -> str:
    # stable order for readability
    keys = ["CREATED", "UPDATED", "UNCHANGED", "DELETED", "ABSENT", "PLANNED", "ERROR"]
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in keys)
