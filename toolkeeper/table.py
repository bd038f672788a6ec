"""
Column alignment by terminal display width.

ANSI colour sequences are kept in the output but ignored when measuring,
and wide characters are measured with wcwidth.
"""

from __future__ import annotations

import re
from typing import Sequence

from wcwidth import wcswidth

# CSI (color etc.): ESC [ ... cmd
CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
NUM_RE = re.compile(r"^[ \t]*[+-]?(\d+(\.\d*)?|\.\d+)[ \t]*$")


def display_width(text: str) -> int:
    visible = CSI_RE.sub("", text)
    width = wcswidth(visible)
    return len(visible) if width < 0 else width


def looks_numeric(text: str) -> bool:
    return bool(NUM_RE.match(text))


def truncate(text: str, limit: int) -> str:
    """Shorten text to at most limit characters, marking the cut with an ellipsis."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def compute_col_widths(rows: Sequence[Sequence[str]]) -> list[int]:
    if not rows:
        return []
    widths = [0] * max(len(r) for r in rows)
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], display_width(cell))
    return widths


def format_table(
    header: Sequence[str],
    rows: Sequence[Sequence[str]],
    pad: int = 2,
    num_right: bool = True,
) -> list[str]:
    """
    Align rows under a header.

    Args:
        header: Column titles
        rows: Cell text per row
        pad: Spaces between columns
        num_right: Right-align cells that look numeric

    Returns:
        Output lines without trailing whitespace
    """
    all_rows = [list(header), *[list(r) for r in rows]]
    widths = compute_col_widths(all_rows)
    lines = []
    for ridx, row in enumerate(all_rows):
        cells = []
        for i, width in enumerate(widths):
            cell = row[i] if i < len(row) else ""
            space = width - display_width(cell)
            if ridx > 0 and num_right and looks_numeric(cell):
                cells.append(" " * space + cell)
            else:
                cells.append(cell + " " * space)
        lines.append((" " * pad).join(cells).rstrip())
    return lines
