"""Plain-text rendering helpers for the CLI."""
from typing import Any, Sequence


def format_bytes(size: int) -> str:
    """Human-readable byte size, e.g. `1.5 KB`."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def format_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    """Left-aligned table with a dashed rule under the header."""
    cells = [[str(c) if c is not None else "" for c in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _line(values: Sequence[str]) -> str:
        return "  ".join(v.ljust(widths[i]) for i, v in enumerate(values)).rstrip()

    lines = [_line(list(headers)), _line(["-" * w for w in widths])]
    lines.extend(_line(row) for row in cells)
    return "\n".join(lines)
