from __future__ import annotations

from typing import Any, Iterable, Mapping


def _quote(value: Any) -> str:
    if value is None:
        return ""
    return '"' + str(value).replace('"', '""') + '"'


def to_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    """Render rows as CSV.

    The header is the field names of the first row; later rows are read in that
    order. Every value is double-quoted with inner quotes doubled, except None
    which becomes an empty field. Lines are joined with a bare newline and an
    empty input yields an empty string.
    """
    rows = list(rows)
    if not rows:
        return ""
    headers = list(rows[0].keys())
    lines = [",".join(_quote(h) for h in headers)]
    for row in rows:
        lines.append(",".join(_quote(row.get(h)) for h in headers))
    return "\n".join(lines)
