"""Plain-text grounding context for the completion service.

Both renderers cut over-long text and append a marker:

- format_context: selected graph entities plus their neighbor relationships.
- format_csv_context: a CSV-derived table bounded to a character budget.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence

from clinical_graph.models import NeighborRow, ScoredEntity

BODY_LIMIT = 400
ELLIPSIS = "…"

CSV_PREAMBLE = (
    "You are given a CSV-derived context table.\n"
    "Use this table as authoritative context if it answers the question.\n\n"
)


class ContextFormatError(ValueError):
    """Raised when user-supplied context (e.g. CSV) cannot be parsed."""


def truncate(text: str, limit: int, marker: str = ELLIPSIS) -> str:
    """Cut ``text`` to ``limit`` characters and append ``marker`` if it was longer."""
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def format_context(
    scored: Sequence[ScoredEntity],
    neighbors: Sequence[NeighborRow],
) -> str:
    """Render selected entities and their relationships as prompt context.

    Example output::

        Relevant Nodes:
        1. [Diagnosis] Hypertension
        High BP

        Neighbor Relationships:
        - [Diagnosis] Hypertension --ASSOCIATED_WITH--> [Medication] Lisinopril :: first-line treatment
    """
    lines = ["Relevant Nodes:"]
    for index, item in enumerate(scored, start=1):
        entity = item.entity
        body = truncate(entity.body.strip(), BODY_LIMIT)
        lines.append(f"{index}. [{entity.category.value}] {entity.title}\n{body}")

    if neighbors:
        lines.append("\nNeighbor Relationships:")
        for row in neighbors:
            if not row.target_title:
                continue
            source = f"[{row.source_category.value}] {row.source_title}"
            target = f"[{row.target_category.value}] {row.target_title}"
            lines.append(f"- {source} --ASSOCIATED_WITH--> {target} :: {row.description}")

    return "\n".join(lines)


def _select_columns(header: list[str], columns: str) -> list[int]:
    """Resolve a column spec ("*", names, or 0-based indexes) to indexes."""
    everything = list(range(len(header)))
    if not columns or columns.strip() == "*":
        return everything

    header_lc = [h.lower() for h in header]
    indices: list[int] = []
    for name in (c.strip().lower() for c in columns.split(",")):
        if not name:
            continue
        if name.isdigit():
            idx = int(name)
            if idx < len(header):
                indices.append(idx)
        elif name in header_lc:
            indices.append(header_lc.index(name))

    unique = list(dict.fromkeys(indices))
    return unique or everything


def format_csv_context(
    csv_text: str,
    delimiter: str = ",",
    max_rows: int = 1000,
    columns: str = "*",
    max_chars: int = 4000,
) -> str:
    """Render CSV text as a pipe-separated table, bounded to ``max_chars``.

    Args:
        csv_text: Raw CSV, first row is the header.
        delimiter: Field delimiter.
        max_rows: Maximum data rows considered (minimum 1).
        columns: "*" for all columns, or a comma-separated list of header
            names / 0-based indexes. Unknown names are ignored.
        max_chars: Character budget for the table.

    Returns:
        The table wrapped in a short instruction preamble, or "" for an
        empty CSV.

    Raises:
        ContextFormatError: If the CSV cannot be parsed.
    """
    try:
        records = [
            row
            for row in csv.reader(io.StringIO(csv_text), delimiter=delimiter or ",")
            if row
        ]
    except (csv.Error, TypeError) as exc:
        raise ContextFormatError(f"Failed to process CSV content: {exc}") from exc
    if not records:
        return ""

    header = [cell.strip() for cell in records[0]]
    rows = [[cell.strip() for cell in row] for row in records[1 : 1 + max(1, max_rows)]]
    indices = _select_columns(header, columns)

    selected_header = [header[i] for i in indices]
    lines = [
        " | ".join(selected_header),
        " | ".join("-" * max(3, min(20, len(h))) for h in selected_header),
    ]
    running = sum(len(line) + 1 for line in lines)
    for row in rows:
        line = " | ".join(row[i] if i < len(row) else "" for i in indices)
        lines.append(line)
        running += len(line) + 1
        if running > max_chars:
            break

    table = "\n".join(lines)
    if len(table) > max_chars:
        table = table[: max(0, max_chars - 3)] + "..."

    return f"{CSV_PREAMBLE}CSV Context (first {len(rows)} rows):\n{table}\n\n"
