from __future__ import annotations

import csv
import io
from collections.abc import Sequence

from app.ingest.inference import infer_column_type, normalize_identifier, normalize_table_name
from app.ingest.schemas import ColumnDefinition, TableSchema


DEFAULT_SAMPLE_LIMIT = 50


def parse_csv_text(text: str) -> list[list[str]]:
    """Split already-read CSV text into trimmed rows, skipping blank lines."""

    reader = csv.reader(io.StringIO(text))
    rows: list[list[str]] = []
    for raw in reader:
        cells = [cell.strip() for cell in raw]
        if not any(cells):
            continue
        rows.append(cells)
    return rows


def _column_names(header: Sequence[str]) -> list[str]:
    names: list[str] = []
    seen: dict[str, int] = {}
    for index, raw in enumerate(header, start=1):
        base = normalize_identifier(str(raw).strip()) if str(raw).strip() else f"column_{index}"
        count = seen.get(base, 0) + 1
        seen[base] = count
        names.append(base if count == 1 else f"{base}_{count}")
    return names


def pad_row(row: Sequence[str], width: int) -> list[str]:
    cells = ["" if cell is None else str(cell) for cell in row[:width]]
    return cells + [""] * (width - len(cells))


def build_table_schema(
    file_name: str,
    rows: Sequence[Sequence[str]],
    *,
    sample_limit: int = DEFAULT_SAMPLE_LIMIT,
) -> TableSchema:
    """Turn a parsed file (row 0 is the header) into a ``TableSchema``.

    Column types come from the first data row. A file with a header but no data
    rows yields all-VARCHAR columns; an entirely empty input yields no columns.
    """

    table_name = normalize_table_name(file_name)
    if not rows:
        return TableSchema(table_name=table_name)

    names = _column_names(rows[0])
    width = len(names)
    data_rows = [pad_row(row, width) for row in rows[1:]]
    first_row = data_rows[0] if data_rows else [""] * width

    primary_key: str | None = None
    if "id" in names:
        primary_key = "id"
    elif f"{table_name}_id" in names:
        primary_key = f"{table_name}_id"

    columns = [
        ColumnDefinition(
            name=name,
            type=infer_column_type(first_row[index]),
            is_primary_key=name == primary_key,
            sample_value=first_row[index],
        )
        for index, name in enumerate(names)
    ]

    return TableSchema(
        table_name=table_name,
        columns=columns,
        row_count=len(data_rows),
        sample_rows=data_rows[: max(sample_limit, 0)],
    )
