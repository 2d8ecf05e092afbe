"""Console output for the gitops-loop commands.

Commands print either a table with one row per Application or resource, or
the YAML documents they operate on.
"""

from collections.abc import Iterator, Sequence
import sys
from typing import Any, TextIO

import yaml

COLUMN_GAP = 4


def _cell(value: Any) -> str:
    """Render a value for a table cell, an empty cell for missing values."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(item) for item in value)
    return str(value)


def format_table(
    headers: Sequence[str], rows: Sequence[Sequence[Any]]
) -> Iterator[str]:
    """Yield the header and rows as left aligned columns."""
    if not headers:
        return
    cells = [list(headers)] + [[_cell(value) for value in row] for row in rows]
    widths = [
        max(len(row[i]) for row in cells) + COLUMN_GAP for i in range(len(headers))
    ]
    for row in cells:
        yield "".join(value.ljust(width) for value, width in zip(row, widths)).rstrip()


class TableFormatter:
    """Prints rows of Application or resource fields as a table."""

    def __init__(self, columns: Sequence[str] | None = None) -> None:
        """Initialize the TableFormatter, defaulting to the first row's keys."""
        self._columns = columns

    def format(self, rows: list[dict[str, Any]]) -> Iterator[str]:
        if not rows:
            return
        columns = list(self._columns if self._columns is not None else rows[0])
        yield from format_table(
            [column.upper() for column in columns],
            [[row.get(column) for column in columns] for row in rows],
        )

    def print(self, rows: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        for line in self.format(rows):
            print(line, file=file)


class YamlFormatter:
    """Prints objects as a stream of YAML documents."""

    def dumps(self, docs: list[Any]) -> str:
        return yaml.dump_all(docs, sort_keys=False, explicit_start=True)

    def format(self, docs: list[Any]) -> Iterator[str]:
        yield from self.dumps(docs).splitlines()

    def print(self, docs: list[Any], file: TextIO = sys.stdout) -> None:
        print(self.dumps(docs), end="", file=file)
