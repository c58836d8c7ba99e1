"""
Source connector interface.

A connector reads one tab of one source and returns the header row plus the
data rows beneath it, each row padded to the header width.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence


@dataclass(frozen=True)
class SheetData:
    headers: tuple[str, ...]
    rows: tuple[tuple[str, ...], ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.rows)

    def row_as_dict(self, index: int) -> dict[str, str]:
        return dict(zip(self.headers, self.rows[index]))


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def normalize_rows(
    headers: Sequence[Any],
    rows: Sequence[Sequence[Any]],
    *,
    row_limit: int | None = None,
) -> SheetData:
    """Stringify cells and pad or truncate every row to the header width."""
    header_tuple = tuple(_cell_text(h).strip() for h in headers)
    width = len(header_tuple)
    selected = rows if row_limit is None else rows[: max(row_limit, 0)]
    normalized = []
    for row in selected:
        cells = [_cell_text(cell) for cell in list(row)[:width]]
        cells.extend([""] * (width - len(cells)))
        normalized.append(tuple(cells))
    return SheetData(headers=header_tuple, rows=tuple(normalized))


class SourceConnector(ABC):
    """Base class for data source readers."""

    source_type: str = ""

    @abstractmethod
    def fetch_rows(
        self,
        credential: Any,
        source_ref: str | None,
        tab_name: str,
        header_row: int = 0,
        row_limit: int | None = None,
        *,
        connection_config: Mapping[str, Any] | None = None,
    ) -> SheetData:
        """
        Read ``tab_name`` from the source.

        ``header_row`` is 0-based. Raises ``FetchError`` when the source cannot
        be read.
        """
