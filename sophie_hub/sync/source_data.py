"""
Typed view over the ``source_data`` JSON blob stored on entities.

The blob is keyed ``{connector: {tab_name: {column_header: cell}}}``. Business
logic never walks the raw dict: ``parse_source_data`` validates the shape once
and returns a ``SourceData`` whose cells are guaranteed to be strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping

from sophie_hub.models.enrichment import DataSourceType

CONNECTOR_KEYS: Mapping[str, str] = {
    DataSourceType.GOOGLE_SHEET.value: "gsheets",
    DataSourceType.STATIC.value: "static",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_header(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def connector_key(source_type: DataSourceType | str) -> str:
    value = source_type.value if isinstance(source_type, DataSourceType) else str(source_type)
    return CONNECTOR_KEYS.get(value, value)


@dataclass(frozen=True)
class SourceCell:
    connector: str
    tab: str
    column: str
    value: str


@dataclass(frozen=True)
class SourceData:
    cells: tuple[SourceCell, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[SourceCell]:
        return iter(self.cells)

    def first_value(self, headers: Iterable[str]) -> str | None:
        """Return the first non-blank cell whose header matches any of ``headers`` (punctuation/case-insensitive)."""
        targets = {normalize_header(header) for header in headers}
        for cell in self.cells:
            if normalize_header(cell.column) in targets and cell.value.strip():
                return cell.value.strip()
        return None


def parse_source_data(blob: Any) -> SourceData:
    """
    Convert a raw ``source_data`` blob into ``SourceData``.

    Non-mapping levels are ignored, and non-string cells are dropped except
    numbers, which are stringified.
    """
    if not isinstance(blob, Mapping):
        return SourceData()

    cells: list[SourceCell] = []
    for connector, tabs in blob.items():
        if not isinstance(tabs, Mapping):
            continue
        for tab, columns in tabs.items():
            if not isinstance(columns, Mapping):
                continue
            for column, raw in columns.items():
                if isinstance(raw, bool) or raw is None:
                    continue
                if isinstance(raw, (int, float)):
                    raw = str(raw)
                if not isinstance(raw, str):
                    continue
                cells.append(SourceCell(str(connector), str(tab), str(column), raw))
    return SourceData(tuple(cells))


def merge_source_row(
    existing: Mapping[str, Any] | None,
    *,
    connector: str,
    tab_name: str,
    row: Mapping[str, str],
) -> dict[str, Any]:
    """Return a copy of ``existing`` with the tab's row snapshot replaced."""
    merged: dict[str, Any] = {}
    if isinstance(existing, Mapping):
        for key, tabs in existing.items():
            merged[key] = dict(tabs) if isinstance(tabs, Mapping) else tabs
    connector_tabs = merged.get(connector)
    if not isinstance(connector_tabs, dict):
        connector_tabs = {}
    connector_tabs[tab_name] = dict(row)
    merged[connector] = connector_tabs
    return merged
