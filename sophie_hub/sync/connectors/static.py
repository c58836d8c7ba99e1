"""
In-memory connector for fixtures, demos and tests.

``connection_config`` looks like::

    {"tabs": {"Master": [["Brand", "Status"], ["Acme", "Active"]]}}

Each tab is a list of rows, with the header row at ``header_row``.
"""

from __future__ import annotations

from typing import Any, Mapping

from ..errors import FetchError
from .base import SheetData, SourceConnector, normalize_rows


class StaticConnector(SourceConnector):
    source_type = "static"

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
        tabs = (connection_config or {}).get("tabs") or {}
        if not isinstance(tabs, Mapping) or tab_name not in tabs:
            raise FetchError(f"Tab '{tab_name}' not found in static data source.")
        grid = tabs[tab_name] or []
        if len(grid) <= header_row:
            return SheetData(headers=())
        return normalize_rows(grid[header_row], grid[header_row + 1 :], row_limit=row_limit)
