"""Source connectors keyed by data source type."""

from __future__ import annotations

from typing import Callable, Dict

from ..errors import SyncConfigError
from .base import SheetData, SourceConnector, normalize_rows
from .google_sheets import GoogleSheetsConnector
from .static import StaticConnector

ConnectorFactory = Callable[[str], SourceConnector]


def get_connector(source_type: str, *, service_account_file: str | None = None) -> SourceConnector:
    """Return a connector for ``source_type``, raising ``SyncConfigError`` on unknown types."""
    factories: Dict[str, Callable[[], SourceConnector]] = {
        "google_sheet": lambda: GoogleSheetsConnector(service_account_file=service_account_file),
        "static": StaticConnector,
    }
    try:
        return factories[source_type]()
    except KeyError:
        raise SyncConfigError(f"Unsupported data source type '{source_type}'.") from None


__all__ = [
    "ConnectorFactory",
    "GoogleSheetsConnector",
    "SheetData",
    "SourceConnector",
    "StaticConnector",
    "get_connector",
    "normalize_rows",
]
