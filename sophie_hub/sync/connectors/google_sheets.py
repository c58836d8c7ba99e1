"""
Google Sheets connector backed by the Sheets v4 values API.
"""

from __future__ import annotations

from typing import Any, Mapping

from google.auth.credentials import Credentials as BaseCredentials
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials as OAuthCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import FetchError
from .base import SheetData, SourceConnector, normalize_rows

SHEETS_SCOPES = ("https://www.googleapis.com/auth/spreadsheets.readonly",)


def build_credentials(credential: Any, *, service_account_file: str | None = None) -> BaseCredentials:
    """
    Turn whatever the caller holds into google-auth credentials.

    Accepts ready-made credentials, an OAuth access token string, or falls back
    to the configured service-account file.
    """
    if isinstance(credential, BaseCredentials):
        return credential
    if isinstance(credential, str) and credential.strip():
        return OAuthCredentials(token=credential.strip())
    if service_account_file:
        return service_account.Credentials.from_service_account_file(service_account_file, scopes=list(SHEETS_SCOPES))
    raise FetchError("No Google credential available: supply an access token or configure a service account.")


def _quote_tab(tab_name: str) -> str:
    escaped = tab_name.replace("'", "''")
    return f"'{escaped}'"


class GoogleSheetsConnector(SourceConnector):
    source_type = "google_sheet"

    def __init__(self, *, service_account_file: str | None = None, service_factory=None) -> None:
        self.service_account_file = service_account_file
        self._service_factory = service_factory or self._build_service

    def _build_service(self, credentials: BaseCredentials):
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)

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
        if not source_ref:
            raise FetchError("Google Sheet data source has no spreadsheet id.")

        credentials = build_credentials(credential, service_account_file=self.service_account_file)
        service = self._service_factory(credentials)

        first_row = header_row + 1
        last_row = f"{first_row + row_limit}" if row_limit is not None else ""
        range_name = f"{_quote_tab(tab_name)}!A{first_row}:ZZ{last_row}"
        try:
            result = service.spreadsheets().values().get(spreadsheetId=source_ref, range=range_name).execute()
        except HttpError as exc:
            raise FetchError(f"Google Sheets request failed for tab '{tab_name}': {exc}") from exc
        except OSError as exc:
            raise FetchError(f"Unable to reach Google Sheets for tab '{tab_name}': {exc}") from exc

        values = result.get("values", [])
        if not values:
            return SheetData(headers=())
        return normalize_rows(values[0], values[1:], row_limit=row_limit)
