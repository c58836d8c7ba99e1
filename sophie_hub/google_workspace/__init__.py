"""Google Workspace directory helpers."""

from .account_classification import (
    AccountClassification,
    AccountTypeResolution,
    DirectoryContext,
    classify_google_account_email,
    resolve_google_account_type,
)

__all__ = [
    "AccountClassification",
    "AccountTypeResolution",
    "DirectoryContext",
    "classify_google_account_email",
    "resolve_google_account_type",
]
