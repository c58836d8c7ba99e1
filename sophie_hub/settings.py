# sophie_hub/settings.py
"""
Runtime settings lookup.

Settings resolve through an ordered list of providers: admin-managed rows in
``system_settings`` first, then the process environment. Encrypted rows are
decrypted on read. Resolved values are cached per app for
``SETTINGS_CACHE_TTL_SECONDS``.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Protocol, Sequence

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sophie_hub.cache import CacheService, get_cache
from sophie_hub.models import SystemSetting, db
from sophie_hub.security.encryption import MASK, EncryptionError, decrypt, encrypt, mask_value

CACHE_PREFIX = "settings:"

# Settings whose environment variable does not follow the KEY.upper() rule.
ENV_ALIASES: Mapping[str, str] = {
    "google_service_account_file": "GOOGLE_SERVICE_ACCOUNT_FILE",
    "google_access_token": "GOOGLE_SHEETS_ACCESS_TOKEN",
    "cron_secret": "CRON_SECRET",
}


class SettingNotConfiguredError(LookupError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Setting '{key}' is not configured. Add it in admin settings or the environment.")
        self.key = key


class SettingsProvider(Protocol):
    name: str

    def get(self, key: str) -> str | None: ...


def _log(level: str, message: str, **extra: Any) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, extra=extra)


class DatabaseSettingsProvider:
    name = "database"

    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session or db.session

    def get(self, key: str) -> str | None:
        try:
            row = self.session.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
        except SQLAlchemyError as exc:
            _log("error", "Failed to read system setting", setting_key=key, error=str(exc))
            return None
        if row is None or not row.value:
            return None
        if not row.encrypted:
            return row.value
        try:
            return decrypt(row.value)
        except EncryptionError as exc:
            _log("error", "Failed to decrypt system setting", setting_key=key, error=str(exc))
            return None


class EnvironmentSettingsProvider:
    name = "environment"

    def __init__(self, environ: Mapping[str, str] | None = None, aliases: Mapping[str, str] | None = None) -> None:
        self._environ = environ
        self.aliases = dict(ENV_ALIASES if aliases is None else aliases)

    def env_name(self, key: str) -> str:
        return self.aliases.get(key, key.upper())

    def get(self, key: str) -> str | None:
        environ = os.environ if self._environ is None else self._environ
        value = environ.get(self.env_name(key))
        return value or None


class AppConfigSettingsProvider:
    """Values from the Flask config, which the config classes load from the environment."""

    name = "app_config"

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self.aliases = dict(ENV_ALIASES if aliases is None else aliases)

    def get(self, key: str) -> str | None:
        if not has_app_context():
            return None
        value = current_app.config.get(self.aliases.get(key, key.upper()))
        return str(value) if value else None


class SettingsResolver:
    """Ask each provider in order; the first non-empty value wins."""

    def __init__(self, providers: Sequence[SettingsProvider], cache: CacheService | None = None) -> None:
        self.providers = tuple(providers)
        self._cache = cache

    def lookup(self, key: str) -> tuple[str | None, str | None]:
        """Return ``(value, provider_name)``; both ``None`` when unset."""
        for provider in self.providers:
            value = provider.get(key)
            if value:
                return value, provider.name
        return None, None

    def get(self, key: str, default: str | None = None) -> str | None:
        if self._cache is not None:
            cached = self._cache.get(CACHE_PREFIX + key)
            if cached is not None:
                return cached
        value, _ = self.lookup(key)
        if value is None:
            return default
        if self._cache is not None:
            self._cache.set(CACHE_PREFIX + key, value)
        return value

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise SettingNotConfiguredError(key)
        return value

    def invalidate(self, key: str | None = None) -> None:
        if self._cache is None:
            return
        if key is None:
            self._cache.invalidate_prefix(CACHE_PREFIX)
        else:
            self._cache.invalidate(CACHE_PREFIX + key)


def get_settings(session: Session | None = None) -> SettingsResolver:
    """Default resolver for the current app: database, then app config, then environment."""
    return SettingsResolver(
        [DatabaseSettingsProvider(session), AppConfigSettingsProvider(), EnvironmentSettingsProvider()],
        cache=get_cache(),
    )


def save_setting(
    key: str,
    value: str | None,
    *,
    encrypted: bool = False,
    description: str | None = None,
    updated_by: str | None = None,
    session: Session | None = None,
) -> SystemSetting:
    session = session or db.session
    row = session.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
    if row is None:
        row = SystemSetting(key=key)
        session.add(row)
    row.value = encrypt(value) if (encrypted and value) else value
    row.encrypted = bool(encrypted and value)
    if description is not None:
        row.description = description
    row.updated_by = updated_by
    session.commit()
    if has_app_context():
        get_cache().invalidate(CACHE_PREFIX + key)
    return row


def describe_setting(row: SystemSetting) -> dict[str, Any]:
    """Admin-safe view of a setting row; secrets are masked, never returned in clear."""
    display = None
    if row.value:
        if row.encrypted:
            try:
                display = mask_value(decrypt(row.value))
            except EncryptionError:
                display = MASK
        else:
            display = row.value
    return {
        "key": row.key,
        "value": display,
        "encrypted": row.encrypted,
        "description": row.description,
        "updated_by": row.updated_by,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def resolve_sheet_credential(explicit: str | None = None, *, session: Session | None = None) -> str | None:
    """OAuth access token for Sheets reads; ``None`` lets the connector use the service account."""
    if explicit:
        return explicit
    return get_settings(session).get("google_access_token")
