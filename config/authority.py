"""
Field authority configuration for sync conflict resolution.

A ``ColumnMapping`` normally declares its own authority. When a mapping leaves
authority unset, the sync engine falls back to the profile defined here, which
pins per-entity field defaults (e.g. partner-type columns are always
``derived`` and never sourced from a sheet).

Configuration is file-backed so operators can adjust defaults without a
migration: point ``SYNC_AUTHORITY_PROFILE_PATH`` at a JSON or YAML file. The
helpers below load and validate that override.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

AUTHORITIES: tuple[str, ...] = ("source_of_truth", "reference", "derived")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldAuthority:
    """
    Default authority for a single entity field.

    Attributes:
        field_name: Target attribute on the entity model.
        authority: One of ``source_of_truth``, ``reference`` or ``derived``.
    """

    field_name: str
    authority: str


@dataclass(frozen=True)
class EntityAuthority:
    entity: str
    fields: Sequence[FieldAuthority]


@dataclass(frozen=True)
class AuthorityProfile:
    """
    Container for all authority defaults.

    ``resolve`` looks up the entity/field pair and falls back to
    ``default_authority`` when the field is not listed.
    """

    key: str
    label: str
    entities: Sequence[EntityAuthority]
    default_authority: str = "source_of_truth"

    def find_rule(self, entity: str, field_name: str) -> FieldAuthority | None:
        for group in self.entities:
            if group.entity != entity:
                continue
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return None

    def resolve(self, entity: str, field_name: str, declared: str | None = None) -> str:
        if declared:
            return declared
        rule = self.find_rule(entity, field_name)
        return rule.authority if rule else self.default_authority


# ---------------------------------------------------------------------------
# Default profile
# ---------------------------------------------------------------------------

PARTNER_DERIVED_FIELDS: tuple[FieldAuthority, ...] = tuple(
    FieldAuthority(name, "derived")
    for name in (
        "computed_partner_type",
        "computed_partner_type_source",
        "staffing_partner_type",
        "legacy_partner_type_raw",
        "legacy_partner_type",
        "partner_type_matches",
        "partner_type_is_shared",
        "partner_type_reason",
        "partner_type_computed_at",
        "source_data",
    )
)

PARTNER_REFERENCE_FIELDS: tuple[FieldAuthority, ...] = (FieldAuthority("notes", "reference"),)

STAFF_FIELDS: tuple[FieldAuthority, ...] = (
    FieldAuthority("account_type", "derived"),
    FieldAuthority("account_type_override", "derived"),
    FieldAuthority("source_data", "derived"),
)

ASIN_FIELDS: tuple[FieldAuthority, ...] = (FieldAuthority("source_data", "derived"),)

DEFAULT_PROFILE = AuthorityProfile(
    key="default",
    label="Default authority",
    entities=(
        EntityAuthority("partners", PARTNER_DERIVED_FIELDS + PARTNER_REFERENCE_FIELDS),
        EntityAuthority("staff", STAFF_FIELDS),
        EntityAuthority("asins", ASIN_FIELDS),
    ),
    default_authority="source_of_truth",
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class AuthorityConfigError(RuntimeError):
    """Raised when an authority override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise AuthorityConfigError(f"Authority override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise AuthorityConfigError(f"Unable to read authority override file {path}: {exc}") from exc

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)

    if not isinstance(data, Mapping):
        raise AuthorityConfigError("Authority override must be a JSON/YAML object.")
    return dict(data)


def _coerce_authority(value: object, *, context: str) -> str:
    authority = str(value or "").strip().lower()
    if authority not in AUTHORITIES:
        raise AuthorityConfigError(f"{context}: unknown authority '{value}'. Expected one of {', '.join(AUTHORITIES)}.")
    return authority


def _coerce_entity(entity: str, raw_fields: object) -> EntityAuthority:
    if not isinstance(raw_fields, Mapping):
        raise AuthorityConfigError(f"Entity {entity} must map field names to authorities.")
    rules = tuple(
        FieldAuthority(str(name).strip(), _coerce_authority(value, context=f"{entity}.{name}"))
        for name, value in raw_fields.items()
    )
    return EntityAuthority(entity=entity, fields=rules)


def _coerce_profile(raw: Mapping[str, object]) -> AuthorityProfile:
    key = str(raw.get("key") or DEFAULT_PROFILE.key).strip() or DEFAULT_PROFILE.key
    label = str(raw.get("label") or DEFAULT_PROFILE.label).strip() or DEFAULT_PROFILE.label
    default_authority = _coerce_authority(
        raw.get("default_authority", DEFAULT_PROFILE.default_authority),
        context="default_authority",
    )
    raw_entities = raw.get("entities") or {}
    if not isinstance(raw_entities, Mapping):
        raise AuthorityConfigError("entities must be an object keyed by entity name.")
    entities: Iterable[EntityAuthority] = tuple(
        _coerce_entity(str(entity), fields) for entity, fields in raw_entities.items()
    )
    if not entities:
        entities = DEFAULT_PROFILE.entities
    return AuthorityProfile(key=key, label=label, entities=tuple(entities), default_authority=default_authority)


def load_profile(env: Mapping[str, str] | None = None) -> AuthorityProfile:
    """
    Load the active authority profile.

    If ``SYNC_AUTHORITY_PROFILE_PATH`` is set, its JSON/YAML content replaces
    the default profile. Otherwise the built-in defaults are used.
    """

    env_map = env or {}
    override_path = env_map.get("SYNC_AUTHORITY_PROFILE_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    return _coerce_profile(_load_override(Path(override_path)))


__all__ = [
    "AUTHORITIES",
    "AuthorityConfigError",
    "AuthorityProfile",
    "EntityAuthority",
    "FieldAuthority",
    "DEFAULT_PROFILE",
    "load_profile",
]
