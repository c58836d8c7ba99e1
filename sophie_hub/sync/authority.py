"""
Field-level authority decisions for sync updates.

Given the transformed values of one row and the entity currently stored, this
module decides which fields the sync is allowed to write:

* ``source_of_truth`` columns always overwrite the stored value;
* ``reference`` columns only fill a stored value that is empty;
* ``derived`` fields are never written from a source column;
* ``force_overwrite`` lets every non-derived column through.

New entities have nothing to protect, so every incoming field is written.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .config_store import ColumnRule


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _is_effectively_null(value: Any) -> bool:
    return _normalize_value(value) is None


@dataclass(frozen=True)
class FieldDecision:
    field_name: str
    authority: str
    allowed: bool
    changed: bool
    previous_value: Any
    new_value: Any
    reason: str


@dataclass(frozen=True)
class AuthorityResult:
    allowed_values: Mapping[str, Any]
    decisions: Sequence[FieldDecision]
    stats: Mapping[str, int]

    @property
    def changed_fields(self) -> dict[str, FieldDecision]:
        return {d.field_name: d for d in self.decisions if d.allowed and d.changed}


def _values_differ(previous: Any, new: Any) -> bool:
    if _is_effectively_null(previous) and _is_effectively_null(new):
        return False
    if isinstance(previous, str) and isinstance(new, str):
        return previous.strip() != new.strip()
    return previous != new


def resolve_authorized_fields(
    incoming: Mapping[str, Any],
    rules: Mapping[str, ColumnRule],
    existing: Mapping[str, Any] | None,
    *,
    force_overwrite: bool = False,
) -> AuthorityResult:
    """
    Resolve which incoming values may be written.

    ``incoming`` holds transformed values keyed by target field; ``rules``
    maps the same field names to the column that produced them. ``existing``
    is a snapshot of the stored entity, or ``None`` for a create.
    """
    is_create = existing is None
    snapshot = existing or {}

    allowed: dict[str, Any] = {}
    decisions: list[FieldDecision] = []
    stats: Counter[str] = Counter()

    for field_name, new_value in incoming.items():
        rule = rules.get(field_name)
        authority = rule.authority if rule is not None else "source_of_truth"
        previous = snapshot.get(field_name)

        if authority == "derived":
            permitted, reason = False, "derived"
            stats["derived_blocked"] += 1
        elif is_create:
            permitted, reason = True, "create"
        elif force_overwrite:
            permitted, reason = True, "force_overwrite"
            stats["forced"] += 1
        elif authority == "reference":
            permitted = _is_effectively_null(previous)
            reason = "reference_fill" if permitted else "reference_kept"
            stats["reference_fills" if permitted else "reference_kept"] += 1
        else:
            permitted, reason = True, "source_of_truth"

        changed = permitted and (is_create or _values_differ(previous, new_value))
        if permitted:
            allowed[field_name] = new_value
        if changed:
            stats["fields_changed"] += 1
        elif permitted:
            stats["fields_unchanged"] += 1

        decisions.append(
            FieldDecision(
                field_name=field_name,
                authority=authority,
                allowed=permitted,
                changed=changed,
                previous_value=previous,
                new_value=new_value,
                reason=reason,
            )
        )

    return AuthorityResult(allowed_values=allowed, decisions=tuple(decisions), stats=dict(stats))


__all__ = ["AuthorityResult", "FieldDecision", "resolve_authorized_fields"]
