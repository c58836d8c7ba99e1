"""
Computed partner type.

Two views of a partner's commercial type are kept side by side:

1. the legacy "Partner type" cell copied from the master sheet, mapped to a
   canonical type;
2. a type derived from staffing signals (pod leader, brand manager,
   conversion strategist).

The staffing-derived type wins when present. Both are persisted so operators
can see and reconcile disagreements.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from sophie_hub.sync.source_data import SourceData, parse_source_data

CANONICAL_PARTNER_TYPES: tuple[str, ...] = ("ppc_basic", "sophie_ppc", "cc", "fam", "pli", "tiktok")

CANONICAL_PARTNER_TYPE_LABELS: Mapping[str, str] = {
    "ppc_basic": "PPC Basic",
    "sophie_ppc": "The Sophie PPC Partnership",
    "cc": "CC",
    "fam": "FAM",
    "pli": "PLI",
    "tiktok": "TTS",
}

POD_LEADER_HEADERS = ("POD Leader", "Pod Leader", "Pod lead")
BRAND_MANAGER_HEADERS = ("Brand Manager", "Brand manager")
CONVERSION_STRATEGIST_HEADERS = ("Conversion Strategist", "Conversion strategist")
LEGACY_PARTNER_TYPE_HEADERS = ("Partner type", "Partner Type")

# Placeholders operators type into staffing cells to mean "nobody".
EMPTY_LIKE = frozenset({"no", "na", "nna", "none", "null", "nill", "unassigned"})

# Ordered: the first matching rule decides.
LEGACY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sophie_ppc", ("ppcpremium", "sophieppc", "partnership")),
    ("cc", ("contentpremium", "onlycontent")),
    ("fam", ("fullaccountmanagement",)),
    ("pli", ("t0", "productincubator")),
    ("ppc_basic", ("ppcclient", "ppcbasic")),
    ("tiktok", ("tts", "tiktok")),
)

ComputedSource = Literal["staffing", "legacy_partner_type", "unknown"]

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _normalize_text(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def _first_meaningful(*values: str | None) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def has_assignment_signal(value: str | None) -> bool:
    if not value:
        return False
    normalized = _normalize_text(value)
    return bool(normalized) and normalized not in EMPTY_LIKE


def map_legacy_partner_type(raw: str | None) -> str | None:
    """Map a free-text legacy "Partner type" cell to a canonical type."""
    if not raw:
        return None
    normalized = _normalize_text(raw)
    for canonical, tokens in LEGACY_RULES:
        if canonical == "fam" and normalized == "fam":
            return canonical
        if any(token in normalized for token in tokens):
            return canonical
    return None


@dataclass(frozen=True)
class StaffingDerivation:
    canonical: str | None
    is_shared: bool
    reason: str


def derive_from_staffing(
    source: SourceData,
    *,
    pod_leader_name: str | None = None,
    brand_manager_name: str | None = None,
) -> StaffingDerivation:
    pod_leader = _first_meaningful(pod_leader_name, source.first_value(POD_LEADER_HEADERS))
    brand_manager = _first_meaningful(brand_manager_name, source.first_value(BRAND_MANAGER_HEADERS))
    # No persisted column for conversion strategist; raw tab data only.
    strategist = source.first_value(CONVERSION_STRATEGIST_HEADERS)

    has_pod_leader = has_assignment_signal(pod_leader)
    has_brand_manager = has_assignment_signal(brand_manager)
    has_strategist = has_assignment_signal(strategist)

    if has_brand_manager:
        if has_pod_leader:
            reason = (
                "Brand Manager + PPC Strategist + Conversion Strategist -> shared FAM + PPC support"
                if has_strategist
                else "Brand Manager + PPC Strategist -> shared FAM + PPC Basic"
            )
            return StaffingDerivation("fam", True, reason)
        reason = (
            "Brand Manager without PPC Strategist -> FAM owns PPC/CC"
            if has_strategist
            else "Brand Manager without PPC Strategist/Conversion Strategist -> FAM handling PPC/CC under pod"
        )
        return StaffingDerivation("fam", False, reason)

    if has_pod_leader and has_strategist:
        return StaffingDerivation(
            "sophie_ppc", False, "PPC Strategist + Conversion Strategist -> The Sophie PPC Partnership"
        )
    if has_pod_leader:
        return StaffingDerivation("ppc_basic", False, "PPC Strategist present -> PPC Basic")
    return StaffingDerivation(None, False, "No staffing-derived partner type signals")


@dataclass(frozen=True)
class PartnerTypeResult:
    computed: str | None
    computed_source: ComputedSource
    legacy_raw: str | None
    legacy: str | None
    staffing: str | None
    matches_legacy: bool
    is_shared: bool
    reason: str

    @property
    def computed_label(self) -> str:
        return partner_type_label(self.computed) or "Unknown"

    @property
    def legacy_label(self) -> str | None:
        return partner_type_label(self.legacy)

    @property
    def staffing_label(self) -> str | None:
        return partner_type_label(self.staffing)


def partner_type_label(canonical: str | None) -> str | None:
    return CANONICAL_PARTNER_TYPE_LABELS.get(canonical) if canonical else None


def compute_partner_type(
    source_data: Any = None,
    *,
    pod_leader_name: str | None = None,
    brand_manager_name: str | None = None,
) -> PartnerTypeResult:
    source = source_data if isinstance(source_data, SourceData) else parse_source_data(source_data)
    legacy_raw = source.first_value(LEGACY_PARTNER_TYPE_HEADERS)
    legacy = map_legacy_partner_type(legacy_raw)
    staffing = derive_from_staffing(
        source, pod_leader_name=pod_leader_name, brand_manager_name=brand_manager_name
    )

    computed = staffing.canonical or legacy
    if staffing.canonical:
        computed_source: ComputedSource = "staffing"
    elif legacy:
        computed_source = "legacy_partner_type"
    else:
        computed_source = "unknown"

    matches = not (staffing.canonical and legacy) or staffing.canonical == legacy

    reason = staffing.reason
    if staffing.canonical and legacy and staffing.canonical != legacy:
        reason += f"; legacy Partner type maps to {CANONICAL_PARTNER_TYPE_LABELS[legacy]}"
    elif not staffing.canonical and legacy:
        reason = "No staffing signal; falling back to legacy Partner type"

    return PartnerTypeResult(
        computed=computed,
        computed_source=computed_source,
        legacy_raw=legacy_raw,
        legacy=legacy,
        staffing=staffing.canonical,
        matches_legacy=matches,
        is_shared=staffing.is_shared,
        reason=reason,
    )


PERSISTED_FIELDS: tuple[str, ...] = (
    "computed_partner_type",
    "computed_partner_type_source",
    "staffing_partner_type",
    "legacy_partner_type_raw",
    "legacy_partner_type",
    "partner_type_matches",
    "partner_type_is_shared",
    "partner_type_reason",
    "partner_type_computed_at",
)


def build_partner_type_persistence_fields(
    source_data: Any = None,
    *,
    pod_leader_name: str | None = None,
    brand_manager_name: str | None = None,
    computed_at: datetime | None = None,
) -> dict[str, Any]:
    """Column values to write onto ``partners`` for the computed type."""
    result = compute_partner_type(
        source_data, pod_leader_name=pod_leader_name, brand_manager_name=brand_manager_name
    )
    return {
        "computed_partner_type": result.computed,
        "computed_partner_type_source": result.computed_source,
        "staffing_partner_type": result.staffing,
        "legacy_partner_type_raw": result.legacy_raw,
        "legacy_partner_type": result.legacy,
        "partner_type_matches": result.matches_legacy,
        "partner_type_is_shared": result.is_shared,
        "partner_type_reason": result.reason,
        "partner_type_computed_at": computed_at or datetime.now(timezone.utc),
    }
