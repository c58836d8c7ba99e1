import pytest

from sophie_hub.partners.partner_type import (
    build_partner_type_persistence_fields,
    compute_partner_type,
    has_assignment_signal,
    map_legacy_partner_type,
)


def _sheet(**cells):
    return {"gsheets": {"Master Client Sheet": dict(cells)}}


@pytest.mark.parametrize(
    "raw, canonical",
    [
        ("PPC Premium", "sophie_ppc"),
        ("The Sophie PPC Partnership", "sophie_ppc"),
        ("Content Premium", "cc"),
        ("FAM", "fam"),
        ("Full Account Management", "fam"),
        ("T0 Product Incubator", "pli"),
        ("PPC Basic", "ppc_basic"),
        ("TikTok Shop", "tiktok"),
        ("Something else", None),
        ("", None),
        (None, None),
    ],
)
def test_map_legacy_partner_type(raw, canonical):
    assert map_legacy_partner_type(raw) == canonical


@pytest.mark.parametrize("value, expected", [("Sam Lee", True), ("N/A", False), ("none", False), ("  ", False), (None, False)])
def test_has_assignment_signal(value, expected):
    assert has_assignment_signal(value) is expected


def test_pod_leader_and_strategist_make_sophie_ppc():
    result = compute_partner_type(
        _sheet(**{"POD Leader": "Sam Lee", "Conversion Strategist": "Riley Fox", "Partner type": "PPC Premium"})
    )

    assert result.computed == "sophie_ppc"
    assert result.computed_source == "staffing"
    assert result.legacy == "sophie_ppc"
    assert result.matches_legacy is True
    assert result.computed_label == "The Sophie PPC Partnership"


def test_brand_manager_without_pod_leader_is_fam_and_flags_mismatch():
    result = compute_partner_type(_sheet(**{"Brand Manager": "Morgan Hale", "Partner type": "PPC Basic"}))

    assert result.computed == "fam"
    assert result.is_shared is False
    assert result.legacy == "ppc_basic"
    assert result.matches_legacy is False
    assert result.reason.endswith("legacy Partner type maps to PPC Basic")


def test_brand_manager_with_pod_leader_is_shared_fam():
    result = compute_partner_type(
        _sheet(**{"Pod Leader": "Sam Lee", "Brand manager": "Morgan Hale", "Conversion Strategist": "Riley"})
    )
    assert result.computed == "fam"
    assert result.is_shared is True
    assert result.reason.startswith("Brand Manager + PPC Strategist + Conversion Strategist")


def test_persisted_staffing_names_take_precedence_over_sheet_cells():
    result = compute_partner_type(_sheet(**{"POD Leader": "unassigned"}), pod_leader_name="Sam Lee")
    assert result.computed == "ppc_basic"
    assert result.staffing == "ppc_basic"


def test_legacy_fallback_when_no_staffing_signal():
    result = compute_partner_type(_sheet(**{"POD Leader": "N/A", "Partner type": "TTS"}))

    assert result.computed == "tiktok"
    assert result.computed_source == "legacy_partner_type"
    assert result.reason == "No staffing signal; falling back to legacy Partner type"


def test_no_signals_at_all():
    result = compute_partner_type(None)

    assert result.computed is None
    assert result.computed_source == "unknown"
    assert result.matches_legacy is True
    assert result.computed_label == "Unknown"


def test_persistence_fields_cover_every_column():
    fields = build_partner_type_persistence_fields(_sheet(**{"Partner type": "FAM"}))

    assert fields["computed_partner_type"] == "fam"
    assert fields["legacy_partner_type_raw"] == "FAM"
    assert fields["partner_type_computed_at"] is not None
    assert set(fields) == {
        "computed_partner_type",
        "computed_partner_type_source",
        "staffing_partner_type",
        "legacy_partner_type_raw",
        "legacy_partner_type",
        "partner_type_matches",
        "partner_type_is_shared",
        "partner_type_reason",
        "partner_type_computed_at",
    }
