"""Partner-level derived data: partner type, computed status, reconciliation."""

from .computed_status import STATUS_LABELS, ComputedStatus, compute_partner_status, extract_weekly_data_points
from .partner_type import (
    CANONICAL_PARTNER_TYPE_LABELS,
    CANONICAL_PARTNER_TYPES,
    PartnerTypeResult,
    build_partner_type_persistence_fields,
    compute_partner_type,
)

__all__ = [
    "CANONICAL_PARTNER_TYPES",
    "CANONICAL_PARTNER_TYPE_LABELS",
    "ComputedStatus",
    "PartnerTypeResult",
    "STATUS_LABELS",
    "build_partner_type_persistence_fields",
    "compute_partner_type",
    "compute_partner_status",
    "extract_weekly_data_points",
]
