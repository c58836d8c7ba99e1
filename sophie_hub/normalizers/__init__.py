"""Pure normalizers for marketplace names and lifecycle statuses."""

from .marketplaces import (
    AMAZON_MARKETPLACES,
    AmazonMarketplace,
    get_marketplace_by_code,
    infer_marketplace_code_from_text,
    normalize_marketplace_code,
    normalize_marketplace_codes,
)
from .statuses import (
    BUCKET_TO_STATUS,
    STAFF_STATUSES,
    bucket_status,
    normalize_staff_status,
    partner_status_from_text,
)

__all__ = [
    "AMAZON_MARKETPLACES",
    "AmazonMarketplace",
    "get_marketplace_by_code",
    "infer_marketplace_code_from_text",
    "normalize_marketplace_code",
    "normalize_marketplace_codes",
    "BUCKET_TO_STATUS",
    "STAFF_STATUSES",
    "bucket_status",
    "normalize_staff_status",
    "partner_status_from_text",
]
