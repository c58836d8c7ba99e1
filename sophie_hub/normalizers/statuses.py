"""
Lifecycle status normalization for partners and staff.

Partner weekly statuses are free text typed into spreadsheets ("On track",
"At risk - low sales", "Paused for Q4"). They are folded into a small set of
buckets with partial, case-insensitive keyword matching; buckets are checked
from most to least severe and the first hit wins.
"""

from __future__ import annotations

from typing import Mapping, Sequence

STATUS_BUCKETS: Mapping[str, Sequence[str]] = {
    "churned": ("churn", "cancel", "terminated", "ended"),
    "offboarding": ("offboard", "off-board", "winding down", "ending"),
    "warning": (
        "at risk",
        "at-risk",
        "under-perform",
        "underperform",
        "struggling",
        "needs attention",
        "concern",
        "issue",
        "problem",
        "declining",
    ),
    "paused": ("pause", "hold", "on hold", "on-hold", "inactive", "dormant", "suspended"),
    "onboarding": (
        "onboard",
        "on-board",
        "waiting",
        "new",
        "setup",
        "set-up",
        "setting up",
        "getting started",
        "welcome",
    ),
    "healthy": (
        "high perform",
        "high-perform",
        "outperform",
        "out-perform",
        "excellent",
        "great",
        "on track",
        "on-track",
        "active",
        "subscribed",
        "healthy",
        "good",
        "stable",
        "strong",
        "growing",
    ),
}

BUCKET_ORDER: tuple[str, ...] = ("churned", "offboarding", "warning", "paused", "onboarding", "healthy")

BUCKET_LABELS: Mapping[str, str] = {
    "healthy": "Healthy",
    "onboarding": "Onboarding",
    "warning": "Needs Attention",
    "paused": "Paused",
    "offboarding": "Offboarding",
    "churned": "Churned",
    "unknown": "Unknown (Unmapped)",
    "no-data": "No Data",
}

# Partner.status value implied by a bucket; unknown/no-data leave status alone.
BUCKET_TO_STATUS: Mapping[str, str | None] = {
    "healthy": "active",
    "onboarding": "onboarding",
    "warning": "at_risk",
    "paused": "paused",
    "offboarding": "offboarding",
    "churned": "churned",
    "unknown": None,
    "no-data": None,
}


def bucket_status(status: str | None) -> str:
    """Return the bucket name for a free-text status."""
    if status is None or not str(status).strip():
        return "no-data"
    lowered = str(status).strip().lower()
    for bucket in BUCKET_ORDER:
        if any(keyword in lowered for keyword in STATUS_BUCKETS[bucket]):
            return bucket
    return "unknown"


def partner_status_from_text(status: str | None) -> str | None:
    return BUCKET_TO_STATUS[bucket_status(status)]


STAFF_STATUSES: tuple[str, ...] = ("onboarding", "active", "on_leave", "offboarding", "departed")

_STAFF_STATUS_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("departed", ("departed", "terminated", "resigned", "former", "left", "inactive", "alumni")),
    ("offboarding", ("offboard", "off-board", "notice period", "leaving")),
    ("on_leave", ("on leave", "on_leave", "leave", "sabbatical", "parental", "maternity", "paternity")),
    ("onboarding", ("onboard", "on-board", "new hire", "starting", "pending start")),
    ("active", ("active", "current", "employed", "full time", "full-time", "part time", "part-time")),
)


def normalize_staff_status(value: str | None) -> str | None:
    """
    Map a free-text staff status to one of ``STAFF_STATUSES``.

    Canonical values pass through unchanged; unrecognized text returns ``None``
    so callers can leave the stored value alone.
    """
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if not lowered:
        return None
    canonical = lowered.replace(" ", "_").replace("-", "_")
    if canonical in STAFF_STATUSES:
        return canonical
    for status, keywords in _STAFF_STATUS_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return status
    return None
