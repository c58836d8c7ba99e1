"""
Partner-type reconciliation.

Recomputes every partner's type from its current ``source_data`` and staffing
names, compares the result to the persisted columns and rewrites partners
whose persisted values have drifted. Running it twice in a row is a no-op the
second time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy import or_
from sqlalchemy.orm import Session

from sophie_hub.models import Partner, db
from sophie_hub.sync import metrics

from .partner_type import build_partner_type_persistence_fields, partner_type_label

DEFAULT_SCAN_LIMIT = 5000
SAMPLE_SIZE = 25

# partner_type_computed_at is excluded: it changes on every computation.
COMPARED_FIELDS: tuple[str, ...] = (
    "computed_partner_type",
    "computed_partner_type_source",
    "staffing_partner_type",
    "legacy_partner_type_raw",
    "legacy_partner_type",
    "partner_type_matches",
    "partner_type_is_shared",
    "partner_type_reason",
)


def _normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _are_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) or isinstance(b, str):
        return _normalize_text(a) == _normalize_text(b)
    return a == b


@dataclass(frozen=True)
class PartnerTypeProjection:
    id: int
    brand_name: str | None
    partner_code: str | None
    client_name: str | None
    update_fields: Mapping[str, Any]
    legacy_mismatch: bool
    persistence_drift: bool
    persisted_partner_type: str | None
    persisted_partner_type_source: str | None
    persisted_partner_type_matches: bool | None
    persisted_partner_type_computed_at: datetime | None

    @property
    def computed_partner_type(self) -> str | None:
        return self.update_fields["computed_partner_type"]

    def to_dict(self) -> dict[str, Any]:
        fields = self.update_fields
        computed_at = self.persisted_partner_type_computed_at
        return {
            "id": self.id,
            "brand_name": self.brand_name,
            "partner_code": self.partner_code,
            "client_name": self.client_name,
            "computed_partner_type": fields["computed_partner_type"],
            "computed_partner_type_label": partner_type_label(fields["computed_partner_type"]),
            "computed_partner_type_source": fields["computed_partner_type_source"],
            "staffing_partner_type": fields["staffing_partner_type"],
            "staffing_partner_type_label": partner_type_label(fields["staffing_partner_type"]),
            "legacy_partner_type_raw": fields["legacy_partner_type_raw"],
            "legacy_partner_type": fields["legacy_partner_type"],
            "legacy_partner_type_label": partner_type_label(fields["legacy_partner_type"]),
            "partner_type_matches": fields["partner_type_matches"],
            "partner_type_is_shared": fields["partner_type_is_shared"],
            "partner_type_reason": fields["partner_type_reason"],
            "legacy_mismatch": self.legacy_mismatch,
            "persistence_drift": self.persistence_drift,
            "persisted_partner_type": self.persisted_partner_type,
            "persisted_partner_type_source": self.persisted_partner_type_source,
            "persisted_partner_type_matches": self.persisted_partner_type_matches,
            "persisted_partner_type_computed_at": computed_at.isoformat() if computed_at else None,
        }


def project_partner(partner: Partner, *, computed_at: datetime | None = None) -> PartnerTypeProjection:
    computed = build_partner_type_persistence_fields(
        partner.source_data,
        pod_leader_name=partner.pod_leader_name,
        brand_manager_name=partner.brand_manager_name,
        computed_at=computed_at,
    )
    drift = any(not _are_equal(getattr(partner, name), computed[name]) for name in COMPARED_FIELDS)
    return PartnerTypeProjection(
        id=partner.id,
        brand_name=partner.brand_name,
        partner_code=partner.partner_code,
        client_name=partner.client_name,
        update_fields=computed,
        legacy_mismatch=computed["partner_type_matches"] is False,
        persistence_drift=drift,
        persisted_partner_type=partner.computed_partner_type,
        persisted_partner_type_source=partner.computed_partner_type_source,
        persisted_partner_type_matches=partner.partner_type_matches,
        persisted_partner_type_computed_at=partner.partner_type_computed_at,
    )


def _summary(projections: list[PartnerTypeProjection]) -> dict[str, int]:
    return {
        "legacy_mismatch_count": sum(1 for p in projections if p.legacy_mismatch),
        "persistence_drift_count": sum(1 for p in projections if p.persistence_drift),
    }


def _fetch_partners(session: Session, limit: int, search: str | None = None) -> list[Partner]:
    query = session.query(Partner)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Partner.brand_name.ilike(pattern),
                Partner.client_name.ilike(pattern),
                Partner.partner_code.ilike(pattern),
            )
        )
    return query.order_by(Partner.brand_name.asc(), Partner.id.asc()).limit(limit).all()


@dataclass(slots=True)
class ProjectionList:
    rows: list[dict[str, Any]]
    total: int
    has_more: bool
    summary: dict[str, int]


def list_partner_type_projections(
    *,
    limit: int = 50,
    offset: int = 0,
    search: str | None = None,
    mismatch_only: bool = False,
    drift_only: bool = False,
    session: Session | None = None,
) -> ProjectionList:
    """Computed-vs-persisted partner type view, filtered and paginated."""
    session = session or db.session
    projected = [project_partner(p) for p in _fetch_partners(session, DEFAULT_SCAN_LIMIT, search)]

    filtered = projected
    if mismatch_only:
        filtered = [row for row in filtered if row.legacy_mismatch]
    if drift_only:
        filtered = [row for row in filtered if row.persistence_drift]

    page = filtered[offset : offset + limit]
    return ProjectionList(
        rows=[row.to_dict() for row in page],
        total=len(filtered),
        has_more=len(filtered) > offset + limit,
        summary=_summary(projected),
    )


@dataclass(slots=True)
class ReconciliationResult:
    dry_run: bool
    scanned: int
    candidates: int
    updated: int
    failed: int
    sample: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "scanned": self.scanned,
            "candidates": self.candidates,
            "updated": self.updated,
            "failed": self.failed,
            "sample": list(self.sample),
            "errors": list(self.errors),
            "summary": dict(self.summary),
        }


def _record_failure(errors: list[dict[str, Any]], partner_id: int, brand_name: str | None, exc: Exception) -> None:
    errors.append({"id": partner_id, "brand_name": brand_name, "error": str(exc)})
    if has_app_context():
        current_app.logger.warning(
            "Partner type reconciliation failed for partner %s: %s", partner_id, exc, exc_info=True
        )


def reconcile_partner_types(
    *,
    dry_run: bool = True,
    limit: int = DEFAULT_SCAN_LIMIT,
    mismatch_only: bool = False,
    drift_only: bool = False,
    session: Session | None = None,
) -> ReconciliationResult:
    """
    Rewrite the persisted partner-type columns of every drifted partner.

    Only partners whose persisted fields differ from a fresh computation are
    candidates; ``mismatch_only`` narrows further to partners whose staffing
    type disagrees with the legacy label. Each partner commits on its own so
    one failure does not roll back the rest.
    """
    session = session or db.session
    partners = _fetch_partners(session, limit)
    computed_at = datetime.now(timezone.utc)
    by_id = {partner.id: partner for partner in partners}
    errors: list[dict[str, Any]] = []
    projected: list[PartnerTypeProjection] = []
    for partner in partners:
        try:
            projected.append(project_partner(partner, computed_at=computed_at))
        except Exception as exc:
            _record_failure(errors, partner.id, partner.brand_name, exc)

    targets = [row for row in projected if row.persistence_drift]
    if mismatch_only:
        targets = [row for row in targets if row.legacy_mismatch]
    if drift_only:
        targets = [row for row in targets if row.persistence_drift]

    updated = 0
    if not dry_run:
        for row in targets:
            partner = by_id[row.id]
            try:
                for name, value in row.update_fields.items():
                    setattr(partner, name, value)
                session.commit()
                updated += 1
            except Exception as exc:
                session.rollback()
                _record_failure(errors, row.id, row.brand_name, exc)
        metrics.record_reconciliation("updated", updated)
        metrics.record_reconciliation("failed", len(errors))

    result = ReconciliationResult(
        dry_run=dry_run,
        scanned=len(partners),
        candidates=len(targets),
        updated=updated,
        failed=len(errors),
        sample=[
            {
                "id": row.id,
                "brand_name": row.brand_name,
                "computed_partner_type": row.computed_partner_type,
                "persisted_partner_type": row.persisted_partner_type,
                "legacy_mismatch": row.legacy_mismatch,
                "persistence_drift": row.persistence_drift,
            }
            for row in targets[:SAMPLE_SIZE]
        ],
        errors=errors,
        summary=_summary(projected),
    )

    if has_app_context():
        current_app.logger.info(
            "Partner-type reconciliation finished",
            extra={
                "dry_run": dry_run,
                "scanned": result.scanned,
                "candidates": result.candidates,
                "updated": result.updated,
                "failed": result.failed,
            },
        )
    return result
