"""
Entity tables the sync engine creates and updates.

Each entity carries a ``version_id`` column wired into SQLAlchemy's optimistic
concurrency check, so two syncs racing on the same row surface a
``StaleDataError`` instead of silently clobbering one another.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Partner(BaseModel):
    __tablename__ = "partners"

    id: Mapped[int] = mapped_column(primary_key=True)
    partner_code: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    brand_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    client_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    client_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    tier: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    base_fee: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    onboarding_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    pod_leader_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    brand_manager_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    computed_partner_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    computed_partner_type_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    staffing_partner_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    legacy_partner_type_raw: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    legacy_partner_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    partner_type_matches: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    partner_type_is_shared: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    partner_type_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    partner_type_computed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    version_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)

    asins = relationship("Asin", back_populates="partner", passive_deletes=True)
    weekly_statuses = relationship(
        "WeeklyStatus",
        back_populates="partner",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WeeklyStatus.week_start_date",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Partner id={self.id} brand={self.brand_name!r}>"


class Staff(BaseModel):
    __tablename__ = "staff"

    id: Mapped[int] = mapped_column(primary_key=True)
    staff_code: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    role: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    account_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    # Set by an operator; the classifier output in account_type never feeds back as an override.
    account_type_override: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    hire_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    source_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    version_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Staff id={self.id} email={self.email!r}>"


class Asin(BaseModel):
    __tablename__ = "asins"

    id: Mapped[int] = mapped_column(primary_key=True)
    partner_id: Mapped[int | None] = mapped_column(
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    asin_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    sku: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    marketplace: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    source_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    version_id: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)

    partner = relationship("Partner", back_populates="asins")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Asin id={self.id} asin={self.asin_code!r}>"


class WeeklyStatus(BaseModel):
    """One status cell per partner per week, keyed by the Monday of that week."""

    __tablename__ = "weekly_statuses"

    id: Mapped[int] = mapped_column(primary_key=True)
    partner_id: Mapped[int] = mapped_column(
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False,
    )
    week_start_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    week_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    year: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    status: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    partner = relationship("Partner", back_populates="weekly_statuses")

    __table_args__ = (
        UniqueConstraint("partner_id", "week_start_date", name="uq_weekly_statuses_partner_week"),
        Index("ix_weekly_statuses_week", "week_start_date"),
    )

    def __repr__(self) -> str:
        return f"<WeeklyStatus partner={self.partner_id} week={self.week_start_date}>"


ENTITY_MODELS = {
    "partners": Partner,
    "staff": Staff,
    "asins": Asin,
}
