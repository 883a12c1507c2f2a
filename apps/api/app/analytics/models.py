from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.platform.refresh.models import utcnow


class AdvisorMapping(Base):
    __tablename__ = "advisor_mapping"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    advisor_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    anonymous_advisor_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    anonymous_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_frequency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AdvisorPeriodRecord(Base):
    __tablename__ = "advisor_period_record"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    advisor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    orion_representative_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    gross_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    commissions_paid: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount_earned: Mapped[float | None] = mapped_column(Float, nullable=True)
    billing_frequency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    billing_style: Mapped[str | None] = mapped_column(String(64), nullable=True)
    data_source: Mapped[str] = mapped_column(String(64), nullable=False)
    is_manually_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_gross_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    original_commissions_paid: Mapped[float | None] = mapped_column(Float, nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    overridden_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    overridden_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("advisor_name", "period", name="uq_advisor_period_record_advisor_period"),
        Index("ix_advisor_period_record_period_start", "period_start"),
    )
