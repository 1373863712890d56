from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from isp_billing.db.base import Base


class BillingRun(Base):
    __tablename__ = "billing_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    operator_id: Mapped[str] = mapped_column(String(60), nullable=False)
    billing_days: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    selected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    generated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    errors_json: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_billing_runs_run_date_mode", "run_date", "mode"),
    )
