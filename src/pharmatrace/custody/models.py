"""SQLAlchemy models for custody ledgers, their hash-chained steps, quality checks and access log."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmatrace.common.models import Base, TimestampMixin, generate_uuid, utcnow

# prev_hash of the first step in every chain
GENESIS_HASH = "0" * 64


class CustodyLedgerModel(Base, TimestampMixin):
    __tablename__ = "custody_ledgers"
    __table_args__ = (
        UniqueConstraint("batch_id", name="uq_custody_ledgers_batch_id"),
        UniqueConstraint("batch_id", "batch_number", name="uq_custody_ledgers_batch_id_batch_number"),
        UniqueConstraint("scan_code", name="uq_custody_ledgers_scan_code"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    batch_pk: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    batch_id: Mapped[str] = mapped_column(String(32), nullable=False)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)
    scan_code: Mapped[str] = mapped_column(String(150), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    participants: Mapped[list] = mapped_column(JSON, default=list)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    # Recall: independent of the batch's own recall flag
    is_recalled: Mapped[bool] = mapped_column(Boolean, default=False)
    recall_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    recall_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recalled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recall_action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    affected_units: Mapped[list] = mapped_column(JSON, default=list)

    steps: Mapped[list["CustodyStepModel"]] = relationship(
        back_populates="ledger", order_by="CustodyStepModel.id", lazy="selectin",
    )
    quality_checks: Mapped[list["QualityCheckModel"]] = relationship(
        order_by="QualityCheckModel.checked_at", lazy="selectin",
    )
    access_log: Mapped[list["AccessLogModel"]] = relationship(
        order_by="AccessLogModel.id", lazy="selectin",
    )


class CustodyStepModel(Base):
    """One append-only custody step, linked to its predecessor by ``prev_hash``."""
    __tablename__ = "custody_steps"
    __table_args__ = (
        UniqueConstraint("ledger_id", "prev_hash", name="uq_custody_steps_prev_hash"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("custody_ledgers.id"), nullable=False, index=True
    )
    step_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_name: Mapped[str] = mapped_column(String(255), default="")
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    location: Mapped[dict] = mapped_column(JSON, default=dict)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    anchor_tx_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    anchor_block_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    anchor_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verification_method: Mapped[str] = mapped_column(String(20), default="manual")

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    step_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    seal: Mapped[str] = mapped_column(String(64), nullable=False)

    ledger: Mapped["CustodyLedgerModel"] = relationship(back_populates="steps")


class QualityCheckModel(Base):
    __tablename__ = "custody_quality_checks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    ledger_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("custody_ledgers.id"), nullable=False, index=True
    )
    check_type: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(10), nullable=False)
    value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    checked_by: Mapped[str] = mapped_column(String(36), nullable=False)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AccessLogModel(Base):
    __tablename__ = "custody_access_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("custody_ledgers.id"), nullable=False, index=True
    )
    accessed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    access_type: Mapped[str] = mapped_column(String(10), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    accessed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
