"""SQLAlchemy models for batch records, their anchor history and distribution history."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmatrace.common.models import Base, TimestampMixin, generate_uuid, utcnow


def generate_batch_id() -> str:
    return f"DRUG_{uuid.uuid4().hex[:8].upper()}"


class BatchModel(Base, TimestampMixin):
    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("batch_id", name="uq_batches_batch_id"),
        UniqueConstraint("batch_number", name="uq_batches_batch_number"),
        UniqueConstraint("anchor_id", name="uq_batches_anchor_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    batch_id: Mapped[str] = mapped_column(String(32), nullable=False, default=generate_batch_id)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    # Product
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active_ingredient: Mapped[str] = mapped_column(String(500), nullable=False)
    dosage: Mapped[str] = mapped_column(String(100), nullable=False)
    form: Mapped[str] = mapped_column(String(30), nullable=False, default="tablet")

    production_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    quality_test: Mapped[dict] = mapped_column(JSON, default=dict)
    storage: Mapped[dict] = mapped_column(JSON, default=dict)

    manufacturer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)

    # Recall: once set, never cleared
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    is_recalled: Mapped[bool] = mapped_column(Boolean, default=False)
    recall_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    recall_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recalled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Ledger anchor
    anchor_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    anchor_tx_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    anchor_block_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    anchor_data_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    anchor_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    anchor_state: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    anchor_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scannable code payload
    scan_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    scan_image_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scan_anchor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scan_verification_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scan_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    anchor_history: Mapped[list["AnchorEventModel"]] = relationship(
        back_populates="batch", order_by="AnchorEventModel.created_at", lazy="selectin",
    )
    distribution_history: Mapped[list["DistributionEventModel"]] = relationship(
        back_populates="batch", order_by="DistributionEventModel.seq", lazy="selectin",
    )


class AnchorEventModel(Base):
    """One ledger interaction for a batch (create, recall, reanchor)."""
    __tablename__ = "batch_anchor_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    batch_pk: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    block_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    batch: Mapped["BatchModel"] = relationship(back_populates="anchor_history")


class DistributionEventModel(Base):
    """Append-only location/ownership change of a batch."""
    __tablename__ = "batch_distribution_events"

    seq: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_pk: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    location_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    organization_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    batch: Mapped["BatchModel"] = relationship(back_populates="distribution_history")
