"""SQLAlchemy model for the write-only scan log."""

from datetime import datetime

from sqlalchemy import DateTime, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.common.models import Base, generate_uuid, utcnow


class ScanLogModel(Base):
    __tablename__ = "scan_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    raw_input: Mapped[str] = mapped_column(Text, nullable=False)
    token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    token_source: Mapped[str | None] = mapped_column(String(30), nullable=True)

    batch_pk: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    batch_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    anchor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    alert_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    strategy: Mapped[str | None] = mapped_column(String(40), nullable=True)
    attempted: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
