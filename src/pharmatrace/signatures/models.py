"""SQLAlchemy model for digital signature records."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.common.models import Base, TimestampMixin, generate_uuid


class SignatureModel(Base, TimestampMixin):
    __tablename__ = "signatures"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    target_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    signed_by: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    signed_by_name: Mapped[str] = mapped_column(String(255), default="")
    signed_by_role: Mapped[str] = mapped_column(String(20), nullable=False)

    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    canonical_version: Mapped[str] = mapped_column(String(10), nullable=False)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Certificate
    certificate_serial: Mapped[str] = mapped_column(String(64), nullable=False)
    ca_provider: Mapped[str] = mapped_column(String(30), nullable=False)
    ca_name: Mapped[str] = mapped_column(String(255), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    certificate_status: Mapped[str] = mapped_column(String(20), default="valid")

    # Timestamp authority proof
    timestamp_token: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tsa_url: Mapped[str] = mapped_column(String(255), nullable=False)

    purpose: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
