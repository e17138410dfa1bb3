"""SQLAlchemy model for supply-chain participants."""

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.common.models import Base, TimestampMixin, generate_uuid


class ParticipantModel(Base, TimestampMixin):
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("username", name="uq_participants_username"),
        UniqueConstraint("organization_id", name="uq_participants_organization_id"),
        UniqueConstraint("patient_id", name="uq_participants_patient_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    role: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", index=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    patient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
