"""Participant registry — unique identifiers enforced by the store, never by lookups."""

import re
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import insert_unique
from pharmatrace.common.exceptions import DuplicateKeyError, NotFoundError, ValidationError
from pharmatrace.common.logging import get_logger
from pharmatrace.common.security import Actor, Role, parse_role
from pharmatrace.participants.models import ParticipantModel

logger = get_logger("participants")

_UNIQUE_COLUMNS = ("username", "organization_id", "patient_id")


def _username_base(email: str, name: str) -> str:
    local = email.split("@", 1)[0] if email else name
    base = re.sub(r"[^a-z0-9]+", "", local.lower())
    return base[:40] or "user"


def _new_patient_id() -> str:
    return f"PT{secrets.randbelow(10**8):08d}"


class ParticipantService:
    """Participant registration and identity provisioning."""

    def __init__(self, settings: PharmaTraceSettings):
        self.settings = settings

    async def register(
        self,
        session: AsyncSession,
        role: Role | str,
        name: str,
        username: str,
        email: str = "",
        organization_id: str | None = None,
        patient_id: str | None = None,
    ) -> ParticipantModel:
        """Insert a participant; uniqueness violations raise DuplicateKeyError(field)."""
        role = parse_role(role)
        if not name.strip() or not username.strip():
            raise ValidationError("name and username are required")
        if role is Role.PATIENT and organization_id:
            raise ValidationError("patients do not belong to an organization")

        participant = ParticipantModel(
            role=role.value,
            name=name.strip(),
            email=email,
            username=username.strip(),
            organization_id=organization_id,
            patient_id=patient_id,
        )
        await insert_unique(session, participant, "participants", _UNIQUE_COLUMNS)
        return participant

    async def provision_from_identity(
        self,
        session: AsyncSession,
        email: str,
        name: str,
        role: Role | str = Role.PATIENT,
    ) -> ParticipantModel:
        """Create a participant from an external-identity login.

        Candidates are proposed and inserted directly; the unique constraints
        decide. On a username or patient id conflict a new candidate is
        proposed, up to ``max_identifier_attempts`` times.
        """
        role = parse_role(role)
        base = _username_base(email, name)
        username = base
        patient_id = _new_patient_id() if role is Role.PATIENT else None

        for attempt in range(1, self.settings.max_identifier_attempts + 1):
            try:
                return await self.register(
                    session, role, name or base, username,
                    email=email, patient_id=patient_id,
                )
            except DuplicateKeyError as exc:
                logger.info(
                    "Identifier conflict on %s (attempt %d), retrying", exc.field, attempt,
                )
                if exc.field == "username":
                    username = f"{base}{secrets.randbelow(10**6):06d}"
                elif exc.field == "patient_id":
                    patient_id = _new_patient_id()
                else:
                    raise

        raise DuplicateKeyError(
            "username",
            f"Could not derive a unique identifier for '{email}' after "
            f"{self.settings.max_identifier_attempts} attempts",
        )

    async def get(self, session: AsyncSession, participant_id: str) -> ParticipantModel:
        participant = await session.get(ParticipantModel, participant_id)
        if participant is None:
            raise NotFoundError(f"Participant '{participant_id}' not found")
        return participant

    async def get_by_username(
        self, session: AsyncSession, username: str
    ) -> ParticipantModel | None:
        result = await session.execute(
            select(ParticipantModel).where(ParticipantModel.username == username)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def as_actor(participant: ParticipantModel) -> Actor:
        """Build the actor context for a registered participant."""
        return Actor(
            id=participant.id,
            role=participant.role,
            organization_id=participant.organization_id,
            name=participant.name,
        )
