"""Signature service — sign, verify and revoke canonical record subsets."""

import hmac
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.exceptions import (
    AuthorizationError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from pharmatrace.common.hashing import hmac_hex
from pharmatrace.common.logging import get_logger
from pharmatrace.common.models import as_utc, utcnow
from pharmatrace.common.security import Actor, Role, require_roles
from pharmatrace.signatures.canonical import (
    CANONICAL_VERSION,
    TARGET_TYPES,
    compute_data_hash,
    load_target,
)
from pharmatrace.signatures.models import SignatureModel
from pharmatrace.signatures.providers import get_provider, issue_certificate, timestamp_token

logger = get_logger("signatures")

DEFAULT_PURPOSE = "Origin and data integrity attestation"


def signer_key(root_key: str, signer_id: str) -> str:
    """Per-signer key derived from a keyring key."""
    return hmac_hex(root_key, f"signer|{signer_id}")


class SignatureService:
    """Digital signatures over versioned canonical field subsets."""

    def __init__(self, settings: PharmaTraceSettings, events=None):
        self.settings = settings
        self.events = events

    # ── Sign ──

    async def sign(
        self,
        session: AsyncSession,
        target_type: str,
        target_id: str,
        signer: Actor,
        ca_provider: str | None = None,
        purpose: str | None = None,
        now: datetime | None = None,
    ) -> SignatureModel:
        """Sign the current state of a record. Patients cannot sign."""
        if signer.role is Role.PATIENT:
            raise AuthorizationError("Patients cannot create digital signatures")
        if target_type not in TARGET_TYPES:
            raise ValidationError(f"Unsupported signature target type '{target_type}'")

        now = as_utc(now) if now else utcnow()
        provider = get_provider(ca_provider or self.settings.default_ca_provider)
        target = await load_target(session, target_type, str(target_id))
        data_hash = compute_data_hash(target_type, target, CANONICAL_VERSION)

        key_version = self.settings.current_hmac_version
        root_key = self.settings.current_hmac_key
        certificate = issue_certificate(provider, now, self.settings.certificate_validity_days)

        record = SignatureModel(
            target_type=target_type,
            target_id=str(target_id),
            signed_by=signer.id,
            signed_by_name=signer.name,
            signed_by_role=signer.role.value,
            data_hash=data_hash,
            canonical_version=CANONICAL_VERSION,
            signature=hmac_hex(signer_key(root_key, signer.id), data_hash),
            key_version=key_version,
            certificate_serial=certificate.serial,
            ca_provider=provider.id,
            ca_name=provider.name,
            valid_from=certificate.valid_from,
            valid_to=certificate.valid_to,
            certificate_status="valid",
            timestamp_token=timestamp_token(root_key, data_hash, now),
            timestamped_at=now,
            tsa_url=self.settings.tsa_url,
            purpose=purpose or DEFAULT_PURPOSE,
            status="active",
        )
        session.add(record)
        await session.flush()
        logger.info(
            "Signed %s %s as %s (%s)", target_type, target_id, signer.id, provider.id,
        )

        if self.events:
            self.events.publish("signature.created", {
                "signature_id": record.id,
                "target_type": target_type,
                "target_id": record.target_id,
                "signed_by": signer.id,
                "ca_provider": provider.id,
            })
        return record

    # ── Read ──

    async def get(self, session: AsyncSession, signature_id: str) -> SignatureModel:
        record = await session.get(SignatureModel, signature_id)
        if record is None:
            raise NotFoundError(f"Signature '{signature_id}' not found")
        return record

    async def list_for_target(
        self, session: AsyncSession, target_type: str, target_id: str,
    ) -> list[SignatureModel]:
        """All signatures of a record, oldest first."""
        result = await session.execute(
            select(SignatureModel)
            .where(
                SignatureModel.target_type == target_type,
                SignatureModel.target_id == str(target_id),
            )
            .order_by(SignatureModel.created_at.asc(), SignatureModel.id)
        )
        return list(result.scalars().all())

    # ── Verify ──

    async def verify(
        self, session: AsyncSession, signature_id: str, now: datetime | None = None,
    ) -> dict[str, Any]:
        """Check a signature against the current target state and the wall clock.

        Returns ``{"valid": bool, "reason": str | None, ...}``; never raises
        for an invalid signature.
        """
        now = as_utc(now) if now else utcnow()
        record = await self.get(session, signature_id)
        result: dict[str, Any] = {
            "signature_id": record.id,
            "target_type": record.target_type,
            "target_id": record.target_id,
            "signed_by": record.signed_by,
            "ca_provider": record.ca_provider,
            "valid": False,
            "reason": None,
        }

        reason = await self._check(session, record, now)
        if reason is None:
            result["valid"] = True
        else:
            result["reason"] = reason
        return result

    async def assert_valid(
        self, session: AsyncSession, signature_id: str, now: datetime | None = None,
    ) -> SignatureModel:
        outcome = await self.verify(session, signature_id, now)
        if not outcome["valid"]:
            raise SignatureVerificationError(outcome["reason"])
        return await self.get(session, signature_id)

    # ── Revoke ──

    async def revoke(
        self, session: AsyncSession, signature_id: str, reason: str, actor: Actor,
    ) -> SignatureModel:
        """Irreversibly revoke a signature. Admin only."""
        require_roles(actor, Role.ADMIN, message="Only admins can revoke signatures")
        if not reason or not reason.strip():
            raise ValidationError("A revocation reason is required")

        record = await self.get(session, signature_id)
        if record.status == "revoked":
            raise ValidationError(f"Signature '{signature_id}' is already revoked")

        record.status = "revoked"
        record.revocation_reason = reason.strip()
        record.revoked_at = utcnow()
        record.revoked_by = actor.id
        await session.flush()
        logger.warning("Signature %s revoked by %s", record.id, actor.id)

        if self.events:
            self.events.publish("signature.revoked", {
                "signature_id": record.id,
                "target_type": record.target_type,
                "target_id": record.target_id,
                "reason": record.revocation_reason,
                "revoked_by": actor.id,
            })
        return record

    # ── Maintenance ──

    async def refresh_certificate_statuses(
        self, session: AsyncSession, now: datetime | None = None,
    ) -> int:
        """Mark signatures whose certificate window has lapsed as expired.

        Verification does not depend on this; it checks the window itself.
        """
        now = as_utc(now) if now else utcnow()
        result = await session.execute(
            select(SignatureModel).where(SignatureModel.certificate_status == "valid")
        )
        updated = 0
        for record in result.scalars().all():
            if as_utc(record.valid_to) >= now:
                continue
            record.certificate_status = "expired"
            if record.status == "active":
                record.status = "expired"
            updated += 1
        await session.flush()
        if updated:
            logger.info("Marked %d signature certificate(s) expired", updated)
        return updated

    # ── Internal helpers ──

    async def _check(
        self, session: AsyncSession, record: SignatureModel, now: datetime,
    ) -> str | None:
        """First reason the signature is not valid, or ``None``."""
        if record.status != "active":
            return f"Signature is {record.status}"
        if record.certificate_status == "revoked":
            return "Certificate is revoked"
        if now < as_utc(record.valid_from):
            return "Certificate is not yet valid"
        if now > as_utc(record.valid_to):
            return "Certificate has expired"

        try:
            target = await load_target(session, record.target_type, record.target_id)
        except NotFoundError:
            return "Signed record no longer exists"
        current_hash = compute_data_hash(record.target_type, target, record.canonical_version)
        if not hmac.compare_digest(current_hash, record.data_hash):
            return "Data hash mismatch: the record changed after signing"

        root_key = self.settings.hmac_keyring.get(record.key_version)
        if root_key is None:
            return f"Signing key version {record.key_version} is not in the keyring"
        expected = hmac_hex(signer_key(root_key, record.signed_by), record.data_hash)
        if not hmac.compare_digest(expected, record.signature):
            return "Signature does not match"

        expected_token = timestamp_token(root_key, record.data_hash, record.timestamped_at)
        if not hmac.compare_digest(expected_token, record.timestamp_token):
            return "Timestamp proof does not match"
        return None
