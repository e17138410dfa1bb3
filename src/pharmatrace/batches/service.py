"""Batch service — create, recall, distribution updates and anchor bookkeeping.

Every method here runs inside the caller's session. Operations that must not
hold a transaction open across the external ledger call are orchestrated by
``pharmatrace.batches.pipeline.AnchoringPipeline``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pharmatrace.anchor.client import AnchorReceipt
from pharmatrace.batches.models import AnchorEventModel, BatchModel, DistributionEventModel
from pharmatrace.batches.payload import (
    build_scan_payload,
    current_distribution,
    days_until_expiry,
    encode_scan_payload,
    is_expired,
    is_near_expiry,
)
from pharmatrace.batches.schemas import BatchCreate, DistributionUpdate
from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import duplicate_field, insert_unique
from pharmatrace.common.exceptions import (
    AuthorizationError,
    ExternalAnchorError,
    NotFoundError,
    ValidationError,
)
from pharmatrace.common.logging import get_logger
from pharmatrace.common.models import iso, utcnow
from pharmatrace.common.schemas import parse_input
from pharmatrace.common.security import Actor, Role, require_roles
from pharmatrace.custody.models import CustodyLedgerModel
from pharmatrace.custody.projection import current_location

logger = get_logger("batches")


class BatchService:
    """Batch record lifecycle."""

    def __init__(self, settings: PharmaTraceSettings, events=None):
        self.settings = settings
        self.events = events

    # ── Create ──

    async def insert_batch(
        self, session: AsyncSession, data: BatchCreate | dict[str, Any], creator: Actor,
    ) -> BatchModel:
        """Validate and insert a batch in ``pending`` anchor state.

        Uniqueness of ``batch_number`` is left to the storage constraint; a
        violation surfaces as DuplicateKeyError(field="batch_number").
        """
        require_roles(creator, Role.MANUFACTURER, Role.ADMIN,
                      message="Only manufacturers and admins can create batches")
        data = parse_input(BatchCreate, data)

        manufacturer_id = data.manufacturer_id or creator.id
        if creator.role is Role.MANUFACTURER and manufacturer_id != creator.id:
            raise AuthorizationError("Manufacturers can only create their own batches")

        batch = BatchModel(
            batch_number=data.batch_number,
            name=data.name,
            active_ingredient=data.active_ingredient,
            dosage=data.dosage,
            form=data.form,
            production_date=data.production_date,
            expiry_date=data.expiry_date,
            quality_test=data.quality_test.model_dump(mode="json"),
            storage=data.storage.model_dump(mode="json"),
            manufacturer_id=manufacturer_id,
            created_by=creator.id,
            anchor_state="pending",
            anchor_history=[],
            distribution_history=[
                DistributionEventModel(
                    status="production",
                    location_type="factory",
                    organization_id=creator.organization_id,
                    organization_name=creator.name or None,
                    note="Batch created",
                    updated_by=creator.id,
                )
            ],
        )
        await insert_unique(session, batch, "batches", ("batch_number", "batch_id"))
        logger.info("Batch %s (%s) created", batch.batch_id, batch.batch_number)
        return batch

    # ── Read ──

    async def get_batch(self, session: AsyncSession, batch_id: str) -> BatchModel:
        """Look up by public batch id."""
        result = await session.execute(
            select(BatchModel).where(BatchModel.batch_id == batch_id)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError(f"Batch '{batch_id}' not found")
        return batch

    async def get_by_number(self, session: AsyncSession, batch_number: str) -> BatchModel:
        result = await session.execute(
            select(BatchModel).where(BatchModel.batch_number == batch_number)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError(f"Batch number '{batch_number}' not found")
        return batch

    async def _get_by_pk(self, session: AsyncSession, batch_pk: str) -> BatchModel:
        batch = await session.get(BatchModel, batch_pk)
        if batch is None:
            raise NotFoundError(f"Batch '{batch_pk}' not found")
        return batch

    # ── Anchor bookkeeping ──

    async def apply_anchor_result(
        self,
        session: AsyncSession,
        batch_pk: str,
        receipt: AnchorReceipt | None,
        error: ExternalAnchorError | None = None,
        action: str = "create",
    ) -> BatchModel:
        """Record the outcome of an anchor attempt on the batch's anchor sub-record.

        confirmed receipt → confirmed; unconfirmed receipt or timeout →
        pending; any other failure → failed. The error text is kept as a note.
        An anchor id already held by another batch is recorded as failed and
        the batch keeps its previous anchor id.
        """
        batch = await self._get_by_pk(session, batch_pk)

        if receipt is not None:
            state = "confirmed" if receipt.confirmed else "pending"
            try:
                async with session.begin_nested():
                    batch.anchor_id = receipt.anchor_id
                    batch.anchor_tx_ref = receipt.tx_ref
                    batch.anchor_block_ref = receipt.block_ref
                    batch.anchor_data_hash = receipt.data_hash
                    batch.anchor_signature = receipt.signature
                    batch.anchor_error = None
                    batch.anchor_state = state
            except IntegrityError as exc:
                if duplicate_field(exc, "batches", ("anchor_id",)) is None:
                    raise
                # The savepoint rollback expired the batch; reload the stored anchor record
                await session.refresh(batch)
                logger.warning(
                    "Ledger returned anchor id %s already held by another batch; %s marked failed",
                    receipt.anchor_id, batch.batch_id,
                )
                state = "failed"
                batch.anchor_error = f"Anchor id '{receipt.anchor_id}' is already in use"
                receipt = None
        else:
            state = "pending" if error is not None and error.timed_out else "failed"
            batch.anchor_error = error.message if error is not None else "ledger unavailable"
        batch.anchor_state = state

        batch.anchor_history.append(AnchorEventModel(
            action=action,
            state=state,
            tx_ref=receipt.tx_ref if receipt else None,
            block_ref=receipt.block_ref if receipt else None,
            error=batch.anchor_error,
        ))
        await session.flush()
        return batch

    async def record_anchor_event(
        self,
        session: AsyncSession,
        batch_pk: str,
        action: str,
        receipt: AnchorReceipt | None,
        error: ExternalAnchorError | None = None,
    ) -> AnchorEventModel:
        """Append a ledger interaction that does not replace the batch's anchor (e.g. recall)."""
        batch = await self._get_by_pk(session, batch_pk)
        if receipt is not None:
            state = "confirmed" if receipt.confirmed else "pending"
        else:
            state = "pending" if error is not None and error.timed_out else "failed"
        event = AnchorEventModel(
            action=action,
            state=state,
            tx_ref=receipt.tx_ref if receipt else None,
            block_ref=receipt.block_ref if receipt else None,
            error=error.message if error is not None else None,
        )
        batch.anchor_history.append(event)
        await session.flush()
        return event

    async def attach_scan_payload(
        self, session: AsyncSession, batch_pk: str, image_ref: str | None = None,
    ) -> dict[str, Any]:
        """Generate and persist the scannable payload from the batch's final anchor state."""
        batch = await self._get_by_pk(session, batch_pk)
        data = build_scan_payload(batch, self.settings.verification_base_url)
        batch.scan_data = encode_scan_payload(data)
        batch.scan_anchor_id = batch.anchor_id or batch.batch_id
        batch.scan_verification_url = data["verificationUrl"]
        batch.scan_generated_at = utcnow()
        if image_ref is not None:
            batch.scan_image_ref = image_ref
        await session.flush()
        return data

    async def set_scan_image(self, session: AsyncSession, batch_pk: str, image_ref: str) -> None:
        batch = await self._get_by_pk(session, batch_pk)
        batch.scan_image_ref = image_ref
        await session.flush()

    # ── Recall ──

    async def recall_batch(
        self, session: AsyncSession, batch_id: str, reason: str, actor: Actor,
    ) -> BatchModel:
        """Irreversibly recall a batch. Admin or the owning manufacturer only.

        The custody ledger's own recall is a separate call.
        """
        if not reason or not reason.strip():
            raise ValidationError("A recall reason is required")
        batch = await self.get_batch(session, batch_id)
        self._require_owner_or_admin(batch, actor, "recall")
        if batch.is_recalled:
            raise ValidationError(f"Batch '{batch_id}' is already recalled")

        batch.is_recalled = True
        batch.status = "recalled"
        batch.recall_reason = reason.strip()
        batch.recall_date = utcnow()
        batch.recalled_by = actor.id
        batch.distribution_history.append(DistributionEventModel(
            status="recalled",
            note=f"Recalled: {reason.strip()}",
            updated_by=actor.id,
        ))
        await session.flush()
        logger.warning("Batch %s recalled by %s: %s", batch.batch_id, actor.id, reason)

        if self.events:
            self.events.publish("batch.recalled", {
                "batch_id": batch.batch_id,
                "batch_number": batch.batch_number,
                "reason": batch.recall_reason,
                "recalled_by": actor.id,
            })
        return batch

    # ── Distribution ──

    async def update_distribution_status(
        self,
        session: AsyncSession,
        batch_id: str,
        update: DistributionUpdate | dict[str, Any],
        actor: Actor,
    ) -> BatchModel:
        """Append a distribution event; the current status is derived from the history."""
        update = parse_input(DistributionUpdate, update)
        if actor.role is Role.PATIENT:
            raise AuthorizationError("Patients cannot update distribution status")
        if update.status == "recalled":
            raise ValidationError("Use recall to mark a batch as recalled")

        batch = await self.get_batch(session, batch_id)
        if actor.role is Role.MANUFACTURER:
            self._require_owner_or_admin(batch, actor, "move")
        if batch.is_recalled:
            raise ValidationError(f"Batch '{batch_id}' is recalled and cannot move")

        batch.distribution_history.append(DistributionEventModel(
            status=update.status,
            location_type=update.location_type,
            organization_id=update.organization_id or actor.organization_id,
            organization_name=update.organization_name,
            address=update.address,
            note=update.note,
            updated_by=actor.id,
        ))
        await session.flush()

        if self.events:
            self.events.publish("batch.distribution_updated", {
                "batch_id": batch.batch_id, "status": update.status, "updated_by": actor.id,
            })
        return batch

    # ── Views ──

    async def status_view(
        self, session: AsyncSession, batch_id: str, now: datetime | None = None,
    ) -> dict[str, Any]:
        """Current status of a batch combined with its custody ledger, if one exists."""
        now = now or utcnow()
        batch = await self.get_batch(session, batch_id)

        result = await session.execute(
            select(CustodyLedgerModel)
            .options(selectinload(CustodyLedgerModel.steps))
            .where(CustodyLedgerModel.batch_pk == batch.id)
        )
        ledger = result.scalar_one_or_none()

        return {
            "batch_id": batch.batch_id,
            "batch_number": batch.batch_number,
            "status": batch.status,
            "distribution": current_distribution(batch.distribution_history),
            "custody": None if ledger is None else {
                "ledger_id": ledger.id,
                "status": ledger.status,
                "is_recalled": ledger.is_recalled,
                "current_location": current_location(ledger.steps),
                "total_steps": len(ledger.steps),
            },
            "is_recalled": batch.is_recalled,
            "anchor": {
                "anchor_id": batch.anchor_id,
                "state": batch.anchor_state,
                "error": batch.anchor_error,
            },
            "expiry_date": iso(batch.expiry_date),
            "days_until_expiry": days_until_expiry(batch.expiry_date, now),
            "is_expired": is_expired(batch.expiry_date, now),
            "is_near_expiry": is_near_expiry(
                batch.expiry_date, now, self.settings.near_expiry_days,
            ),
        }

    # ── Internal helpers ──

    @staticmethod
    def _require_owner_or_admin(batch: BatchModel, actor: Actor, what: str) -> None:
        if actor.is_admin:
            return
        if actor.role is Role.MANUFACTURER and batch.manufacturer_id == actor.id:
            return
        raise AuthorizationError(
            f"Only an admin or the owning manufacturer can {what} batch '{batch.batch_id}'"
        )
