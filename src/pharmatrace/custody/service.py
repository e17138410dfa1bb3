"""Custody ledger service — append-only, hash-chained custody history per batch."""

import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmatrace.anchor.client import LedgerClient
from pharmatrace.batches.models import BatchModel
from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import insert_unique, write_best_effort
from pharmatrace.common.exceptions import (
    AuthorizationError,
    DuplicateKeyError,
    ExternalAnchorError,
    NotFoundError,
    ValidationError,
)
from pharmatrace.common.hashing import hmac_hex, sha256_hex, verify_hmac_keyring
from pharmatrace.common.logging import get_logger
from pharmatrace.common.models import iso, utcnow
from pharmatrace.common.schemas import parse_input
from pharmatrace.common.security import Actor, Role, StepAction, require_action, require_roles
from pharmatrace.custody.models import (
    GENESIS_HASH,
    AccessLogModel,
    CustodyLedgerModel,
    CustodyStepModel,
    QualityCheckModel,
)
from pharmatrace.custody.projection import project
from pharmatrace.custody.schemas import LedgerRecall, QualityCheckInput, StepInput

logger = get_logger("custody")

ACCESS_TYPES = frozenset({"view", "scan", "update", "verify"})


class CustodyService:
    """Custody ledgers: steps, quality checks, access log and recall."""

    def __init__(
        self,
        settings: PharmaTraceSettings,
        ledger_client: LedgerClient | None = None,
        events=None,
    ):
        self.settings = settings
        self.ledger_client = ledger_client
        self.events = events

    # ── Create ──

    async def create_ledger(
        self,
        session: AsyncSession,
        batch_id: str,
        batch_number: str,
        creator: Actor,
        participants: list[str] | None = None,
    ) -> CustodyLedgerModel:
        """Open the custody ledger for a batch and record its ``created`` step.

        One ledger per batch is enforced by unique constraints on ``batch_id``
        and on ``(batch_id, batch_number)``.
        """
        require_roles(creator, Role.MANUFACTURER, Role.ADMIN,
                      message="Only manufacturers and admins can open custody ledgers")

        result = await session.execute(select(BatchModel).where(BatchModel.batch_id == batch_id))
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError(f"Batch '{batch_id}' not found")
        if batch.batch_number != batch_number:
            raise ValidationError(
                f"Batch number '{batch_number}' does not match batch '{batch_id}'"
            )

        ledger = CustodyLedgerModel(
            batch_pk=batch.id,
            batch_id=batch.batch_id,
            batch_number=batch.batch_number,
            scan_code=f"{batch.batch_number}-{int(time.time() * 1000)}",
            participants=list(participants or []),
            created_by=creator.id,
            affected_units=[],
        )
        await insert_unique(session, ledger, "custody_ledgers", ("batch_id", "scan_code"))

        await self._append_step(
            session, ledger, creator, StepAction.CREATED,
            StepInput(
                action=StepAction.CREATED.value,
                location={"address": creator.name or ""},
                metadata={"batchNumber": batch.batch_number},
                verification_method="auto",
            ),
        )
        logger.info("Custody ledger %s opened for %s", ledger.id, batch.batch_id)

        if self.events:
            self.events.publish("custody.ledger_created", {
                "ledger_id": ledger.id, "batch_id": ledger.batch_id, "created_by": creator.id,
            })
        return await self.get_ledger(session, ledger.id)

    # ── Read ──

    async def get_ledger(self, session: AsyncSession, ledger_id: str) -> CustodyLedgerModel:
        result = await session.execute(
            select(CustodyLedgerModel)
            .where(CustodyLedgerModel.id == ledger_id)
            .execution_options(populate_existing=True)
        )
        ledger = result.scalar_one_or_none()
        if ledger is None:
            raise NotFoundError(f"Custody ledger '{ledger_id}' not found")
        return ledger

    async def get_by_batch(self, session: AsyncSession, batch_id: str) -> CustodyLedgerModel:
        result = await session.execute(
            select(CustodyLedgerModel)
            .where(CustodyLedgerModel.batch_id == batch_id)
            .execution_options(populate_existing=True)
        )
        ledger = result.scalar_one_or_none()
        if ledger is None:
            raise NotFoundError(f"No custody ledger for batch '{batch_id}'")
        return ledger

    async def view_ledger(
        self,
        session: AsyncSession,
        ledger_id: str,
        viewer: Actor,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Project the ledger for ``viewer`` after logging the view best-effort."""
        await self.get_ledger(session, ledger_id)
        await self.log_access(session, ledger_id, viewer, "view", ip_address, user_agent)
        ledger = await self.get_ledger(session, ledger_id)
        return project(ledger, viewer)

    # ── Append ──

    async def add_step(
        self,
        session: AsyncSession,
        ledger_id: str,
        step: StepInput | dict[str, Any],
        actor: Actor,
    ) -> CustodyStepModel:
        """Append one custody step; the step type comes from the actor's role."""
        step = parse_input(StepInput, step)
        action = require_action(actor, step.action)

        ledger = await self.get_ledger(session, ledger_id)
        if ledger.is_recalled and not actor.is_admin:
            raise AuthorizationError(f"Ledger '{ledger_id}' is recalled; only admins may append")

        record = await self._append_step(session, ledger, actor, action, step)
        await self.log_access(session, ledger_id, actor, "update")

        if self.events:
            self.events.publish("custody.step_added", {
                "ledger_id": ledger_id,
                "batch_id": ledger.batch_id,
                "action": action.value,
                "actor_id": actor.id,
                "step_hash": record.step_hash,
            })
        return record

    async def add_quality_check(
        self,
        session: AsyncSession,
        ledger_id: str,
        check: QualityCheckInput | dict[str, Any],
        actor: Actor,
    ) -> QualityCheckModel:
        check = parse_input(QualityCheckInput, check)
        require_action(actor, StepAction.QUALITY_CHECK)
        ledger = await self.get_ledger(session, ledger_id)

        record = QualityCheckModel(
            ledger_id=ledger.id,
            check_type=check.check_type,
            result=check.result,
            value=check.value,
            notes=check.notes,
            checked_by=actor.id,
            checked_at=check.checked_at,
        )
        session.add(record)
        await session.flush()

        if self.events:
            self.events.publish("custody.quality_check_added", {
                "ledger_id": ledger.id,
                "check_type": record.check_type,
                "result": record.result,
                "checked_by": actor.id,
            })
        return record

    async def log_access(
        self,
        session: AsyncSession,
        ledger_id: str,
        actor: Actor | None,
        access_type: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Best-effort access log entry. Returns whether it was written; never raises."""
        if access_type not in ACCESS_TYPES:
            logger.warning("Ignoring unknown access type '%s'", access_type)
            return False
        entry = AccessLogModel(
            ledger_id=ledger_id,
            accessed_by=actor.id if actor is not None else None,
            access_type=access_type,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return await write_best_effort(session, entry, "access log")

    # ── Recall ──

    async def recall(
        self,
        session: AsyncSession,
        ledger_id: str,
        reason: str,
        actor: Actor,
        action: str = "quarantine",
        affected_units: list[str] | None = None,
    ) -> CustodyLedgerModel:
        """Recall a ledger. Terminal for normal flow; the batch's own flag is untouched."""
        require_roles(actor, Role.ADMIN, Role.MANUFACTURER,
                      message="Only admins and manufacturers can recall a custody ledger")
        recall = parse_input(LedgerRecall, {
            "reason": reason, "action": action, "affected_units": affected_units or [],
        })

        ledger = await self.get_ledger(session, ledger_id)
        if ledger.is_recalled:
            raise ValidationError(f"Ledger '{ledger_id}' is already recalled")

        ledger.status = "recalled"
        ledger.is_recalled = True
        ledger.recall_reason = recall.reason
        ledger.recall_date = utcnow()
        ledger.recalled_by = actor.id
        ledger.recall_action = recall.action
        ledger.affected_units = list(recall.affected_units)
        await session.flush()
        logger.warning("Custody ledger %s recalled by %s", ledger.id, actor.id)

        if self.events:
            self.events.publish("custody.recalled", {
                "ledger_id": ledger.id,
                "batch_id": ledger.batch_id,
                "reason": recall.reason,
                "action": recall.action,
                "recalled_by": actor.id,
            })
        return ledger

    # ── Verify ──

    async def verify_chain(self, session: AsyncSession, ledger_id: str) -> dict[str, Any]:
        """Walk steps oldest→newest, verify linkage, hashes and seals."""
        ledger = await self.get_ledger(session, ledger_id)
        prev_hash = GENESIS_HASH
        for index, step in enumerate(ledger.steps):
            broken = (
                step.prev_hash != prev_hash
                or step.step_hash != self._compute_step_hash(step)
                or not verify_hmac_keyring(step.step_hash, step.seal, self.settings.hmac_keyring)
            )
            if broken:
                return {"valid": False, "steps_checked": index, "break_at": step.id}
            prev_hash = step.step_hash
        return {"valid": True, "steps_checked": len(ledger.steps), "break_at": None}

    # ── Per-step anchoring ──

    async def anchor_step(self, session: AsyncSession, step_id: int) -> CustodyStepModel:
        """Anchor a committed step on the external ledger.

        Call with a fresh session after the append committed. On failure the
        step simply stays unanchored.
        """
        step = await session.get(CustodyStepModel, step_id)
        if step is None:
            raise NotFoundError(f"Custody step '{step_id}' not found")
        if step.anchor_tx_ref or self.ledger_client is None:
            return step

        payload = {
            "action": "custody_step",
            "ledger_id": step.ledger_id,
            "step_id": step.id,
            "step_hash": step.step_hash,
        }
        try:
            receipt = await self.ledger_client.anchor(payload)
        except ExternalAnchorError as exc:
            logger.warning("Anchoring custody step %s failed: %s", step.id, exc.message)
            return step

        step.anchor_tx_ref = receipt.tx_ref
        step.anchor_block_ref = receipt.block_ref
        step.anchor_at = utcnow()
        await session.flush()
        return step

    # ── Internal helpers ──

    async def _chain_head(self, session: AsyncSession, ledger_id: str) -> str:
        result = await session.execute(
            select(CustodyStepModel.step_hash)
            .where(CustodyStepModel.ledger_id == ledger_id)
            .order_by(CustodyStepModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none() or GENESIS_HASH

    async def _append_step(
        self,
        session: AsyncSession,
        ledger: CustodyLedgerModel,
        actor: Actor,
        action: StepAction,
        step: StepInput,
    ) -> CustodyStepModel:
        """Insert a step at the current chain head, retrying when another writer got there first."""
        timestamp = utcnow()
        for attempt in range(1, self.settings.max_append_retries + 1):
            prev_hash = await self._chain_head(session, ledger.id)
            record = CustodyStepModel(
                ledger_id=ledger.id,
                step_type=actor.step_type.value,
                actor_id=actor.id,
                actor_name=actor.name,
                actor_role=actor.role.value,
                action=action.value,
                timestamp=timestamp,
                location=step.location.model_dump(mode="json", exclude_none=True),
                conditions=step.conditions.model_dump(mode="json", exclude_none=True),
                details=dict(step.metadata),
                verified=step.verification_method != "manual",
                verification_method=step.verification_method,
                prev_hash=prev_hash,
            )
            record.step_hash = self._compute_step_hash(record)
            record.seal = hmac_hex(self.settings.current_hmac_key, record.step_hash)
            try:
                await insert_unique(session, record, "custody_steps", ("prev_hash",))
            except DuplicateKeyError:
                logger.info(
                    "Chain head moved on ledger %s (attempt %d), retrying", ledger.id, attempt,
                )
                continue
            return record

        raise DuplicateKeyError(
            "prev_hash",
            f"Could not append to ledger '{ledger.id}' after "
            f"{self.settings.max_append_retries} attempts",
        )

    @staticmethod
    def _compute_step_hash(step: CustodyStepModel) -> str:
        """SHA-256 of the canonical JSON of the step's recorded fields."""
        return sha256_hex({
            "ledger_id": step.ledger_id,
            "prev_hash": step.prev_hash,
            "step_type": step.step_type,
            "actor_id": step.actor_id,
            "actor_role": step.actor_role,
            "action": step.action,
            "timestamp": iso(step.timestamp),
            "location": step.location or {},
            "conditions": step.conditions or {},
            "metadata": step.details or {},
            "verification_method": step.verification_method,
        })
