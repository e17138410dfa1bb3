"""Batch anchoring pipeline.

Creation is split into short transactions around the external ledger call:

1. insert the batch with ``anchor_state = pending`` and commit;
2. call the ledger with no transaction or lock held;
3. apply the ledger outcome and persist the scannable payload in a
   follow-up transaction.

Between 1 and 3 the batch is fully readable and usable by other callers.
"""

from typing import Any

from pharmatrace.anchor.client import AnchorReceipt, LedgerClient
from pharmatrace.batches.models import BatchModel
from pharmatrace.batches.payload import anchor_payload, encode_scan_payload
from pharmatrace.batches.schemas import BatchCreate
from pharmatrace.batches.service import BatchService
from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import DatabaseManager
from pharmatrace.common.exceptions import AuthorizationError, ExternalAnchorError, ValidationError
from pharmatrace.common.logging import get_logger
from pharmatrace.common.security import Actor

logger = get_logger("batches.pipeline")


class AnchoringPipeline:
    """Orchestrates batch operations that involve the external ledger.

    ``image_store`` is an optional collaborator with an async
    ``put(key, data) -> ref`` method that renders and stores the payload image.
    """

    def __init__(
        self,
        settings: PharmaTraceSettings,
        db: DatabaseManager,
        batches: BatchService,
        ledger: LedgerClient,
        image_store=None,
        events=None,
    ):
        self.settings = settings
        self.db = db
        self.batches = batches
        self.ledger = ledger
        self.image_store = image_store
        self.events = events

    async def create_batch(
        self, data: BatchCreate | dict[str, Any], creator: Actor,
    ) -> BatchModel:
        """Create, anchor and publish a batch. Anchor failures never propagate."""
        async with self.db.get_session() as session:
            batch = await self.batches.insert_batch(session, data, creator)

        receipt, error = await self._anchor(batch, "create")

        async with self.db.get_session() as session:
            batch = await self.batches.apply_anchor_result(
                session, batch.id, receipt, error, action="create",
            )
            scan = await self.batches.attach_scan_payload(session, batch.id)

        await self._store_image(batch, scan)

        if self.events:
            self.events.publish("batch.created", {
                "batch_id": batch.batch_id,
                "batch_number": batch.batch_number,
                "manufacturer_id": batch.manufacturer_id,
                "anchor_state": batch.anchor_state,
            })
            if batch.anchor_state == "confirmed":
                self._publish_anchored(batch)
        return batch

    async def reanchor(self, batch_id: str, actor: Actor) -> BatchModel:
        """Retry anchoring of a pending or failed batch and regenerate its payload."""
        async with self.db.get_session() as session:
            batch = await self.batches.get_batch(session, batch_id)
            if not actor.is_admin and batch.manufacturer_id != actor.id:
                raise AuthorizationError(
                    f"Only an admin or the owning manufacturer can re-anchor '{batch_id}'"
                )
            if batch.anchor_state == "confirmed":
                raise ValidationError(f"Batch '{batch_id}' is already anchored")

        receipt, error = await self._anchor(batch, "reanchor")

        async with self.db.get_session() as session:
            batch = await self.batches.apply_anchor_result(
                session, batch.id, receipt, error, action="reanchor",
            )
            scan = await self.batches.attach_scan_payload(session, batch.id)

        await self._store_image(batch, scan)
        if self.events and batch.anchor_state == "confirmed":
            self._publish_anchored(batch)
        return batch

    async def recall_batch(self, batch_id: str, reason: str, actor: Actor) -> BatchModel:
        """Recall a batch, then record the recall on the ledger best-effort."""
        async with self.db.get_session() as session:
            batch = await self.batches.recall_batch(session, batch_id, reason, actor)

        payload = anchor_payload(batch, "recall")
        payload["recall_reason"] = batch.recall_reason
        receipt, error = await self._call_ledger(batch, payload)

        async with self.db.get_session() as session:
            await self.batches.record_anchor_event(session, batch.id, "recall", receipt, error)
            batch = await self.batches.get_batch(session, batch_id)
        return batch

    # ── Internal helpers ──

    async def _anchor(
        self, batch: BatchModel, action: str,
    ) -> tuple[AnchorReceipt | None, ExternalAnchorError | None]:
        return await self._call_ledger(batch, anchor_payload(batch, action))

    async def _call_ledger(
        self, batch: BatchModel, payload: dict[str, Any],
    ) -> tuple[AnchorReceipt | None, ExternalAnchorError | None]:
        try:
            receipt = await self.ledger.anchor(payload)
        except ExternalAnchorError as exc:
            logger.warning(
                "Anchoring %s (%s) failed: %s", batch.batch_id, payload["action"], exc.message,
                extra={"context": {"batch_id": batch.batch_id, "timed_out": exc.timed_out}},
            )
            return None, exc
        return receipt, None

    async def _store_image(self, batch: BatchModel, scan: dict[str, Any]) -> None:
        if self.image_store is None:
            return
        try:
            ref = await self.image_store.put(f"scan/{batch.batch_id}", encode_scan_payload(scan))
        except Exception as exc:
            logger.warning("Storing scan image for %s failed: %s", batch.batch_id, exc)
            return
        async with self.db.get_session() as session:
            await self.batches.set_scan_image(session, batch.id, ref)
        batch.scan_image_ref = ref

    def _publish_anchored(self, batch: BatchModel) -> None:
        self.events.publish("batch.anchored", {
            "batch_id": batch.batch_id,
            "anchor_id": batch.anchor_id,
            "tx_ref": batch.anchor_tx_ref,
        })
