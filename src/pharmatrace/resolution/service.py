"""Identifier resolution — map a noisy scanned string onto exactly one batch.

Lookups run in a fixed order and the first hit wins. Every call leaves
exactly one scan-log row behind, whether it resolved, was blocked, missed or
was malformed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmatrace.batches.models import BatchModel
from pharmatrace.batches.payload import days_until_expiry, is_expired, is_near_expiry
from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import DatabaseManager, write_best_effort
from pharmatrace.common.exceptions import MalformedIdentifierError, NotFoundError
from pharmatrace.common.logging import get_logger
from pharmatrace.common.models import utcnow
from pharmatrace.common.security import Actor
from pharmatrace.custody.models import CustodyLedgerModel
from pharmatrace.resolution.models import ScanLogModel
from pharmatrace.resolution.normalize import NormalizedToken, normalize, parse_document

logger = get_logger("resolution")

# Embedded fields tried when the raw scan is a JSON object, in order.
DOCUMENT_FIELDS = (
    ("anchorId", "anchor_id"),
    ("blockchainId", "anchor_id"),
    ("batchId", "batch_id"),
    ("batchNumber", "batch_number"),
)


@dataclass
class ResolutionResult:
    batch: BatchModel
    alert_type: str | None
    warning: str | None
    blocked: bool
    strategy: str
    token: str
    token_source: str
    attempted: list[str] = field(default_factory=list)


class ResolutionService:
    """Resolves scanned codes and applies the recall/expiry checks."""

    def __init__(
        self,
        settings: PharmaTraceSettings,
        db: DatabaseManager,
        events=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.db = db
        self.events = events
        self.clock = clock

    async def resolve(
        self, raw: str, actor: Actor | None = None, now: datetime | None = None,
    ) -> ResolutionResult:
        """Resolve ``raw`` to a batch.

        Raises MalformedIdentifierError for unusable input and NotFoundError
        (with ``attempted``) when no strategy matches. Blocking alerts
        (recalled, expired) are returned, not raised.
        """
        now = now or self.clock()
        entry = ScanLogModel(
            raw_input=raw if raw is not None else "",
            outcome="not_found",
            attempted=[],
            actor_id=actor.id if actor else None,
            actor_role=actor.role.value if actor else None,
            scanned_at=now,
        )
        try:
            async with self.db.get_session() as session:
                result = await self._resolve(session, raw, now, entry)
        except MalformedIdentifierError as exc:
            entry.outcome = "malformed"
            entry.error = exc.message
            raise
        except NotFoundError as exc:
            entry.outcome = "not_found"
            entry.error = exc.message
            raise
        except Exception as exc:
            entry.outcome = "error"
            entry.error = str(exc)
            raise
        finally:
            await self._write_log(entry)

        if result.blocked and self.events:
            self.events.publish("scan.alert", {
                "batch_id": result.batch.batch_id,
                "batch_number": result.batch.batch_number,
                "alert_type": result.alert_type,
                "actor_id": actor.id if actor else None,
            })
        return result

    # ── Internal helpers ──

    async def _resolve(
        self, session: AsyncSession, raw: str, now: datetime, entry: ScanLogModel,
    ) -> ResolutionResult:
        normalized = normalize(raw)
        entry.token = normalized.token[:500]
        entry.token_source = normalized.source

        batch, strategy, attempted = await self._lookup(session, normalized, raw)
        entry.attempted = attempted
        if batch is None:
            raise NotFoundError(
                f"No batch matches scanned code '{normalized.token}'", attempted=attempted,
            )

        alert_type, warning = self._classify(batch, now)
        blocked = alert_type in ("recalled", "expired")

        entry.batch_pk = batch.id
        entry.batch_id = batch.batch_id
        entry.batch_number = batch.batch_number
        entry.anchor_id = batch.anchor_id
        entry.strategy = strategy
        entry.alert_type = alert_type
        entry.outcome = "blocked" if blocked else "resolved"

        return ResolutionResult(
            batch=batch,
            alert_type=alert_type,
            warning=warning,
            blocked=blocked,
            strategy=strategy,
            token=normalized.token,
            token_source=normalized.source,
            attempted=attempted,
        )

    async def _lookup(
        self, session: AsyncSession, normalized: NormalizedToken, raw: str,
    ) -> tuple[BatchModel | None, str | None, list[str]]:
        token = normalized.token
        attempted: list[str] = []

        strategies: list[tuple[str, Any]] = [
            ("anchor_id", BatchModel.anchor_id == token),
            ("anchor_id_ci", func.lower(BatchModel.anchor_id) == token.lower()),
            ("batch_id", BatchModel.batch_id == token),
            ("batch_number", BatchModel.batch_number == token),
        ]
        for name, clause in strategies:
            attempted.append(name)
            batch = await self._first(session, clause)
            if batch is not None:
                return batch, name, attempted

        attempted.append("scan_code")
        result = await session.execute(
            select(CustodyLedgerModel.batch_pk).where(CustodyLedgerModel.scan_code == token)
        )
        batch_pk = result.scalar_one_or_none()
        if batch_pk is not None:
            batch = await session.get(BatchModel, batch_pk)
            if batch is not None:
                return batch, "scan_code", attempted

        document = parse_document(raw)
        if document is not None:
            for key, column in DOCUMENT_FIELDS:
                value = document.get(key)
                if not isinstance(value, str) or not value.strip():
                    continue
                name = f"document.{key}"
                attempted.append(name)
                batch = await self._first(session, getattr(BatchModel, column) == value.strip())
                if batch is not None:
                    return batch, name, attempted

        return None, None, attempted

    @staticmethod
    async def _first(session: AsyncSession, clause) -> BatchModel | None:
        result = await session.execute(
            select(BatchModel)
            .where(clause)
            .order_by(BatchModel.created_at, BatchModel.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _classify(self, batch: BatchModel, now: datetime) -> tuple[str | None, str | None]:
        """Recalled, then expired, then near-expiry. The order is fixed."""
        if batch.is_recalled:
            return "recalled", f"Batch {batch.batch_number} has been recalled: {batch.recall_reason}"
        days = days_until_expiry(batch.expiry_date, now)
        if is_expired(batch.expiry_date, now):
            return "expired", f"Batch {batch.batch_number} expired {abs(days)} day(s) ago"
        if is_near_expiry(batch.expiry_date, now, self.settings.near_expiry_days):
            return "near_expiry", f"Batch {batch.batch_number} expires in {days} day(s)"
        return None, None

    async def _write_log(self, entry: ScanLogModel) -> None:
        try:
            async with self.db.get_session() as session:
                await write_best_effort(session, entry, "scan log")
        except SQLAlchemyError:
            logger.warning("Scan log write failed", exc_info=True)
