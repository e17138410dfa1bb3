"""Versioned canonical field subsets for signable records.

The subset is the contract between sign and verify: a record signed under
``v1`` is always re-hashed with the ``v1`` field list. Add a new version
rather than editing an existing one.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmatrace.batches.models import BatchModel
from pharmatrace.common.exceptions import NotFoundError, ValidationError
from pharmatrace.common.hashing import sha256_hex
from pharmatrace.common.models import iso
from pharmatrace.custody.models import CustodyLedgerModel, CustodyStepModel, QualityCheckModel

CANONICAL_VERSION = "v1"

CANONICAL_FIELDS: dict[str, dict[str, tuple[str, ...]]] = {
    "v1": {
        "batch": (
            "batch_id", "batch_number", "name", "active_ingredient", "dosage", "form",
            "production_date", "expiry_date", "manufacturer_id", "quality_test",
        ),
        # Steps are signed individually; the ledger subset excludes them.
        "custody_ledger": (
            "id", "batch_id", "batch_number", "scan_code", "created_by",
        ),
        "custody_step": (
            "id", "ledger_id", "step_type", "actor_id", "actor_role", "action",
            "timestamp", "location", "conditions", "step_hash",
        ),
        "quality_check": (
            "id", "ledger_id", "check_type", "result", "value", "notes",
            "checked_by", "checked_at",
        ),
    },
}

TARGET_TYPES = frozenset(CANONICAL_FIELDS[CANONICAL_VERSION])


def _render(value: Any) -> Any:
    if isinstance(value, datetime):
        return iso(value)
    return value


def canonical_subset(
    target_type: str, record: Any, version: str = CANONICAL_VERSION,
) -> dict[str, Any]:
    """The signable fields of ``record`` with datetimes rendered ISO-8601."""
    try:
        fields = CANONICAL_FIELDS[version][target_type]
    except KeyError:
        raise ValidationError(
            f"No canonical field set for '{target_type}' under version '{version}'"
        ) from None
    subset = {name: _render(getattr(record, name)) for name in fields}
    subset["_type"] = target_type
    subset["_version"] = version
    return subset


def compute_data_hash(target_type: str, record: Any, version: str = CANONICAL_VERSION) -> str:
    """SHA-256 of the sorted-key compact JSON of the canonical subset."""
    return sha256_hex(canonical_subset(target_type, record, version))


async def load_target(session: AsyncSession, target_type: str, target_id: str) -> Any:
    """Fetch the current state of a signable record."""
    if target_type == "batch":
        result = await session.execute(
            select(BatchModel)
            .where(BatchModel.batch_id == target_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
    elif target_type == "custody_ledger":
        record = await session.get(CustodyLedgerModel, target_id, populate_existing=True)
    elif target_type == "custody_step":
        try:
            step_id = int(target_id)
        except (TypeError, ValueError):
            raise NotFoundError(f"Custody step '{target_id}' not found") from None
        record = await session.get(CustodyStepModel, step_id, populate_existing=True)
    elif target_type == "quality_check":
        record = await session.get(QualityCheckModel, target_id, populate_existing=True)
    else:
        raise ValidationError(f"Unsupported signature target type '{target_type}'")

    if record is None:
        raise NotFoundError(f"{target_type} '{target_id}' not found")
    return record
