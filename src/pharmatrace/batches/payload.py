"""Pure functions over batch records: anchor payload, scan payload, projections, expiry."""

import math
from datetime import datetime
from typing import Any

from pharmatrace.batches.models import BatchModel, DistributionEventModel
from pharmatrace.common.hashing import canonical_json
from pharmatrace.common.models import as_utc, iso

# Fields sent to the ledger. Changing this list changes every future dataHash.
ANCHOR_FIELDS = (
    "batch_id",
    "batch_number",
    "name",
    "active_ingredient",
    "dosage",
    "form",
    "production_date",
    "expiry_date",
    "manufacturer_id",
)


def anchor_payload(batch: BatchModel, action: str = "create") -> dict[str, Any]:
    """Canonical subset of a batch sent to the external ledger."""
    payload: dict[str, Any] = {"action": action}
    for field in ANCHOR_FIELDS:
        value = getattr(batch, field)
        payload[field] = iso(value) if isinstance(value, datetime) else value
    payload["quality_result"] = (batch.quality_test or {}).get("result", "pending")
    return payload


def verification_url(base_url: str, reference: str) -> str:
    return f"{base_url.rstrip('/')}/verify/{reference}"


def build_scan_payload(batch: BatchModel, base_url: str) -> dict[str, Any]:
    """Structured document encoded in the batch's scannable code.

    Embeds the anchor id when the batch is anchored, else the batch id, and a
    verification URL pointing at the same reference.
    """
    reference = batch.anchor_id or batch.batch_id
    data: dict[str, Any] = {
        "batchId": batch.batch_id,
        "batchNumber": batch.batch_number,
        "name": batch.name,
        "expiryDate": iso(batch.expiry_date),
        "verificationUrl": verification_url(base_url, reference),
    }
    if batch.anchor_id:
        data["anchorId"] = batch.anchor_id
    return data


def encode_scan_payload(data: dict[str, Any]) -> str:
    return canonical_json(data)


def current_distribution(events: list[DistributionEventModel]) -> dict[str, Any]:
    """Current status and location of a batch, derived from its distribution history."""
    if not events:
        return {"status": "production", "location": None, "updated_at": None}
    last = events[-1]
    located = next((e for e in reversed(events) if e.location_type or e.organization_id), None)
    location = None
    if located is not None:
        location = {
            "type": located.location_type,
            "organization_id": located.organization_id,
            "organization_name": located.organization_name,
            "address": located.address,
        }
    return {"status": last.status, "location": location, "updated_at": iso(last.created_at)}


def days_until_expiry(expiry_date: datetime, now: datetime) -> int:
    """Whole days left before expiry, rounded up; zero or negative once expired."""
    delta = as_utc(expiry_date) - as_utc(now)
    return math.ceil(delta.total_seconds() / 86400)


def is_expired(expiry_date: datetime, now: datetime) -> bool:
    return as_utc(expiry_date) <= as_utc(now)


def is_near_expiry(expiry_date: datetime, now: datetime, window_days: int = 30) -> bool:
    days = days_until_expiry(expiry_date, now)
    return 0 < days <= window_days
