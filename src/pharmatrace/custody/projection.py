"""Read-side projections of a custody ledger: current location and role-aware views."""

from typing import Any, Sequence

from pharmatrace.common.models import iso
from pharmatrace.common.security import Actor
from pharmatrace.custody.models import (
    AccessLogModel,
    CustodyLedgerModel,
    CustodyStepModel,
    QualityCheckModel,
)


def current_location(steps: Sequence[CustodyStepModel]) -> dict[str, Any] | None:
    """Last step's actor and location; ``None`` for an empty ledger."""
    if not steps:
        return None
    last = steps[-1]
    return {
        "actorId": last.actor_id,
        "actorName": last.actor_name,
        "actorRole": last.actor_role,
        "location": dict(last.location or {}),
        "action": last.action,
        "updatedAt": iso(last.timestamp),
    }


def can_view_full(ledger: CustodyLedgerModel, viewer: Actor) -> bool:
    """Admins, the ledger creator and anyone who took part in the chain see everything."""
    if viewer.is_admin or viewer.id == ledger.created_by:
        return True
    if viewer.id in (ledger.participants or []):
        return True
    return any(step.actor_id == viewer.id for step in ledger.steps)


def _full_step(step: CustodyStepModel) -> dict[str, Any]:
    return {
        "id": step.id,
        "stepType": step.step_type,
        "actorId": step.actor_id,
        "actorName": step.actor_name,
        "actorRole": step.actor_role,
        "action": step.action,
        "timestamp": iso(step.timestamp),
        "location": dict(step.location or {}),
        "conditions": dict(step.conditions or {}),
        "metadata": dict(step.details or {}),
        "anchor": {
            "txRef": step.anchor_tx_ref,
            "blockRef": step.anchor_block_ref,
            "anchoredAt": iso(step.anchor_at),
        } if step.anchor_tx_ref else None,
        "verified": step.verified,
        "verificationMethod": step.verification_method,
        "stepHash": step.step_hash,
    }


def _redacted_step(step: CustodyStepModel) -> dict[str, Any]:
    return {
        "action": step.action,
        "timestamp": iso(step.timestamp),
        "actorName": step.actor_name,
        "actorRole": step.actor_role,
        "location": {"address": (step.location or {}).get("address")},
        "verified": step.verified,
    }


def _full_check(check: QualityCheckModel) -> dict[str, Any]:
    return {
        "id": check.id,
        "checkType": check.check_type,
        "result": check.result,
        "value": check.value,
        "notes": check.notes,
        "checkedBy": check.checked_by,
        "checkedAt": iso(check.checked_at),
    }


def _access_entry(entry: AccessLogModel) -> dict[str, Any]:
    return {
        "accessedBy": entry.accessed_by,
        "accessType": entry.access_type,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "accessedAt": iso(entry.accessed_at),
    }


def project(ledger: CustodyLedgerModel, viewer: Actor) -> dict[str, Any]:
    """Role-aware view of a ledger.

    Outsiders get steps reduced to action, time, actor name/role, address and
    the verified flag; quality checks reduced to type, result and time; and no
    ``accessLog`` or ``createdBy`` keys at all.
    """
    full = can_view_full(ledger, viewer)
    view: dict[str, Any] = {
        "id": ledger.id,
        "batchId": ledger.batch_id,
        "batchNumber": ledger.batch_number,
        "scanCode": ledger.scan_code,
        "status": ledger.status,
        "recall": {
            "isRecalled": ledger.is_recalled,
            "reason": ledger.recall_reason,
            "date": iso(ledger.recall_date),
            "action": ledger.recall_action,
        },
        "currentLocation": current_location(ledger.steps),
        "totalSteps": len(ledger.steps),
        "redacted": not full,
    }
    if full:
        view["steps"] = [_full_step(s) for s in ledger.steps]
        view["qualityChecks"] = [_full_check(c) for c in ledger.quality_checks]
        view["accessLog"] = [_access_entry(e) for e in ledger.access_log]
        view["createdBy"] = ledger.created_by
        view["recall"]["recalledBy"] = ledger.recalled_by
        view["recall"]["affectedUnits"] = list(ledger.affected_units or [])
    else:
        view["steps"] = [_redacted_step(s) for s in ledger.steps]
        view["qualityChecks"] = [
            {"checkType": c.check_type, "result": c.result, "checkedAt": iso(c.checked_at)}
            for c in ledger.quality_checks
        ]
    return view
