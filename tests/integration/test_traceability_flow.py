"""End-to-end: a batch from the factory floor to the patient, then a recall."""

from sqlalchemy import func, select

from pharmatrace.resolution.models import ScanLogModel


async def test_batch_lifecycle(
    db, pipeline, batch_svc, custody_svc, resolver, signature_svc,
    manufacturer, distributor, hospital, patient, admin, batch_input, now,
):
    # Factory: create, anchor, open the custody ledger and sign the batch
    batch = await pipeline.create_batch(batch_input("FLOW-1"), manufacturer)
    assert batch.anchor_state == "confirmed"

    async with db.get_session() as session:
        ledger = await custody_svc.create_ledger(
            session, batch.batch_id, batch.batch_number, manufacturer,
        )
        await custody_svc.add_quality_check(session, ledger.id, {
            "check_type": "integrity", "result": "pass", "notes": "seals intact",
        }, manufacturer)
        signature = await signature_svc.sign(session, "batch", batch.batch_id, manufacturer, now=now)

    # Distribution and dispensing
    async with db.get_session() as session:
        await custody_svc.add_step(session, ledger.id, {
            "action": "shipped", "location": {"address": "Hanoi DC"},
            "conditions": {"temperature": 21.0},
        }, distributor)
        await batch_svc.update_distribution_status(
            session, batch.batch_id, {"status": "in_transit", "location_type": "distribution_warehouse"},
            distributor,
        )
        await custody_svc.add_step(session, ledger.id, {
            "action": "received", "location": {"address": "Bach Mai Hospital"},
            "verification_method": "qr_scan",
        }, hospital)
        await custody_svc.add_step(session, ledger.id, {"action": "dispensed"}, hospital)
        await custody_svc.add_step(session, ledger.id, {"action": "received"}, patient)

    # The patient scans the box
    result = await resolver.resolve(batch.scan_data, actor=patient)
    assert result.batch.batch_id == batch.batch_id
    assert result.blocked is False

    async with db.get_session() as session:
        hospital_view = await custody_svc.view_ledger(session, ledger.id, hospital)
        status = await batch_svc.status_view(session, batch.batch_id, now=now)
        chain = await custody_svc.verify_chain(session, ledger.id)
        sig = await signature_svc.verify(session, signature.id, now=now)

    assert hospital_view["redacted"] is False  # the hospital took part in the chain
    assert hospital_view["totalSteps"] == 5
    assert status["custody"]["current_location"]["actorRole"] == "patient"
    assert status["distribution"]["status"] == "in_transit"
    assert chain == {"valid": True, "steps_checked": 5, "break_at": None}
    assert sig["valid"] is True

    # Recall: batch first, ledger separately; scanning is now blocked
    await pipeline.recall_batch(batch.batch_id, "Dissolution results below limit", manufacturer)
    async with db.get_session() as session:
        await custody_svc.recall(session, ledger.id, "Dissolution results below limit", admin)
        await custody_svc.add_step(session, ledger.id, {"action": "recalled"}, admin)

    blocked = await resolver.resolve(batch.batch_id, actor=patient)
    assert blocked.blocked is True
    assert blocked.alert_type == "recalled"

    async with db.get_session() as session:
        status = await batch_svc.status_view(session, batch.batch_id, now=now)
        chain = await custody_svc.verify_chain(session, ledger.id)
        scans = (await session.execute(select(func.count(ScanLogModel.id)))).scalar_one()
        sig = await signature_svc.verify(session, signature.id, now=now)

    assert status["is_recalled"] is True
    assert status["custody"]["is_recalled"] is True
    assert chain["valid"] is True
    assert chain["steps_checked"] == 6
    assert scans == 2
    # Recall fields are outside the signed subset
    assert sig["valid"] is True
