"""Tests for digital signatures over canonical record subsets."""

import json
from datetime import timedelta

import pytest

from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.exceptions import (
    AuthorizationError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from pharmatrace.common.hashing import hmac_hex
from pharmatrace.signatures.canonical import CANONICAL_FIELDS, canonical_subset, compute_data_hash
from pharmatrace.signatures.providers import CA_PROVIDERS, get_provider, timestamp_token
from pharmatrace.signatures.service import SignatureService, signer_key


HMAC_KEY = "test-hmac-key-for-unit-tests"


def make_settings(**overrides) -> PharmaTraceSettings:
    defaults = {"hmac_key": HMAC_KEY}
    defaults.update(overrides)
    return PharmaTraceSettings(**defaults)


@pytest.fixture
async def batch(pipeline, manufacturer, batch_input):
    return await pipeline.create_batch(batch_input(), manufacturer)


@pytest.fixture
async def signed(batch, db, signature_svc, manufacturer, now):
    async with db.get_session() as session:
        return await signature_svc.sign(session, "batch", batch.batch_id, manufacturer, now=now)


class TestSign:
    async def test_signature_record(self, signed, batch, manufacturer, now):
        assert signed.target_type == "batch"
        assert signed.target_id == batch.batch_id
        assert signed.signed_by == manufacturer.id
        assert signed.signed_by_role == "manufacturer"
        assert signed.canonical_version == "v1"
        assert signed.key_version == 0
        assert signed.ca_provider == "vnca"
        assert signed.certificate_serial.startswith("VNCA-")
        assert signed.valid_to - signed.valid_from == timedelta(days=365)
        assert signed.status == "active"
        assert signed.purpose

    async def test_signature_material(self, signed, batch, now):
        assert signed.data_hash == compute_data_hash("batch", batch)
        assert signed.signature == hmac_hex(signer_key(HMAC_KEY, signed.signed_by), signed.data_hash)
        assert signed.timestamp_token == timestamp_token(HMAC_KEY, signed.data_hash, now)

    async def test_patient_cannot_sign(self, batch, db, signature_svc, patient):
        async with db.get_session() as session:
            with pytest.raises(AuthorizationError):
                await signature_svc.sign(session, "batch", batch.batch_id, patient)

    async def test_unknown_provider(self, batch, db, signature_svc, manufacturer):
        async with db.get_session() as session:
            with pytest.raises(ValidationError):
                await signature_svc.sign(
                    session, "batch", batch.batch_id, manufacturer, ca_provider="acme-ca",
                )

    async def test_unknown_target_type(self, db, signature_svc, manufacturer):
        async with db.get_session() as session:
            with pytest.raises(ValidationError):
                await signature_svc.sign(session, "invoice", "1", manufacturer)

    async def test_missing_target(self, db, signature_svc, manufacturer):
        async with db.get_session() as session:
            with pytest.raises(NotFoundError):
                await signature_svc.sign(session, "batch", "DRUG_00000000", manufacturer)

    async def test_chosen_provider_and_purpose(self, batch, db, signature_svc, hospital):
        async with db.get_session() as session:
            record = await signature_svc.sign(
                session, "batch", batch.batch_id, hospital,
                ca_provider="viettel-ca", purpose="Receipt confirmation",
            )
        assert record.ca_name == "Viettel CA"
        assert record.purpose == "Receipt confirmation"


class TestVerify:
    async def test_valid_after_signing(self, signed, db, signature_svc, now):
        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now + timedelta(hours=1))
        assert outcome["valid"] is True
        assert outcome["reason"] is None
        assert outcome["signature_id"] == signed.id

    async def test_changed_record_invalidates(self, signed, batch, db, batch_svc, signature_svc, now):
        async with db.get_session() as session:
            record = await batch_svc.get_batch(session, batch.batch_id)
            record.name = "Paracetamol 650mg"

        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now)
        assert outcome["valid"] is False
        assert "hash mismatch" in outcome["reason"]

    async def test_non_canonical_change_keeps_signature(self, signed, batch, db, batch_svc, signature_svc, now):
        async with db.get_session() as session:
            record = await batch_svc.get_batch(session, batch.batch_id)
            record.scan_image_ref = "mem://elsewhere"

        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now)
        assert outcome["valid"] is True

    @pytest.mark.parametrize("offset,reason", [
        (timedelta(seconds=-1), "not yet valid"),
        (timedelta(days=366), "expired"),
    ])
    async def test_outside_certificate_window(self, signed, db, signature_svc, now, offset, reason):
        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now + offset)
        assert outcome["valid"] is False
        assert reason in outcome["reason"]

    async def test_forged_signature(self, signed, db, signature_svc, now):
        async with db.get_session() as session:
            record = await signature_svc.get(session, signed.id)
            record.signature = "0" * 64

        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now)
        assert outcome["reason"] == "Signature does not match"

    async def test_forged_timestamp(self, signed, db, signature_svc, now):
        async with db.get_session() as session:
            record = await signature_svc.get(session, signed.id)
            record.timestamped_at = now - timedelta(days=1)

        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, signed.id, now=now)
        assert outcome["reason"] == "Timestamp proof does not match"

    async def test_rotated_keyring(self, signed, db, now):
        rotated = SignatureService(make_settings(hmac_keys=json.dumps({"0": HMAC_KEY, "1": "new-key"})))
        dropped = SignatureService(make_settings(hmac_keys=json.dumps({"1": "new-key"})))
        async with db.get_session() as session:
            assert (await rotated.verify(session, signed.id, now=now))["valid"] is True
            outcome = await dropped.verify(session, signed.id, now=now)
        assert outcome["valid"] is False
        assert "keyring" in outcome["reason"]

    async def test_deleted_target(self, db, signature_svc, manufacturer, pipeline, batch_input, now):
        batch = await pipeline.create_batch(batch_input("GONE-1"), manufacturer)
        async with db.get_session() as session:
            record = await signature_svc.sign(session, "batch", batch.batch_id, manufacturer, now=now)
            record.target_id = "DRUG_FFFFFFFF"

        async with db.get_session() as session:
            outcome = await signature_svc.verify(session, record.id, now=now)
        assert outcome["reason"] == "Signed record no longer exists"

    async def test_assert_valid(self, signed, db, signature_svc, batch_svc, batch, now):
        async with db.get_session() as session:
            assert (await signature_svc.assert_valid(session, signed.id, now=now)).id == signed.id
            record = await batch_svc.get_batch(session, batch.batch_id)
            record.dosage = "650mg"
            await session.flush()
            with pytest.raises(SignatureVerificationError) as exc_info:
                await signature_svc.assert_valid(session, signed.id, now=now)
        assert "hash mismatch" in exc_info.value.reason

    async def test_missing_signature(self, db, signature_svc):
        async with db.get_session() as session:
            with pytest.raises(NotFoundError):
                await signature_svc.verify(session, "no-such-signature")


class TestRevoke:
    async def test_admin_revokes(self, signed, db, signature_svc, admin, now):
        async with db.get_session() as session:
            record = await signature_svc.revoke(session, signed.id, "Key compromise", admin)
            outcome = await signature_svc.verify(session, signed.id, now=now)
        assert record.status == "revoked"
        assert record.revoked_by == admin.id
        assert outcome["valid"] is False
        assert outcome["reason"] == "Signature is revoked"

    async def test_only_admin(self, signed, db, signature_svc, manufacturer):
        async with db.get_session() as session:
            with pytest.raises(AuthorizationError):
                await signature_svc.revoke(session, signed.id, "Key compromise", manufacturer)

    async def test_revoke_once(self, signed, db, signature_svc, admin):
        async with db.get_session() as session:
            await signature_svc.revoke(session, signed.id, "Key compromise", admin)
            with pytest.raises(ValidationError):
                await signature_svc.revoke(session, signed.id, "Key compromise", admin)

    async def test_reason_required(self, signed, db, signature_svc, admin):
        async with db.get_session() as session:
            with pytest.raises(ValidationError):
                await signature_svc.revoke(session, signed.id, "  ", admin)


class TestMaintenance:
    async def test_refresh_certificate_statuses(self, signed, db, signature_svc, now):
        async with db.get_session() as session:
            assert await signature_svc.refresh_certificate_statuses(session, now=now) == 0
            assert await signature_svc.refresh_certificate_statuses(
                session, now=now + timedelta(days=400),
            ) == 1
            record = await signature_svc.get(session, signed.id)
        assert record.certificate_status == "expired"
        assert record.status == "expired"

    async def test_list_for_target(self, signed, batch, db, signature_svc, hospital, now):
        async with db.get_session() as session:
            second = await signature_svc.sign(
                session, "batch", batch.batch_id, hospital, now=now + timedelta(minutes=5),
            )
            records = await signature_svc.list_for_target(session, "batch", batch.batch_id)
        assert {r.id for r in records} == {signed.id, second.id}
        assert {r.signed_by for r in records} == {"mfr-1", "hosp-1"}


class TestOtherTargets:
    async def test_custody_targets(self, batch, db, custody_svc, signature_svc, manufacturer, distributor, now):
        async with db.get_session() as session:
            ledger = await custody_svc.create_ledger(
                session, batch.batch_id, batch.batch_number, manufacturer,
            )
            check = await custody_svc.add_quality_check(session, ledger.id, {
                "check_type": "temperature", "result": "pass", "value": 5,
            }, distributor)

            on_ledger = await signature_svc.sign(session, "custody_ledger", ledger.id, manufacturer, now=now)
            on_step = await signature_svc.sign(
                session, "custody_step", str(ledger.steps[0].id), manufacturer, now=now,
            )
            on_check = await signature_svc.sign(session, "quality_check", check.id, distributor, now=now)

            for record in (on_ledger, on_step, on_check):
                assert (await signature_svc.verify(session, record.id, now=now))["valid"] is True

            check.result = "fail"
            await session.flush()
            outcome = await signature_svc.verify(session, on_check.id, now=now)
        assert outcome["valid"] is False

    async def test_bad_step_id(self, db, signature_svc, manufacturer):
        async with db.get_session() as session:
            with pytest.raises(NotFoundError):
                await signature_svc.sign(session, "custody_step", "not-a-number", manufacturer)


class TestCanonical:
    def test_subset_is_tagged(self):
        record = type("Rec", (), {name: None for name in CANONICAL_FIELDS["v1"]["custody_ledger"]})()
        subset = canonical_subset("custody_ledger", record)
        assert subset["_type"] == "custody_ledger"
        assert subset["_version"] == "v1"
        assert set(subset) == set(CANONICAL_FIELDS["v1"]["custody_ledger"]) | {"_type", "_version"}

    def test_unknown_version(self):
        with pytest.raises(ValidationError):
            canonical_subset("batch", object(), version="v0")


class TestProviders:
    def test_registry(self):
        assert set(CA_PROVIDERS) == {"vnca", "viettel-ca", "fpt-ca", "bkav-ca", "vietnam-post-ca"}
        assert get_provider("fpt-ca").name == "FPT CA"

    def test_unknown(self):
        with pytest.raises(ValidationError, match="acme"):
            get_provider("acme")
