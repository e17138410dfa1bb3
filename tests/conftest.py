"""Shared test fixtures for PharmaTrace."""

from datetime import datetime, timezone

import pytest

from pharmatrace.anchor.client import SimulatedLedgerClient
from pharmatrace.batches.pipeline import AnchoringPipeline
from pharmatrace.batches.service import BatchService
from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.database import DatabaseManager
from pharmatrace.common.security import Actor, Role
from pharmatrace.custody.service import CustodyService
from pharmatrace.events.publisher import EventPublisher
from pharmatrace.resolution.service import ResolutionService
from pharmatrace.signatures.service import SignatureService


HMAC_KEY = "test-hmac-key-for-unit-tests"
NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> PharmaTraceSettings:
    defaults = {"hmac_key": HMAC_KEY, "db_url": "sqlite+aiosqlite://"}
    defaults.update(overrides)
    return PharmaTraceSettings(**defaults)


def _batch_input(batch_number: str = "BATCH100", **overrides) -> dict:
    data = {
        "name": "Paracetamol 500mg",
        "active_ingredient": "Paracetamol",
        "dosage": "500mg",
        "form": "tablet",
        "batch_number": batch_number,
        "production_date": "2025-06-01",
        "expiry_date": "2028-06-01",
        "quality_test": {"result": "passed", "tested_by": "QA Lab 2"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def batch_input():
    """Factory for valid batch creation input."""
    return _batch_input


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def manufacturer():
    return Actor(id="mfr-1", role=Role.MANUFACTURER, organization_id="ORG-MFR-1", name="Hanoi Pharma")


@pytest.fixture
def other_manufacturer():
    return Actor(id="mfr-2", role=Role.MANUFACTURER, organization_id="ORG-MFR-2", name="Saigon Pharma")


@pytest.fixture
def distributor():
    return Actor(id="dist-1", role=Role.DISTRIBUTOR, organization_id="ORG-DIST-1", name="North Logistics")


@pytest.fixture
def hospital():
    return Actor(id="hosp-1", role=Role.HOSPITAL, organization_id="ORG-HOSP-1", name="Bach Mai Hospital")


@pytest.fixture
def patient():
    return Actor(id="pat-1", role=Role.PATIENT, name="Nguyen Van A")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=Role.ADMIN, name="Regulator")


@pytest.fixture
def ledger_client():
    return SimulatedLedgerClient(HMAC_KEY)


@pytest.fixture
def events(settings):
    return EventPublisher(settings)


@pytest.fixture
def batch_svc(settings, events):
    return BatchService(settings, events=events)


@pytest.fixture
def pipeline(settings, db, batch_svc, ledger_client, events):
    return AnchoringPipeline(settings, db, batch_svc, ledger_client, events=events)


@pytest.fixture
def custody_svc(settings, ledger_client, events):
    return CustodyService(settings, ledger_client=ledger_client, events=events)


@pytest.fixture
def resolver(settings, db, events):
    return ResolutionService(settings, db, events=events, clock=lambda: NOW)


@pytest.fixture
def signature_svc(settings, events):
    return SignatureService(settings, events=events)
