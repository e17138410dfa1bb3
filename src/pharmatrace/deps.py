"""Dependency injection singletons for PharmaTrace."""

from pharmatrace.anchor.client import LedgerClient, build_ledger_client
from pharmatrace.batches.pipeline import AnchoringPipeline
from pharmatrace.batches.service import BatchService
from pharmatrace.common.config import get_settings
from pharmatrace.common.database import DatabaseManager
from pharmatrace.custody.service import CustodyService
from pharmatrace.events.publisher import EventPublisher
from pharmatrace.participants.service import ParticipantService
from pharmatrace.resolution.service import ResolutionService
from pharmatrace.signatures.service import SignatureService

_db: DatabaseManager | None = None
_ledger: LedgerClient | None = None
_events: EventPublisher | None = None
_batches: BatchService | None = None
_pipeline: AnchoringPipeline | None = None
_custody: CustodyService | None = None
_resolution: ResolutionService | None = None
_signatures: SignatureService | None = None
_participants: ParticipantService | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_ledger_client() -> LedgerClient:
    global _ledger
    if _ledger is None:
        _ledger = build_ledger_client(get_settings())
    return _ledger


def get_event_publisher() -> EventPublisher:
    global _events
    if _events is None:
        _events = EventPublisher(get_settings())
    return _events


def get_batch_service() -> BatchService:
    global _batches
    if _batches is None:
        _batches = BatchService(get_settings(), events=get_event_publisher())
    return _batches


def get_anchoring_pipeline() -> AnchoringPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = AnchoringPipeline(
            get_settings(),
            get_db(),
            get_batch_service(),
            get_ledger_client(),
            events=get_event_publisher(),
        )
    return _pipeline


def get_custody_service() -> CustodyService:
    global _custody
    if _custody is None:
        _custody = CustodyService(
            get_settings(),
            ledger_client=get_ledger_client(),
            events=get_event_publisher(),
        )
    return _custody


def get_resolution_service() -> ResolutionService:
    global _resolution
    if _resolution is None:
        _resolution = ResolutionService(get_settings(), get_db(), events=get_event_publisher())
    return _resolution


def get_signature_service() -> SignatureService:
    global _signatures
    if _signatures is None:
        _signatures = SignatureService(get_settings(), events=get_event_publisher())
    return _signatures


def get_participant_service() -> ParticipantService:
    global _participants
    if _participants is None:
        _participants = ParticipantService(get_settings())
    return _participants


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _ledger, _events, _batches, _pipeline
    global _custody, _resolution, _signatures, _participants
    _db = None
    _ledger = None
    _events = None
    _batches = None
    _pipeline = None
    _custody = None
    _resolution = None
    _signatures = None
    _participants = None
