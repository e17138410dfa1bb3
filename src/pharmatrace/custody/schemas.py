"""Pydantic schemas for custody ledger input."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from pharmatrace.common.models import coerce_datetime, utcnow

VerificationMethod = Literal["qr_scan", "manual", "blockchain", "auto"]


class Coordinates(BaseModel):
    lat: float
    lng: float


class Location(BaseModel):
    address: str = ""
    coordinates: Optional[Coordinates] = None


class Conditions(BaseModel):
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    light: Optional[str] = None
    notes: str = ""


class StepInput(BaseModel):
    action: str = Field(min_length=1)
    location: Location = Field(default_factory=Location)
    conditions: Conditions = Field(default_factory=Conditions)
    metadata: dict[str, Any] = Field(default_factory=dict)
    verification_method: VerificationMethod = "manual"


class QualityCheckInput(BaseModel):
    check_type: Literal["temperature", "humidity", "integrity", "expiry", "custom"]
    result: Literal["pass", "fail", "warning"]
    value: Optional[str] = None
    notes: str = ""
    checked_at: datetime = Field(default_factory=utcnow)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("checked_at", mode="before")
    @classmethod
    def _coerce_checked_at(cls, value: Any) -> datetime:
        return coerce_datetime(value)


class LedgerRecall(BaseModel):
    reason: str = Field(min_length=10)
    action: str = Field(default="quarantine", min_length=1, max_length=50)
    affected_units: list[str] = Field(default_factory=list)

    @field_validator("reason", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value
