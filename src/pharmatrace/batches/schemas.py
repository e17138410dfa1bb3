"""Pydantic schemas for batch input and views."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from pharmatrace.common.models import coerce_datetime, utcnow

DosageForm = Literal[
    "tablet", "capsule", "syrup", "injection", "cream", "gel",
    "ointment", "dry_extract", "soft_extract", "other",
]

DistributionStatus = Literal[
    "production", "quality_control", "packaging", "in_transit",
    "in_storage", "sold", "used", "recalled",
]

LocationType = Literal["factory", "distribution_warehouse", "hospital", "pharmacy", "patient"]


class QualityTest(BaseModel):
    test_date: datetime = Field(default_factory=utcnow)
    result: Literal["passed", "failed", "pending"] = "pending"
    tested_by: str = "system"
    report: str = ""
    certificate_number: str = ""

    @field_validator("test_date", mode="before")
    @classmethod
    def _coerce_test_date(cls, value: Any) -> datetime:
        return coerce_datetime(value)


class Range(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    unit: str = ""


class StorageConditions(BaseModel):
    temperature: Range = Field(default_factory=lambda: Range(unit="celsius"))
    humidity: Range = Field(default_factory=lambda: Range(unit="%"))
    light_sensitive: bool = False
    special_instructions: str = ""


class BatchCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    active_ingredient: str = Field(min_length=1, max_length=500)
    dosage: str = Field(min_length=1, max_length=100)
    form: DosageForm = "tablet"
    batch_number: str = Field(min_length=1, max_length=100)
    production_date: datetime
    expiry_date: datetime
    quality_test: QualityTest = Field(default_factory=QualityTest)
    storage: StorageConditions = Field(default_factory=StorageConditions)
    manufacturer_id: Optional[str] = None

    @field_validator("name", "active_ingredient", "dosage", "batch_number", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("production_date", "expiry_date", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> datetime:
        return coerce_datetime(value)

    @model_validator(mode="after")
    def _expiry_after_production(self) -> "BatchCreate":
        if self.expiry_date <= self.production_date:
            raise ValueError("expiry_date must be after production_date")
        return self


class DistributionUpdate(BaseModel):
    status: DistributionStatus
    location_type: Optional[LocationType] = None
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    address: Optional[str] = None
    note: str = ""


