import datetime
import math

from pydantic import BaseModel, field_validator
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import BatchStatus


class BatchBase(SQLModel):
    batch_number: str = Field(
        description="The producer's reference for the production run, unique across the registry.",
        min_length=1,
        max_length=100,
        unique=True,
        index=True,
    )
    kg_produced: float = Field(
        description="""Kilograms of hydrogen produced in the run. Must be strictly positive so that
                       the energy intensity of the batch can be derived during verification.""",
        gt=0,
    )
    kwh_used: float = Field(
        description="Kilowatt-hours of electricity consumed by the production run.",
        ge=0,
    )
    region: str = Field(
        description="The region in which the hydrogen was produced.",
        min_length=1,
        max_length=100,
    )
    production_date: datetime.datetime = Field(
        description="The date on which the production run took place.",
    )
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("batch_number", "region")
    def strip_whitespace(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be blank")
        return v

    @field_validator("kg_produced", "kwh_used")
    def require_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("Value must be a finite number")
        return v


class BatchCreate(BatchBase):
    certificate_files: list[str] = Field(
        description="""Opaque references to the certificate files uploaded with the batch.
                       The ledger never opens them, it only requires at least one.""",
        min_length=1,
    )


class VerificationResult(BaseModel):
    """The outcome of the simulated verification of a pending batch."""

    kwh_per_kg: float = Field(ge=0)
    trust_score: float = Field(ge=0, le=100)
    carbon_intensity: float = Field(ge=0)
    anomaly_flags: list[str] = Field(default_factory=list)
    verified_at: datetime.datetime | None = None
    verified_by: int | None = None


class BatchApprove(BaseModel):
    verification_result: VerificationResult
    notes: str | None = Field(default=None, max_length=1000)


class BatchReject(BaseModel):
    rejection_reason: str


class BatchRead(BaseModel):
    id: int
    producer_id: int
    batch_number: str
    kg_produced: float
    kwh_used: float
    region: str
    production_date: datetime.datetime
    certificate_files: list[str]
    status: BatchStatus
    evidence_hash: str
    verification_result: VerificationResult | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    efficiency_ratio: float
    created_at: datetime.datetime
    updated_at: datetime.datetime


class BatchQueryResponse(BaseModel):
    batches: list[BatchRead]
    page: int
    pages: int
    total: int
