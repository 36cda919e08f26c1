import datetime

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, Session, select

from h2_registry import utils
from h2_registry.batch.schemas import BatchBase, BatchRead, VerificationResult
from h2_registry.core.models.base import BatchStatus

# A Batch is a producer's reported hydrogen production run. It moves through
# pending -> approved | rejected, and approved batches become minted once a
# credit has been issued against them.


class Batch(BatchBase, utils.VersionedRecord, table=True):
    __table_args__ = (
        Index("ix_batch_producer_id_status", "producer_id", "status"),
        Index("ix_batch_status_created_at", "status", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    producer_id: int = Field(foreign_key="registry_user.id")
    certificate_files: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    status: BatchStatus = Field(default=BatchStatus.PENDING)
    evidence_hash: str = Field(
        unique=True,
        index=True,
        description="""A sha256 fingerprint of the reported measures and the submission timestamp,
                       binding the batch to its evidence.""",
    )

    ### Verification payload, populated on approval ###
    kwh_per_kg: float | None = Field(default=None, ge=0)
    trust_score: float | None = Field(default=None, ge=0, le=100)
    carbon_intensity: float | None = Field(default=None, ge=0)
    anomaly_flags: list[str] | None = Field(default=None, sa_column=Column(JSON))
    verified_at: datetime.datetime | None = None
    verified_by: int | None = Field(default=None, foreign_key="registry_user.id")

    rejection_reason: str | None = Field(default=None, max_length=500)

    @property
    def efficiency_ratio(self) -> float:
        """Kilograms of hydrogen produced per kWh consumed."""
        if self.kwh_used == 0:
            return 0
        return self.kg_produced / self.kwh_used

    @property
    def verification_result(self) -> VerificationResult | None:
        if self.trust_score is None:
            return None
        return VerificationResult(
            kwh_per_kg=self.kwh_per_kg or 0,
            trust_score=self.trust_score,
            carbon_intensity=self.carbon_intensity or 0,
            anomaly_flags=self.anomaly_flags or [],
            verified_at=self.verified_at,
            verified_by=self.verified_by,
        )

    @classmethod
    def by_batch_number(cls, batch_number: str, session: Session) -> "Batch | None":
        return session.exec(select(cls).where(cls.batch_number == batch_number)).first()

    @classmethod
    def by_evidence_hash(cls, evidence_hash: str, session: Session) -> "Batch | None":
        return session.exec(
            select(cls).where(cls.evidence_hash == evidence_hash)
        ).first()

    def to_read(self) -> BatchRead:
        return BatchRead(
            **self.model_dump(
                exclude={
                    "kwh_per_kg",
                    "trust_score",
                    "carbon_intensity",
                    "anomaly_flags",
                    "verified_at",
                    "verified_by",
                    "version",
                }
            ),
            verification_result=self.verification_result,
            efficiency_ratio=self.efficiency_ratio,
        )
