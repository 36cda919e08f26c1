from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, Session, select

from h2_registry import utils
from h2_registry.credit.schemas import CreditBase, CreditRead

# A Credit is minted once from an approved Batch. Its row is the current-state
# view of the credit; the credit events are the authoritative provenance.


class Credit(CreditBase, utils.VersionedRecord, table=True):
    __table_args__ = (
        Index("ix_credit_owner_id_status", "owner_id", "status"),
        Index("ix_credit_status_created_at", "status", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    credit_id: str = Field(
        unique=True,
        index=True,
        description="The public identifier of the credit, H2C-<base36 timestamp>-<random suffix>.",
    )
    transfer_history: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    retirement_receipt: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON)
    )
    retirement_receipt_id: str | None = Field(default=None, unique=True, index=True)

    @property
    def transferred_total(self) -> float:
        return sum(entry["transfer_amount"] for entry in self.transfer_history or [])

    @property
    def retired_total(self) -> float:
        if not self.retirement_receipt:
            return 0
        return self.retirement_receipt["amount"]

    @property
    def provenance_headroom(self) -> float:
        """The amount that may still be attributed to transfers or retirement."""
        return max(0, self.minted_supply - self.transferred_total - self.retired_total)

    @classmethod
    def by_credit_id(cls, credit_id: str, session: Session) -> "Credit | None":
        return session.exec(select(cls).where(cls.credit_id == credit_id)).first()

    @classmethod
    def by_receipt_id(cls, receipt_id: str, session: Session) -> "Credit | None":
        return session.exec(
            select(cls).where(cls.retirement_receipt_id == receipt_id)
        ).first()

    def to_read(self) -> CreditRead:
        return CreditRead.model_validate(
            self.model_dump(exclude={"version", "retirement_receipt_id"})
        )
