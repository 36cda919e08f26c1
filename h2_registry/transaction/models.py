import datetime
from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, Session, select

from h2_registry import utils
from h2_registry.transaction.schemas import TransactionBase, TransactionRead

# Transactions are the bookkeeping view of business actions: purchases,
# transfers, retirements and batch verifications. Their lifecycle is
# independent of the credits and batches they reference.


class Transaction(TransactionBase, utils.VersionedRecord, table=True):
    __tablename__: str = "ledger_transaction"  # type: ignore
    __table_args__ = (Index("ix_ledger_transaction_created_at", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    transaction_id: str = Field(
        unique=True,
        index=True,
        description="The public identifier of the transaction, TXN-<ms timestamp>-<random suffix>.",
    )
    completed_at: datetime.datetime | None = Field(
        default=None,
        description="Set the first time the transaction is completed and never cleared.",
    )
    audit_trail: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )

    @property
    def summary(self) -> str:
        return f"{self.type.value} - {self.amount} {self.currency.value}"

    @classmethod
    def by_transaction_id(
        cls, transaction_id: str, session: Session
    ) -> "Transaction | None":
        return session.exec(
            select(cls).where(cls.transaction_id == transaction_id)
        ).first()

    def to_read(self) -> TransactionRead:
        return TransactionRead.model_validate(self.model_dump(exclude={"version"}))
