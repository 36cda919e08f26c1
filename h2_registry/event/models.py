from typing import Any

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, Session, select

from h2_registry import utils
from h2_registry.event.schemas import CreditEventBase

# Credit events form the append-only provenance trail of every credit. Rows
# are written once, in the same unit of work as the credit mutation they
# describe, and are never updated or deleted.


class CreditEvent(CreditEventBase, utils.ActiveRecord, table=True):
    __tablename__: str = "credit_event"  # type: ignore
    __table_args__ = (
        Index("ix_credit_event_credit_id_created_at", "credit_id", "created_at"),
        Index("ix_credit_event_event_type_created_at", "event_type", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    details: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    transaction_hash: str = Field(
        unique=True,
        index=True,
        description="""A simulated ledger hash: the sha256 of the credit, event type, parties,
                       amount and append timestamp.""",
    )

    @classmethod
    def by_transaction_hash(
        cls, transaction_hash: str, session: Session
    ) -> "CreditEvent | None":
        return session.exec(
            select(cls).where(cls.transaction_hash == transaction_hash)
        ).first()
