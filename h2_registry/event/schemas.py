import datetime
from typing import Any

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import CreditEventStatus, CreditEventType


class CreditEventBase(SQLModel):
    credit_id: int = Field(
        foreign_key="credit.id",
        description="The credit whose provenance this event records.",
    )
    event_type: CreditEventType = Field(description="One of MINT, TRANSFER or RETIRE.")
    from_user: int = Field(
        foreign_key="registry_user.id",
        index=True,
        description="The user the action originates from: the minting certifier, the seller or the retiring owner.",
    )
    to_user: int = Field(
        foreign_key="registry_user.id",
        index=True,
        description="The user receiving the credit. For retirements this is the retiring owner.",
    )
    amount: float = Field(ge=0)
    status: CreditEventStatus = Field(default=CreditEventStatus.CONFIRMED)


class CreditEventRead(BaseModel):
    id: int
    credit_id: int
    event_type: CreditEventType
    from_user: int
    to_user: int
    amount: float
    details: dict[str, Any]
    transaction_hash: str
    status: CreditEventStatus
    created_at: datetime.datetime
