import datetime

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import CreditStatus
from h2_registry.event.schemas import CreditEventRead


class TransferRecord(BaseModel):
    from_user: int
    to_user: int
    transferred_at: datetime.datetime
    transfer_amount: float = Field(ge=0)
    transaction_hash: str


class RetirementReceipt(BaseModel):
    receipt_id: str
    retired_at: datetime.datetime
    retired_by: int
    reason: str = Field(max_length=500)
    amount: float = Field(ge=0)
    carbon_offset: float = Field(ge=0)
    renewable_energy_equivalent: float = Field(ge=0)
    certificate_url: str


class RetirementCertificate(BaseModel):
    receipt_id: str
    credit_id: str
    retired_at: datetime.datetime
    reason: str
    amount: float
    carbon_offset: float
    renewable_energy_equivalent: float
    certificate_number: str
    issuer: str
    validity: str = "Permanent"
    blockchain_hash: str


class CreditBase(SQLModel):
    batch_id: int = Field(
        foreign_key="batch.id",
        index=True,
        description="The approved batch this credit was minted from.",
    )
    supply: float = Field(
        ge=0,
        description="""The remaining quantity of the credit. Only retirement reduces it; transfers
                       move ownership of the credit as a whole.""",
    )
    minted_supply: float = Field(
        ge=0,
        description="The supply issued at minting, which bounds every transfer and retirement amount recorded against the credit.",
    )
    owner_id: int = Field(
        foreign_key="registry_user.id",
        description="The current holder of the credit.",
    )
    status: CreditStatus = Field(default=CreditStatus.ACTIVE)
    certification_standard: str | None = Field(default=None, max_length=100)


class CreditMint(BaseModel):
    supply: float = PydanticField(gt=0, allow_inf_nan=False)
    certification_standard: str | None = Field(default=None, max_length=100)


class CreditTransfer(BaseModel):
    to_user_id: int
    amount: float = PydanticField(gt=0, allow_inf_nan=False)


class CreditRetire(BaseModel):
    reason: str
    amount: float | None = PydanticField(default=None, gt=0, allow_inf_nan=False)


class CreditRead(BaseModel):
    id: int
    credit_id: str
    batch_id: int
    supply: float
    minted_supply: float
    owner_id: int
    status: CreditStatus
    certification_standard: str | None = None
    transfer_history: list[TransferRecord]
    retirement_receipt: RetirementReceipt | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime


class CreditQueryResponse(BaseModel):
    credits: list[CreditRead]
    page: int
    pages: int
    total: int


class CreditMintResponse(BaseModel):
    credit: CreditRead
    event: CreditEventRead


class CreditTransferResponse(BaseModel):
    credit: CreditRead
    transfer_event: CreditEventRead


class CreditRetireResponse(BaseModel):
    credit: CreditRead
    retirement_event: CreditEventRead
    retirement_receipt: RetirementReceipt
