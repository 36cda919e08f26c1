import datetime
import math

import pytz
from pydantic import BaseModel, field_validator, model_validator
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import (
    Currency,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
    utc_datetime_now,
)

CREDIT_TRANSACTION_TYPES = {
    TransactionType.CREDIT_PURCHASE,
    TransactionType.CREDIT_TRANSFER,
    TransactionType.CREDIT_RETIREMENT,
}


class AuditEntry(BaseModel):
    action: str
    timestamp: datetime.datetime = Field(default_factory=utc_datetime_now)
    user_id: int | None = None
    details: str | None = None


class TransactionBase(SQLModel):
    type: TransactionType = Field(index=True)
    from_user: int | None = Field(
        default=None, foreign_key="registry_user.id", index=True
    )
    to_user: int | None = Field(default=None, foreign_key="registry_user.id", index=True)
    batch_id: int | None = Field(default=None, foreign_key="batch.id", index=True)
    credit_id: int | None = Field(default=None, foreign_key="credit.id", index=True)
    amount: float = Field(
        ge=0,
        description="The monetary amount of the transaction. Bookkeeping only, no payment is processed.",
    )
    currency: Currency = Field(default=Currency.USD)
    credit_amount: float | None = Field(
        default=None,
        ge=0,
        description="The quantity of hydrogen credit the transaction concerns.",
    )
    status: TransactionStatus = Field(default=TransactionStatus.PENDING, index=True)
    payment_method: PaymentMethod | None = Field(default=None)
    description: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)
    external_reference: str | None = Field(default=None, max_length=255)

    @field_validator("amount", "credit_amount")
    def require_finite(cls, v: float | None) -> float | None:
        if v is not None and not math.isfinite(v):
            raise ValueError("Value must be a finite number")
        return v


class TransactionCreate(TransactionBase):
    @model_validator(mode="after")
    def validate_fields_for_type(self):
        """Each transaction type requires a different subset of parties and references."""
        if self.type != TransactionType.BATCH_VERIFICATION and self.from_user is None:
            raise ValueError(f"from_user is required for {self.type.value} transactions")
        if (
            self.type
            in (TransactionType.CREDIT_TRANSFER, TransactionType.CREDIT_PURCHASE)
            and self.to_user is None
        ):
            raise ValueError(f"to_user is required for {self.type.value} transactions")
        if self.type == TransactionType.BATCH_VERIFICATION and self.batch_id is None:
            raise ValueError("batch_id is required for BATCH_VERIFICATION transactions")
        if (
            self.type
            in (TransactionType.CREDIT_TRANSFER, TransactionType.CREDIT_RETIREMENT)
            and self.credit_id is None
        ):
            raise ValueError(f"credit_id is required for {self.type.value} transactions")
        if self.type in CREDIT_TRANSACTION_TYPES and self.credit_amount is None:
            raise ValueError(
                f"credit_amount is required for {self.type.value} transactions"
            )
        if self.amount > 0 and self.payment_method is None:
            raise ValueError("payment_method is required when amount is greater than zero")
        return self


class TransactionRead(BaseModel):
    id: int
    transaction_id: str
    type: TransactionType
    from_user: int | None = None
    to_user: int | None = None
    batch_id: int | None = None
    credit_id: int | None = None
    amount: float
    currency: Currency
    credit_amount: float | None = None
    status: TransactionStatus
    payment_method: PaymentMethod | None = None
    description: str | None = None
    notes: str | None = None
    external_reference: str | None = None
    audit_trail: list[AuditEntry]
    created_at: datetime.datetime
    updated_at: datetime.datetime
    completed_at: datetime.datetime | None = None


class PurchaseRequest(BaseModel):
    credit_id: int
    amount: float = Field(ge=0)
    payment_method: PaymentMethod | None = None
    notes: str | None = Field(default=None, max_length=1000)


class TransferRecordRequest(BaseModel):
    credit_id: int
    recipient_email: str
    amount: float
    notes: str | None = Field(default=None, max_length=1000)


class VerificationRecordRequest(BaseModel):
    batch_id: int
    amount: float = Field(default=0, ge=0)
    notes: str | None = Field(default=None, max_length=1000)


class RetirementRecordRequest(BaseModel):
    credit_id: int
    credit_amount: float
    notes: str | None = Field(default=None, max_length=1000)


class TransactionStatusUpdate(BaseModel):
    status: TransactionStatus
    notes: str | None = Field(default=None, max_length=1000)


class DateRange(BaseModel):
    """An inclusive creation-time window. Naive datetimes are taken to be UTC."""

    from_date: datetime.datetime | None = None
    to_date: datetime.datetime | None = None

    @staticmethod
    def _to_utc(value: datetime.datetime | None) -> datetime.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)

    @model_validator(mode="after")
    def normalise_to_utc(self):
        self.from_date = self._to_utc(self.from_date)
        self.to_date = self._to_utc(self.to_date)
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


class TransactionOverview(BaseModel):
    total_transactions: int = 0
    total_amount: float = 0
    total_credits: float = 0
    avg_amount: float = 0
    avg_credits: float = 0


class TransactionTypeStatistics(BaseModel):
    count: int
    total_amount: float
    total_credits: float


class TransactionStatusStatistics(BaseModel):
    count: int
    total_amount: float


class TransactionStatistics(BaseModel):
    overview: TransactionOverview
    by_type: dict[TransactionType, TransactionTypeStatistics]
    by_status: dict[TransactionStatus, TransactionStatusStatistics]


class TransactionQueryResponse(BaseModel):
    transactions: list[TransactionRead]
    page: int
    pages: int
    total: int
