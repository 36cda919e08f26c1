import datetime
import enum
from enum import Enum
from functools import partial
from typing import Generic, TypeVar

from pydantic import BaseModel

utc_datetime_now = partial(datetime.datetime.now, datetime.timezone.utc)


class UserRoles(str, Enum):
    ADMIN = "admin"
    CERTIFIER = "certifier"
    PRODUCER = "producer"
    BUYER = "buyer"
    AUDITOR = "auditor"

    def __str__(self):
        return self.value


class BatchStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MINTED = "minted"


# Legal batch transitions; rejected and minted are terminal.
BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.APPROVED, BatchStatus.REJECTED},
    BatchStatus.APPROVED: {BatchStatus.MINTED},
    BatchStatus.REJECTED: set(),
    BatchStatus.MINTED: set(),
}


class CreditStatus(str, Enum):
    ACTIVE = "active"
    TRANSFERRED = "transferred"
    RETIRED = "retired"


class CreditEventType(str, Enum):
    MINT = "MINT"
    TRANSFER = "TRANSFER"
    RETIRE = "RETIRE"


class CreditEventStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionType(str, Enum):
    CREDIT_PURCHASE = "CREDIT_PURCHASE"
    CREDIT_TRANSFER = "CREDIT_TRANSFER"
    CREDIT_RETIREMENT = "CREDIT_RETIREMENT"
    BATCH_VERIFICATION = "BATCH_VERIFICATION"
    SUBSCRIPTION = "SUBSCRIPTION"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CRYPTO = "CRYPTO"
    CREDIT_BALANCE = "CREDIT_BALANCE"
    FREE = "FREE"


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"


class EventTypes(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class logging_levels(str, enum.Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingLevelRequest(BaseModel):
    level: logging_levels


DataT = TypeVar("DataT")


class LedgerResponse(BaseModel, Generic[DataT]):
    """Response envelope shared by every route."""

    success: bool = True
    message: str | None = None
    data: DataT | None = None
