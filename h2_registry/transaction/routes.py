import datetime

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from h2_registry.core.database import db
from h2_registry.core.models.base import (
    LedgerResponse,
    TransactionStatus,
    TransactionType,
)
from h2_registry.transaction import services
from h2_registry.transaction.schemas import (
    PurchaseRequest,
    RetirementRecordRequest,
    TransactionQueryResponse,
    TransactionRead,
    TransactionStatistics,
    TransactionStatusUpdate,
    TransferRecordRequest,
    VerificationRecordRequest,
)
from h2_registry.user.models import User
from h2_registry.user.services import get_current_user
from h2_registry.user.validation import LedgerAction, validate_user_capability

# Router initialisation
router = APIRouter(tags=["Transactions"])


@router.get("/", response_model=LedgerResponse[TransactionQueryResponse])
def list_transactions(
    type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    from_date: datetime.datetime | None = None,
    to_date: datetime.datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    validate_user_capability(current_user, LedgerAction.VIEW_STATISTICS)

    transactions, total, pages = services.list_transactions(
        read_session,
        transaction_type=type,
        status=status,
        date_range=services.build_date_range(from_date, to_date),
        page=page,
        limit=limit,
    )

    return LedgerResponse(
        data=TransactionQueryResponse(
            transactions=[transaction.to_read() for transaction in transactions],
            page=page,
            pages=pages,
            total=total,
        )
    )


@router.get("/my-transactions", response_model=LedgerResponse[TransactionQueryResponse])
def list_my_transactions(
    type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    transactions, total, pages = services.list_transactions_for_user(
        current_user.id,  # type: ignore[arg-type]
        read_session,
        transaction_type=type,
        status=status,
        page=page,
        limit=limit,
    )

    return LedgerResponse(
        data=TransactionQueryResponse(
            transactions=[transaction.to_read() for transaction in transactions],
            page=page,
            pages=pages,
            total=total,
        )
    )


@router.get("/stats/overview", response_model=LedgerResponse[TransactionStatistics])
def read_transaction_statistics(
    from_date: datetime.datetime | None = None,
    to_date: datetime.datetime | None = None,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    validate_user_capability(current_user, LedgerAction.VIEW_STATISTICS)

    statistics = services.get_transaction_statistics(
        read_session, services.build_date_range(from_date, to_date)
    )
    return LedgerResponse(data=statistics)


@router.get("/{transaction_id}", response_model=LedgerResponse[TransactionRead])
def read_transaction(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    transaction = services.get_transaction_by_transaction_id(
        transaction_id, read_session, viewer=current_user
    )
    return LedgerResponse(data=transaction.to_read())


@router.post("/purchase", status_code=201, response_model=LedgerResponse[TransactionRead])
def create_purchase(
    purchase: PurchaseRequest,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.PURCHASE_CREDIT)

    transaction = services.create_purchase(
        current_user,
        purchase.credit_id,
        purchase.amount,
        write_session,
        payment_method=purchase.payment_method,
        notes=purchase.notes,
    )

    return LedgerResponse(
        message="Credit purchase transaction created successfully",
        data=transaction.to_read(),
    )


@router.post("/transfer", status_code=201, response_model=LedgerResponse[TransactionRead])
def create_transfer_record(
    transfer: TransferRecordRequest,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.TRANSFER_CREDIT)

    transaction = services.create_transfer_record(
        current_user,
        transfer.credit_id,
        transfer.recipient_email,
        transfer.amount,
        write_session,
        notes=transfer.notes,
    )

    return LedgerResponse(
        message="Credit transfer transaction created successfully",
        data=transaction.to_read(),
    )


@router.post(
    "/verification", status_code=201, response_model=LedgerResponse[TransactionRead]
)
def create_verification_record(
    verification: VerificationRecordRequest,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.RECORD_VERIFICATION)

    transaction = services.create_verification_record(
        current_user,
        verification.batch_id,
        write_session,
        amount=verification.amount,
        notes=verification.notes,
    )

    return LedgerResponse(
        message="Batch verification transaction created successfully",
        data=transaction.to_read(),
    )


@router.post("/retirement", status_code=201, response_model=LedgerResponse[TransactionRead])
def create_retirement_record(
    retirement: RetirementRecordRequest,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.RETIRE_CREDIT)

    transaction = services.create_retirement_record(
        current_user,
        retirement.credit_id,
        retirement.credit_amount,
        write_session,
        notes=retirement.notes,
    )

    return LedgerResponse(
        message="Credit retirement transaction created successfully",
        data=transaction.to_read(),
    )


@router.patch("/{transaction_id}/status", response_model=LedgerResponse[TransactionRead])
def update_transaction_status(
    transaction_id: str,
    status_update: TransactionStatusUpdate,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.UPDATE_TRANSACTION)

    transaction = services.update_transaction_status(
        transaction_id,
        status_update.status,
        current_user,
        write_session,
        notes=status_update.notes,
    )

    return LedgerResponse(
        message="Transaction status updated successfully",
        data=transaction.to_read(),
    )
