from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

import h2_registry.event.services as event_services
from h2_registry.core.database import db
from h2_registry.core.models.base import CreditStatus, LedgerResponse
from h2_registry.credit import services
from h2_registry.credit.models import Credit
from h2_registry.credit.schemas import (
    CreditQueryResponse,
    CreditRead,
    CreditRetire,
    CreditRetireResponse,
    CreditTransfer,
    CreditTransferResponse,
    RetirementCertificate,
)
from h2_registry.event.schemas import CreditEventRead
from h2_registry.user.models import User
from h2_registry.user.services import get_current_user
from h2_registry.user.validation import LedgerAction, validate_user_capability

# Router initialisation
router = APIRouter(tags=["Credits"])


@router.get("/", response_model=LedgerResponse[CreditQueryResponse])
def list_available_credits(
    region: str | None = None,
    min_trust_score: float | None = Query(default=None, ge=0, le=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    validate_user_capability(current_user, LedgerAction.PURCHASE_CREDIT)

    credits, total, pages = services.list_available_credits(
        read_session,
        region=region,
        min_trust_score=min_trust_score,
        page=page,
        limit=limit,
    )

    return LedgerResponse(
        data=CreditQueryResponse(
            credits=[credit.to_read() for credit in credits],
            page=page,
            pages=pages,
            total=total,
        )
    )


@router.get("/my-credits", response_model=LedgerResponse[CreditQueryResponse])
def list_my_credits(
    status: CreditStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    credits, total, pages = services.list_credits_by_owner(
        current_user.id,  # type: ignore[arg-type]
        read_session,
        status=status,
        page=page,
        limit=limit,
    )

    return LedgerResponse(
        data=CreditQueryResponse(
            credits=[credit.to_read() for credit in credits],
            page=page,
            pages=pages,
            total=total,
        )
    )


@router.get("/my-events", response_model=LedgerResponse[list[CreditEventRead]])
def list_my_events(
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    events = event_services.list_events_for_user(
        current_user.id,  # type: ignore[arg-type]
        read_session,
        limit=limit,
    )
    return LedgerResponse(
        data=[CreditEventRead.model_validate(event.model_dump()) for event in events]
    )


@router.get("/by-credit-id/{credit_id}", response_model=LedgerResponse[CreditRead])
def read_credit_by_credit_id(
    credit_id: str,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    credit = services.get_credit_by_credit_id(credit_id, read_session)
    return LedgerResponse(data=credit.to_read())


@router.get("/{credit_id}", response_model=LedgerResponse[CreditRead])
def read_credit(
    credit_id: int,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    credit = Credit.by_id(credit_id, read_session)
    return LedgerResponse(data=credit.to_read())


@router.get("/{credit_id}/events", response_model=LedgerResponse[list[CreditEventRead]])
def list_credit_events(
    credit_id: int,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    credit = Credit.by_id(credit_id, read_session)
    events = event_services.list_events_for_credit(credit.id, read_session)  # type: ignore[arg-type]
    return LedgerResponse(
        data=[CreditEventRead.model_validate(event.model_dump()) for event in events]
    )


@router.post("/{credit_id}/transfer", response_model=LedgerResponse[CreditTransferResponse])
def transfer_credit(
    credit_id: int,
    credit_transfer: CreditTransfer,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.TRANSFER_CREDIT)

    credit, transfer_event = services.transfer_credit(
        credit_id,
        current_user,
        credit_transfer.to_user_id,
        credit_transfer.amount,
        write_session,
    )

    return LedgerResponse(
        message="Credit transferred successfully",
        data=CreditTransferResponse(
            credit=credit.to_read(),
            transfer_event=CreditEventRead.model_validate(transfer_event.model_dump()),
        ),
    )


@router.post("/{credit_id}/retire", response_model=LedgerResponse[CreditRetireResponse])
def retire_credit(
    credit_id: int,
    credit_retire: CreditRetire,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.RETIRE_CREDIT)

    credit, retirement_event, retirement_receipt = services.retire_credit(
        credit_id,
        current_user,
        credit_retire.reason,
        write_session,
        amount=credit_retire.amount,
    )

    return LedgerResponse(
        message="Credit retired successfully",
        data=CreditRetireResponse(
            credit=credit.to_read(),
            retirement_event=CreditEventRead.model_validate(retirement_event.model_dump()),
            retirement_receipt=retirement_receipt,
        ),
    )


@router.get(
    "/{credit_id}/retirement-certificate/{receipt_id}",
    response_model=LedgerResponse[RetirementCertificate],
)
def read_retirement_certificate(
    credit_id: int,
    receipt_id: str,
    read_session: Session = Depends(db.get_read_session),
):
    """Retirement certificates are public so that offset claims can be checked."""
    certificate = services.get_retirement_certificate(credit_id, receipt_id, read_session)
    return LedgerResponse(data=certificate)
