from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

import h2_registry.credit.services as credit_services
from h2_registry.batch import services
from h2_registry.batch.schemas import (
    BatchApprove,
    BatchCreate,
    BatchQueryResponse,
    BatchRead,
    BatchReject,
    VerificationResult,
)
from h2_registry.core.database import db
from h2_registry.core.models.base import BatchStatus, LedgerResponse
from h2_registry.credit.schemas import CreditMint, CreditMintResponse
from h2_registry.event.schemas import CreditEventRead
from h2_registry.user.models import User
from h2_registry.user.services import get_current_user
from h2_registry.user.validation import LedgerAction, validate_user_capability

# Router initialisation
router = APIRouter(tags=["Batches"])


@router.post("/", status_code=201, response_model=LedgerResponse[BatchRead])
def submit_batch(
    batch_create: BatchCreate,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.SUBMIT_BATCH)

    batch = services.submit_batch(current_user, batch_create, write_session)

    return LedgerResponse(message="Batch submitted successfully", data=batch.to_read())


@router.get("/", response_model=LedgerResponse[BatchQueryResponse])
def list_batches(
    status: BatchStatus | None = None,
    region: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    batches, total, pages = services.list_batches(
        current_user, read_session, status=status, region=region, page=page, limit=limit
    )

    return LedgerResponse(
        data=BatchQueryResponse(
            batches=[batch.to_read() for batch in batches],
            page=page,
            pages=pages,
            total=total,
        )
    )


@router.get("/{batch_id}", response_model=LedgerResponse[BatchRead])
def read_batch(
    batch_id: int,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    batch = services.get_batch_by_id(batch_id, current_user, read_session)
    return LedgerResponse(data=batch.to_read())


@router.get("/{batch_id}/verify", response_model=LedgerResponse[VerificationResult])
def verify_batch(
    batch_id: int,
    current_user: User = Depends(get_current_user),
    read_session: Session = Depends(db.get_read_session),
):
    validate_user_capability(current_user, LedgerAction.VERIFY_BATCH)

    verification_result = services.verify_batch(batch_id, current_user, read_session)

    return LedgerResponse(message="Verification completed", data=verification_result)


@router.post("/{batch_id}/approve", response_model=LedgerResponse[BatchRead])
def approve_batch(
    batch_id: int,
    batch_approve: BatchApprove,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.APPROVE_BATCH)

    batch = services.approve_batch(
        batch_id,
        batch_approve.verification_result,
        current_user,
        write_session,
        notes=batch_approve.notes,
    )

    return LedgerResponse(message="Batch approved successfully", data=batch.to_read())


@router.post("/{batch_id}/reject", response_model=LedgerResponse[BatchRead])
def reject_batch(
    batch_id: int,
    batch_reject: BatchReject,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.REJECT_BATCH)

    batch = services.reject_batch(
        batch_id, batch_reject.rejection_reason, current_user, write_session
    )

    return LedgerResponse(message="Batch rejected successfully", data=batch.to_read())


@router.post(
    "/{batch_id}/mint", status_code=201, response_model=LedgerResponse[CreditMintResponse]
)
def mint_credit(
    batch_id: int,
    credit_mint: CreditMint,
    current_user: User = Depends(get_current_user),
    write_session: Session = Depends(db.get_write_session),
):
    validate_user_capability(current_user, LedgerAction.MINT_CREDIT)

    credit, mint_event = credit_services.mint_credit(
        batch_id,
        credit_mint.supply,
        current_user,
        write_session,
        certification_standard=credit_mint.certification_standard,
    )

    return LedgerResponse(
        message="Credits minted successfully",
        data=CreditMintResponse(
            credit=credit.to_read(),
            event=CreditEventRead.model_validate(mint_event.model_dump()),
        ),
    )
