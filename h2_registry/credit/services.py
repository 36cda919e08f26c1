import math
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from h2_registry.batch import services as batch_services
from h2_registry.batch.models import Batch
from h2_registry.batch.validation import validate_batch_transition, validate_reason
from h2_registry.core.database import cqrs
from h2_registry.core.error_handling import NotFoundError
from h2_registry.core.models.base import (
    BatchStatus,
    CreditEventType,
    CreditStatus,
    utc_datetime_now,
)
from h2_registry.core.services import (
    create_credit_id,
    create_receipt_id,
    generate_unique,
)
from h2_registry.credit.models import Credit
from h2_registry.credit.schemas import (
    RetirementCertificate,
    RetirementReceipt,
    TransferRecord,
)
from h2_registry.credit.validation import (
    validate_amount_available,
    validate_credit_active,
    validate_credit_owner,
    validate_positive_amount,
    validate_recipient,
)
from h2_registry.event import services as event_services
from h2_registry.event.models import CreditEvent
from h2_registry.logging_config import logger
from h2_registry.settings import LedgerConfig
from h2_registry.user.models import User

CERTIFICATE_NUMBER_PREFIX = "CERT"


def get_credit_for_update(credit_id: int, write_session: Session) -> Credit:
    """Read the current persisted state of a credit immediately before mutating it.

    The row is locked where the backend supports it; the version check on the
    subsequent write rejects any change made in between."""
    stmt = (
        select(Credit)
        .where(Credit.id == credit_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    credit = write_session.exec(stmt).first()
    if credit is None:
        err_msg = f"Credit with id {credit_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"credit_id": credit_id})
    return credit


def get_credit_by_credit_id(credit_id: str, read_session: Session) -> Credit:
    credit = Credit.by_credit_id(credit_id, read_session)
    if credit is None:
        err_msg = f"Credit {credit_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"credit_id": credit_id})
    return credit


def mint_credit(
    batch_id: int,
    supply: float,
    minter: User,
    write_session: Session,
    config: LedgerConfig | None = None,
    certification_standard: str | None = None,
) -> tuple[Credit, CreditEvent]:
    """
    Issue a credit against an approved batch.

    Creating the credit, appending its MINT event and moving the batch to
    minted form one unit of work: if any step fails none of them is visible.

    Args:
        batch_id (int): The approved batch to mint from
        supply (float): The quantity of credit to issue, strictly positive
        minter (User): The certifier issuing the credit
        write_session (Session): The database session to write to
        config (LedgerConfig | None): Ledger parameters, defaults to the settings
        certification_standard (str | None): Optional standard the credit is certified under

    Returns:
        tuple[Credit, CreditEvent]: The minted credit, owned by the batch's
            producer, and its MINT event

    Raises:
        InvalidInputError: If the supply is not positive.
        NotFoundError: If the batch does not exist.
        InvalidStateError: If the batch is not approved.
        DuplicateKeyError: If no unique credit id could be generated.
    """
    config = config or LedgerConfig.from_settings()
    validate_positive_amount(supply, "supply")

    with cqrs.atomic(write_session):
        batch = batch_services.get_batch_for_update(batch_id, write_session)
        validate_batch_transition(batch, BatchStatus.MINTED)

        credit_id = generate_unique(
            create_credit_id,
            lambda candidate: Credit.by_credit_id(candidate, write_session) is not None,
            "credit id",
            max_attempts=config.max_identifier_attempts,
        )

        credit = Credit.create(
            {
                "credit_id": credit_id,
                "batch_id": batch.id,
                "supply": supply,
                "minted_supply": supply,
                "owner_id": batch.producer_id,
                "status": CreditStatus.ACTIVE,
                "certification_standard": certification_standard,
            },
            write_session,
        )

        mint_event = event_services.append_event(
            credit_id=credit.id,  # type: ignore[arg-type]
            event_type=CreditEventType.MINT,
            from_user=minter.id,  # type: ignore[arg-type]
            to_user=batch.producer_id,
            amount=supply,
            details={"batch_id": batch.id, "batch_number": batch.batch_number},
            write_session=write_session,
            config=config,
        )

        batch_services.mark_batch_minted(batch, write_session)

    logger.info(f"Minted credit {credit_id} with supply {supply} from batch {batch_id}")
    return credit, mint_event


def transfer_credit(
    credit_id: int,
    from_user: User,
    to_user_id: int,
    amount: float,
    write_session: Session,
    config: LedgerConfig | None = None,
) -> tuple[Credit, CreditEvent]:
    """
    Move ownership of an active credit to another user.

    The credit's status and supply are left unchanged; the transfer is
    recorded in the credit's transfer history and as a TRANSFER event.

    Raises:
        NotFoundError: If the credit does not exist.
        InvalidStateError: If the credit is not active, or it changed while
            the transfer was in flight.
        ForbiddenError: If `from_user` does not own the credit.
        InvalidInputError: If the amount is not positive, exceeds the supply
            or would exceed the minted supply across the credit's history.
        InvalidRecipientError: If the recipient is unknown, inactive or the sender.
    """
    config = config or LedgerConfig.from_settings()

    with cqrs.atomic(write_session):
        credit = get_credit_for_update(credit_id, write_session)
        validate_credit_active(credit)
        validate_credit_owner(credit, from_user)
        validate_amount_available(credit, amount)
        recipient = validate_recipient(to_user_id, from_user, write_session)

        transfer_event = event_services.append_event(
            credit_id=credit.id,  # type: ignore[arg-type]
            event_type=CreditEventType.TRANSFER,
            from_user=from_user.id,  # type: ignore[arg-type]
            to_user=recipient.id,  # type: ignore[arg-type]
            amount=amount,
            details={"transfer_type": "ownership", "previous_owner": credit.owner_id},
            write_session=write_session,
            config=config,
        )

        transfer_record = TransferRecord(
            from_user=from_user.id,  # type: ignore[arg-type]
            to_user=recipient.id,  # type: ignore[arg-type]
            transferred_at=transfer_event.created_at,
            transfer_amount=amount,
            transaction_hash=transfer_event.transaction_hash,
        )

        credit.update(
            {
                "owner_id": recipient.id,
                "transfer_history": [
                    *credit.transfer_history,
                    transfer_record.model_dump(mode="json"),
                ],
            },
            write_session,
        )

    logger.info(
        f"Credit {credit.credit_id} transferred from {from_user.id} to {recipient.id}"
    )
    return credit, transfer_event


def retire_credit(
    credit_id: int,
    owner: User,
    reason: str,
    write_session: Session,
    amount: float | None = None,
    config: LedgerConfig | None = None,
) -> tuple[Credit, CreditEvent, RetirementReceipt]:
    """
    Retire an active credit, permanently removing the amount from circulation.

    Retirement is terminal: the credit becomes retired even when part of its
    supply remains, and no further transfer or retirement is possible.

    Args:
        credit_id (int): The credit to retire
        owner (User): The current owner of the credit
        reason (str): Why the credit is retired, at most 500 characters
        write_session (Session): The database session to write to
        amount (float | None): The amount to retire. Defaults to the remaining
            supply, capped by what the credit's history still allows.
        config (LedgerConfig | None): Ledger parameters, defaults to the settings

    Returns:
        tuple[Credit, CreditEvent, RetirementReceipt]: The retired credit, its
            RETIRE event and the receipt attached to the credit
    """
    config = config or LedgerConfig.from_settings()
    reason = validate_reason(reason, "Retirement reason")

    with cqrs.atomic(write_session):
        credit = get_credit_for_update(credit_id, write_session)
        validate_credit_active(credit)
        validate_credit_owner(credit, owner)

        if amount is None:
            amount = min(credit.supply, credit.provenance_headroom)
        validate_amount_available(credit, amount)

        receipt_id = generate_unique(
            create_receipt_id,
            lambda candidate: Credit.by_receipt_id(candidate, write_session) is not None,
            "receipt id",
            max_attempts=config.max_identifier_attempts,
        )

        retirement_receipt = RetirementReceipt(
            receipt_id=receipt_id,
            retired_at=utc_datetime_now(),
            retired_by=owner.id,  # type: ignore[arg-type]
            reason=reason,
            amount=amount,
            carbon_offset=amount * config.carbon_offset_per_credit,
            renewable_energy_equivalent=amount * config.renewable_energy_per_credit,
            certificate_url=f"/credits/{credit.id}/retirement-certificate/{receipt_id}",
        )

        retirement_event = event_services.append_event(
            credit_id=credit.id,  # type: ignore[arg-type]
            event_type=CreditEventType.RETIRE,
            from_user=owner.id,  # type: ignore[arg-type]
            to_user=owner.id,  # type: ignore[arg-type]
            amount=amount,
            details={
                "retirement_reason": reason,
                "receipt_id": receipt_id,
                "carbon_offset": retirement_receipt.carbon_offset,
            },
            write_session=write_session,
            config=config,
        )

        credit.update(
            {
                "status": CreditStatus.RETIRED,
                "supply": credit.supply - amount,
                "retirement_receipt": retirement_receipt.model_dump(mode="json"),
                "retirement_receipt_id": receipt_id,
            },
            write_session,
        )

    logger.info(f"Credit {credit.credit_id} retired by {owner.id}: {amount}")
    return credit, retirement_event, retirement_receipt


def get_retirement_certificate(
    credit_id: int,
    receipt_id: str,
    read_session: Session,
    config: LedgerConfig | None = None,
) -> RetirementCertificate:
    config = config or LedgerConfig.from_settings()

    credit = read_session.get(Credit, credit_id)
    if (
        credit is None
        or not credit.retirement_receipt
        or credit.retirement_receipt.get("receipt_id") != receipt_id
    ):
        err_msg = f"Retirement certificate {receipt_id} not found for credit {credit_id}"
        logger.error(err_msg)
        raise NotFoundError(
            err_msg, details={"credit_id": credit_id, "receipt_id": receipt_id}
        )

    receipt = RetirementReceipt.model_validate(credit.retirement_receipt)

    return RetirementCertificate(
        receipt_id=receipt.receipt_id,
        credit_id=credit.credit_id,
        retired_at=receipt.retired_at,
        reason=receipt.reason,
        amount=receipt.amount,
        carbon_offset=receipt.carbon_offset,
        renewable_energy_equivalent=receipt.renewable_energy_equivalent,
        certificate_number=f"{CERTIFICATE_NUMBER_PREFIX}-{receipt.receipt_id}",
        issuer=config.certificate_issuer,
        validity="Permanent",
        # Simulated ledger hash
        blockchain_hash=receipt.receipt_id,
    )


def _paginate(
    read_session: Session, filters: list[Any], page: int, limit: int, join_batch: bool
) -> tuple[list[Credit], int, int]:
    count_stmt = select(func.count()).select_from(Credit)
    stmt = select(Credit)
    if join_batch:
        count_stmt = count_stmt.join(Batch, Batch.id == Credit.batch_id)  # type: ignore[arg-type]
        stmt = stmt.join(Batch, Batch.id == Credit.batch_id)  # type: ignore[arg-type]

    total = read_session.exec(count_stmt.where(*filters)).one()
    credits = read_session.exec(
        stmt.where(*filters)
        .order_by(Credit.created_at.desc(), Credit.id.desc())  # type: ignore[attr-defined]
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    return list(credits), total, math.ceil(total / limit) if limit else 0


def list_available_credits(
    read_session: Session,
    region: str | None = None,
    min_trust_score: float | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Credit], int, int]:
    """Active credits on offer, optionally filtered by the region and trust
    score of their source batch."""
    filters: list[Any] = [Credit.status == CreditStatus.ACTIVE]
    if region:
        filters.append(func.lower(Batch.region).contains(region.lower()))
    if min_trust_score is not None:
        filters.append(Batch.trust_score >= min_trust_score)  # type: ignore[operator]

    return _paginate(read_session, filters, page, limit, join_batch=True)


def list_credits_by_owner(
    owner_id: int,
    read_session: Session,
    status: CreditStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Credit], int, int]:
    filters: list[Any] = [Credit.owner_id == owner_id]
    if status is not None:
        filters.append(Credit.status == status)

    return _paginate(read_session, filters, page, limit, join_batch=False)
