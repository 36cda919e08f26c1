import datetime
import math
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, or_
from sqlmodel import Session, select

from h2_registry.batch.models import Batch
from h2_registry.core.database import cqrs
from h2_registry.core.error_handling import (
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from h2_registry.core.models.base import (
    CreditStatus,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
    utc_datetime_now,
)
from h2_registry.core.services import create_transaction_id, generate_unique
from h2_registry.credit.models import Credit
from h2_registry.logging_config import logger
from h2_registry.settings import LedgerConfig
from h2_registry.transaction.models import Transaction
from h2_registry.transaction.schemas import (
    AuditEntry,
    DateRange,
    TransactionCreate,
    TransactionOverview,
    TransactionStatistics,
    TransactionStatusStatistics,
    TransactionTypeStatistics,
)
from h2_registry.user import services as user_services
from h2_registry.user.models import User
from h2_registry.user.validation import LedgerAction, user_has_capability


def build_audit_entry(action: str, user_id: int | None, details: str | None) -> dict:
    return AuditEntry(action=action, user_id=user_id, details=details).model_dump(
        mode="json"
    )


def _get_credit(credit_id: int, session: Session) -> Credit:
    credit = session.get(Credit, credit_id)
    if credit is None:
        err_msg = f"Credit with id {credit_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"credit_id": credit_id})
    return credit


def _validate_transaction_fields(fields: dict[str, Any]) -> TransactionCreate:
    try:
        return TransactionCreate.model_validate(fields)
    except ValidationError as e:
        err_msg = f"Invalid {fields.get('type')} transaction"
        logger.error(f"{err_msg}: {str(e)}")
        raise InvalidInputError(
            err_msg,
            details={
                "errors": [
                    {"field": ".".join(str(x) for x in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ]
            },
        ) from e


def create_transaction(
    transaction_create: TransactionCreate,
    actor_id: int | None,
    audit_details: str,
    write_session: Session,
    config: LedgerConfig | None = None,
) -> Transaction:
    """Persist a new transaction with a generated transaction id and a
    CREATED audit entry.

    Must be called inside a unit of work."""
    config = config or LedgerConfig.from_settings()

    transaction_id = generate_unique(
        create_transaction_id,
        lambda candidate: Transaction.by_transaction_id(candidate, write_session)
        is not None,
        "transaction id",
        max_attempts=config.max_identifier_attempts,
    )

    now = utc_datetime_now()
    return Transaction.create(
        {
            **transaction_create.model_dump(),
            "transaction_id": transaction_id,
            "created_at": now,
            "updated_at": now,
            "completed_at": now
            if transaction_create.status == TransactionStatus.COMPLETED
            else None,
            "audit_trail": [build_audit_entry("CREATED", actor_id, audit_details)],
        },
        write_session,
    )


def create_purchase(
    buyer: User,
    credit_id: int,
    amount: float,
    write_session: Session,
    payment_method: PaymentMethod | None = None,
    notes: str | None = None,
    config: LedgerConfig | None = None,
) -> Transaction:
    """
    Record a buyer's request to purchase a credit.

    Args:
        buyer (User): The purchasing user, recorded as `from_user`
        credit_id (int): The credit on offer
        amount (float): The agreed price
        write_session (Session): The database session to write to
        payment_method (PaymentMethod | None): Defaults to CREDIT_BALANCE
        notes (str | None): Free-form notes stored with the transaction

    Returns:
        Transaction: The pending CREDIT_PURCHASE transaction

    Raises:
        NotFoundError: If the credit does not exist.
        InvalidStateError: If the credit is not active.
    """
    with cqrs.atomic(write_session):
        credit = _get_credit(credit_id, write_session)
        if credit.status != CreditStatus.ACTIVE:
            err_msg = f"Credit {credit.credit_id} is not available for purchase"
            logger.error(err_msg)
            raise InvalidStateError(
                err_msg, details={"credit_id": credit_id, "status": credit.status.value}
            )

        transaction_create = _validate_transaction_fields(
            {
                "type": TransactionType.CREDIT_PURCHASE,
                "from_user": buyer.id,
                "to_user": credit.owner_id,
                "credit_id": credit.id,
                "amount": amount,
                "credit_amount": credit.supply,
                "payment_method": payment_method or PaymentMethod.CREDIT_BALANCE,
                "description": f"Purchase of {credit.supply} kg hydrogen credits",
                "notes": notes,
            }
        )
        transaction = create_transaction(
            transaction_create,
            buyer.id,
            "Credit purchase transaction created",
            write_session,
            config,
        )

    return transaction


def create_transfer_record(
    seller: User,
    credit_id: int,
    recipient_email: str,
    amount: float,
    write_session: Session,
    notes: str | None = None,
    config: LedgerConfig | None = None,
) -> Transaction:
    """
    Record the transfer of a credit to the user registered under `recipient_email`.

    No money changes hands, so the transaction amount is zero and the payment
    method FREE. Executing the transfer itself is the credit ledger's concern.

    Raises:
        NotFoundError: If the credit or the recipient does not exist.
        InvalidStateError: If the credit is not active.
        ForbiddenError: If the seller does not own the credit.
        InvalidInputError: If the recipient is the seller, or the amount is not positive.
    """
    with cqrs.atomic(write_session):
        credit = _get_credit(credit_id, write_session)
        if credit.status != CreditStatus.ACTIVE:
            err_msg = f"Credit {credit.credit_id} is not available for transfer"
            logger.error(err_msg)
            raise InvalidStateError(
                err_msg, details={"credit_id": credit_id, "status": credit.status.value}
            )
        if credit.owner_id != seller.id:
            err_msg = f"User {seller.id} can only transfer credits they own"
            logger.error(err_msg)
            raise ForbiddenError(err_msg, details={"credit_id": credit_id})

        recipient = user_services.resolve_user_by_email(recipient_email, write_session)
        if recipient is None:
            err_msg = f"Recipient user {recipient_email} not found"
            logger.error(err_msg)
            raise NotFoundError(err_msg, details={"recipient_email": recipient_email})
        if recipient.id == seller.id:
            err_msg = "Cannot transfer credits to yourself"
            logger.error(err_msg)
            raise InvalidInputError(err_msg, details={"recipient_email": recipient_email})
        if amount <= 0:
            err_msg = f"Transfer amount must be greater than zero, got {amount}"
            logger.error(err_msg)
            raise InvalidInputError(err_msg, details={"field": "amount"})

        transaction_create = _validate_transaction_fields(
            {
                "type": TransactionType.CREDIT_TRANSFER,
                "from_user": seller.id,
                "to_user": recipient.id,
                "credit_id": credit.id,
                "amount": 0,
                "credit_amount": amount,
                "payment_method": PaymentMethod.FREE,
                "description": f"Transfer of {amount} kg hydrogen credits",
                "notes": notes,
            }
        )
        transaction = create_transaction(
            transaction_create,
            seller.id,
            "Credit transfer transaction created",
            write_session,
            config,
        )

    return transaction


def create_verification_record(
    certifier: User,
    batch_id: int,
    write_session: Session,
    amount: float = 0,
    notes: str | None = None,
    config: LedgerConfig | None = None,
) -> Transaction:
    with cqrs.atomic(write_session):
        batch = Batch.by_id(batch_id, write_session)

        transaction_create = _validate_transaction_fields(
            {
                "type": TransactionType.BATCH_VERIFICATION,
                "batch_id": batch.id,
                "amount": amount,
                "payment_method": PaymentMethod.CREDIT_BALANCE,
                "description": f"Verification of batch {batch.batch_number}",
                "notes": notes,
            }
        )
        transaction = create_transaction(
            transaction_create,
            certifier.id,
            "Batch verification transaction created",
            write_session,
            config,
        )

    return transaction


def create_retirement_record(
    owner: User,
    credit_id: int,
    credit_amount: float,
    write_session: Session,
    notes: str | None = None,
    config: LedgerConfig | None = None,
) -> Transaction:
    """Record the retirement of an amount of credit by its owner."""
    with cqrs.atomic(write_session):
        credit = _get_credit(credit_id, write_session)
        if credit.owner_id != owner.id:
            err_msg = f"User {owner.id} can only record retirements of credits they own"
            logger.error(err_msg)
            raise ForbiddenError(err_msg, details={"credit_id": credit_id})

        transaction_create = _validate_transaction_fields(
            {
                "type": TransactionType.CREDIT_RETIREMENT,
                "from_user": owner.id,
                "credit_id": credit.id,
                "amount": 0,
                "credit_amount": credit_amount,
                "payment_method": PaymentMethod.FREE,
                "description": f"Retirement of {credit_amount} kg hydrogen credits",
                "notes": notes,
            }
        )
        transaction = create_transaction(
            transaction_create,
            owner.id,
            "Credit retirement transaction created",
            write_session,
            config,
        )

    return transaction


def get_transaction_for_update(transaction_id: str, write_session: Session) -> Transaction:
    stmt = (
        select(Transaction)
        .where(Transaction.transaction_id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    transaction = write_session.exec(stmt).first()
    if transaction is None:
        err_msg = f"Transaction {transaction_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"transaction_id": transaction_id})
    return transaction


def update_transaction_status(
    transaction_id: str,
    new_status: TransactionStatus,
    actor: User,
    write_session: Session,
    notes: str | None = None,
) -> Transaction:
    """
    Move a transaction to a new status and record the change in its audit trail.

    Any status may follow any other. `completed_at` is stamped the first time
    the transaction is completed and is kept through later status changes.
    """
    with cqrs.atomic(write_session):
        transaction = get_transaction_for_update(transaction_id, write_session)

        transaction_update: dict[str, Any] = {
            "status": new_status,
            "audit_trail": [
                *transaction.audit_trail,
                build_audit_entry(
                    "STATUS_UPDATED",
                    actor.id,
                    f"Status changed to {new_status.value}: {notes or ''}",
                ),
            ],
        }
        if new_status == TransactionStatus.COMPLETED and transaction.completed_at is None:
            transaction_update["completed_at"] = utc_datetime_now()

        transaction.update(transaction_update, write_session)

    logger.info(f"Transaction {transaction_id} moved to {new_status.value} by {actor.id}")
    return transaction


def add_audit_entry(
    transaction_id: str,
    action: str,
    user_id: int | None,
    details: str | None,
    write_session: Session,
) -> Transaction:
    """Append an entry to a transaction's audit trail. Entries are never removed."""
    with cqrs.atomic(write_session):
        transaction = get_transaction_for_update(transaction_id, write_session)
        transaction.update(
            {
                "audit_trail": [
                    *transaction.audit_trail,
                    build_audit_entry(action, user_id, details),
                ]
            },
            write_session,
        )

    return transaction


def get_transaction_by_transaction_id(
    transaction_id: str, read_session: Session, viewer: User | None = None
) -> Transaction:
    """Look up a transaction. When a viewer is given, they must be a party to
    the transaction or hold a role that may review all transactions."""
    transaction = Transaction.by_transaction_id(transaction_id, read_session)
    if transaction is None:
        err_msg = f"Transaction {transaction_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"transaction_id": transaction_id})

    if (
        viewer is not None
        and not user_has_capability(viewer, LedgerAction.VIEW_STATISTICS)
        and viewer.id not in (transaction.from_user, transaction.to_user)
    ):
        err_msg = f"User {viewer.id} does not have access to transaction {transaction_id}"
        logger.error(err_msg)
        raise ForbiddenError(err_msg, details={"transaction_id": transaction_id})

    return transaction


def build_date_range(
    from_date: datetime.datetime | None, to_date: datetime.datetime | None
) -> DateRange:
    try:
        return DateRange(from_date=from_date, to_date=to_date)
    except ValidationError as e:
        err_msg = "Invalid date range"
        logger.error(f"{err_msg}: {str(e)}")
        raise InvalidInputError(
            err_msg,
            details={"from_date": str(from_date), "to_date": str(to_date)},
        ) from e


def _date_filters(date_range: DateRange | None) -> list[Any]:
    filters: list[Any] = []
    if date_range is None:
        return filters
    if date_range.from_date is not None:
        filters.append(Transaction.created_at >= date_range.from_date)
    if date_range.to_date is not None:
        filters.append(Transaction.created_at <= date_range.to_date)
    return filters


def _paginate(
    read_session: Session, filters: list[Any], page: int, limit: int
) -> tuple[list[Transaction], int, int]:
    total = read_session.exec(
        select(func.count()).select_from(Transaction).where(*filters)
    ).one()
    transactions = read_session.exec(
        select(Transaction)
        .where(*filters)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())  # type: ignore[attr-defined]
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    return list(transactions), total, math.ceil(total / limit) if limit else 0


def list_transactions(
    read_session: Session,
    transaction_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    date_range: DateRange | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Transaction], int, int]:
    filters = _date_filters(date_range)
    if transaction_type is not None:
        filters.append(Transaction.type == transaction_type)
    if status is not None:
        filters.append(Transaction.status == status)

    return _paginate(read_session, filters, page, limit)


def list_transactions_for_user(
    user_id: int,
    read_session: Session,
    transaction_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Transaction], int, int]:
    filters: list[Any] = [
        or_(Transaction.from_user == user_id, Transaction.to_user == user_id)
    ]
    if transaction_type is not None:
        filters.append(Transaction.type == transaction_type)
    if status is not None:
        filters.append(Transaction.status == status)

    return _paginate(read_session, filters, page, limit)


def get_transaction_statistics(
    read_session: Session, date_range: DateRange | None = None
) -> TransactionStatistics:
    """
    Aggregate transactions created within the date range.

    Returns:
        TransactionStatistics: Overall totals and averages, plus counts and
            totals grouped by type and by status. Averages of credit amounts
            ignore transactions without one.
    """
    filters = _date_filters(date_range)

    overview_row = read_session.exec(
        select(
            func.count(Transaction.id),  # type: ignore[arg-type]
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(func.sum(Transaction.credit_amount), 0),
            func.coalesce(func.avg(Transaction.amount), 0),
            func.coalesce(func.avg(Transaction.credit_amount), 0),
        ).where(*filters)
    ).one()

    type_rows = read_session.exec(
        select(
            Transaction.type,
            func.count(Transaction.id),  # type: ignore[arg-type]
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(func.sum(Transaction.credit_amount), 0),
        )
        .where(*filters)
        .group_by(Transaction.type)
    ).all()

    status_rows = read_session.exec(
        select(
            Transaction.status,
            func.count(Transaction.id),  # type: ignore[arg-type]
            func.coalesce(func.sum(Transaction.amount), 0),
        )
        .where(*filters)
        .group_by(Transaction.status)
    ).all()

    return TransactionStatistics(
        overview=TransactionOverview(
            total_transactions=overview_row[0],
            total_amount=overview_row[1],
            total_credits=overview_row[2],
            avg_amount=overview_row[3],
            avg_credits=overview_row[4],
        ),
        by_type={
            transaction_type: TransactionTypeStatistics(
                count=count, total_amount=total_amount, total_credits=total_credits
            )
            for transaction_type, count, total_amount, total_credits in type_rows
        },
        by_status={
            status: TransactionStatusStatistics(count=count, total_amount=total_amount)
            for status, count, total_amount in status_rows
        },
    )
