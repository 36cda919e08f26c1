from typing import Any

from sqlalchemy import or_
from sqlmodel import Session, select

from h2_registry.core.models.base import CreditEventType, utc_datetime_now
from h2_registry.core.services import create_transaction_hash, generate_unique
from h2_registry.event.models import CreditEvent
from h2_registry.logging_config import logger
from h2_registry.settings import LedgerConfig


def append_event(
    credit_id: int,
    event_type: CreditEventType,
    from_user: int,
    to_user: int,
    amount: float,
    details: dict[str, Any] | None,
    write_session: Session,
    config: LedgerConfig | None = None,
) -> CreditEvent:
    """
    Append a provenance event for a credit.

    The event is staged on the write session only, so it becomes visible
    together with the credit mutation it records when the enclosing unit of
    work commits. A transaction hash that collides with an existing event is
    regenerated from a fresh timestamp.

    Args:
        credit_id (int): The credit the event belongs to
        event_type (CreditEventType): MINT, TRANSFER or RETIRE
        from_user (int): The originating user id
        to_user (int): The receiving user id
        amount (float): The quantity of credit the event concerns
        details (dict | None): Free-form context stored with the event
        write_session (Session): The database session to write to
        config (LedgerConfig | None): Ledger parameters, defaults to the settings

    Returns:
        CreditEvent: The staged event

    Raises:
        DuplicateKeyError: If no unique transaction hash could be generated.
    """
    config = config or LedgerConfig.from_settings()

    created_at = utc_datetime_now()

    def _transaction_hash() -> str:
        nonlocal created_at
        created_at = utc_datetime_now()
        return create_transaction_hash(
            credit_id, event_type.value, from_user, to_user, amount, created_at
        )

    transaction_hash = generate_unique(
        _transaction_hash,
        lambda candidate: CreditEvent.by_transaction_hash(candidate, write_session)
        is not None,
        "transaction hash",
        max_attempts=config.max_identifier_attempts,
    )

    event = CreditEvent.create(
        {
            "credit_id": credit_id,
            "event_type": event_type,
            "from_user": from_user,
            "to_user": to_user,
            "amount": amount,
            "details": details or {},
            "transaction_hash": transaction_hash,
            "created_at": created_at,
        },
        write_session,
    )

    logger.debug(f"Staged {event_type.value} event {transaction_hash} for credit {credit_id}")
    return event


def list_events_for_credit(credit_id: int, read_session: Session) -> list[CreditEvent]:
    """The provenance trail of a credit, oldest first."""
    stmt = (
        select(CreditEvent)
        .where(CreditEvent.credit_id == credit_id)
        .order_by(CreditEvent.id)  # type: ignore[arg-type]
    )
    return list(read_session.exec(stmt).all())


def list_events_for_user(
    user_id: int, read_session: Session, limit: int = 50
) -> list[CreditEvent]:
    """Events in which the user sent or received a credit, newest first."""
    stmt = (
        select(CreditEvent)
        .where(or_(CreditEvent.from_user == user_id, CreditEvent.to_user == user_id))
        .order_by(CreditEvent.id.desc())  # type: ignore[union-attr]
        .limit(limit)
    )
    return list(read_session.exec(stmt).all())
