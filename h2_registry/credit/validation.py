import math

from sqlmodel import Session

from h2_registry.core.error_handling import (
    ForbiddenError,
    InvalidInputError,
    InvalidRecipientError,
    InvalidStateError,
)
from h2_registry.core.models.base import CreditStatus
from h2_registry.credit.models import Credit
from h2_registry.logging_config import logger
from h2_registry.user.models import User

# Float sums of transfer amounts may drift by a rounding error
PROVENANCE_TOLERANCE = 1e-9


def validate_credit_active(credit: Credit) -> None:
    if credit.status != CreditStatus.ACTIVE:
        err_msg = f"Credit {credit.credit_id} is {credit.status.value}, only active credits can be transferred or retired"
        logger.error(err_msg)
        raise InvalidStateError(
            err_msg, details={"credit_id": credit.credit_id, "status": credit.status.value}
        )


def validate_credit_owner(credit: Credit, user: User) -> None:
    if credit.owner_id != user.id:
        err_msg = f"User {user.id} does not own credit {credit.credit_id}"
        logger.error(err_msg)
        raise ForbiddenError(err_msg, details={"credit_id": credit.credit_id})


def validate_positive_amount(amount: float, field: str = "amount") -> None:
    if not math.isfinite(amount) or amount <= 0:
        err_msg = f"{field} must be a finite number greater than zero, got {amount}"
        logger.error(err_msg)
        raise InvalidInputError(err_msg, details={"field": field, "value": str(amount)})


def validate_amount_available(credit: Credit, amount: float) -> None:
    """
    Validate that the amount fits the credit's supply and its provenance.

    The amount may not exceed the remaining supply, and the sum of every
    transfer and retirement amount ever recorded against the credit, including
    this one, may not exceed the supply minted.

    Raises:
        InvalidInputError: If either bound would be exceeded.
    """
    validate_positive_amount(amount)

    if amount > credit.supply + PROVENANCE_TOLERANCE:
        err_msg = f"Amount {amount} exceeds the available supply {credit.supply} of credit {credit.credit_id}"
        logger.error(err_msg)
        raise InvalidInputError(
            err_msg, details={"credit_id": credit.credit_id, "supply": credit.supply}
        )

    if amount > credit.provenance_headroom + PROVENANCE_TOLERANCE:
        err_msg = (
            f"Amount {amount} would take the recorded transfers and retirements of credit "
            f"{credit.credit_id} beyond its minted supply {credit.minted_supply}"
        )
        logger.error(err_msg)
        raise InvalidInputError(
            err_msg,
            details={
                "credit_id": credit.credit_id,
                "minted_supply": credit.minted_supply,
                "headroom": credit.provenance_headroom,
            },
        )


def validate_recipient(to_user_id: int, from_user: User, read_session: Session) -> User:
    """The recipient must be an active user other than the sender."""
    if to_user_id == from_user.id:
        err_msg = "Cannot transfer a credit to its current owner"
        logger.error(err_msg)
        raise InvalidRecipientError(err_msg, details={"to_user_id": to_user_id})

    recipient = read_session.get(User, to_user_id)
    if recipient is None or not recipient.is_active:
        err_msg = f"Invalid recipient user {to_user_id}"
        logger.error(err_msg)
        raise InvalidRecipientError(err_msg, details={"to_user_id": to_user_id})

    return recipient
