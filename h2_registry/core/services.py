import datetime
import secrets
import string
from hashlib import sha256
from typing import Callable

from h2_registry.core.error_handling import DuplicateKeyError
from h2_registry.core.models.base import utc_datetime_now
from h2_registry.logging_config import logger

BASE36_ALPHABET = string.digits + string.ascii_lowercase

CREDIT_ID_PREFIX = "H2C"
RECEIPT_ID_PREFIX = "RET"
TRANSACTION_ID_PREFIX = "TXN"


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("Only non-negative integers can be encoded")
    if value == 0:
        return "0"

    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def random_base36(length: int) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def epoch_millis(timestamp: datetime.datetime | None = None) -> int:
    timestamp = timestamp or utc_datetime_now()
    return int(timestamp.timestamp() * 1000)


def create_evidence_hash(
    kg_produced: float,
    kwh_used: float,
    production_date: datetime.datetime | datetime.date,
    created_at: datetime.datetime,
) -> str:
    """
    Fingerprint a Batch's reported measures.

    The creation timestamp is part of the digest so that two batches reporting
    identical measures still receive distinct evidence hashes.

    Args:
        kg_produced (float): Kilograms of hydrogen produced
        kwh_used (float): Kilowatt-hours consumed by the production run
        production_date (datetime.datetime): The reported production date
        created_at (datetime.datetime): The submission timestamp

    Returns:
        str: The sha256 hex digest
    """
    data = f"{kg_produced}-{kwh_used}-{production_date.isoformat()}-{epoch_millis(created_at)}"
    return sha256(data.encode()).hexdigest()


def create_transaction_hash(
    credit_id: int,
    event_type: str,
    from_user: int,
    to_user: int,
    amount: float,
    timestamp: datetime.datetime,
) -> str:
    """Simulated ledger hash for a credit event, over the event's parties, amount and time."""
    data = f"{credit_id}-{event_type}-{from_user}-{to_user}-{amount}-{timestamp.isoformat()}"
    return sha256(data.encode()).hexdigest()


def create_credit_id(timestamp: datetime.datetime | None = None) -> str:
    return f"{CREDIT_ID_PREFIX}-{to_base36(epoch_millis(timestamp))}-{random_base36(5)}".upper()


def create_receipt_id(timestamp: datetime.datetime | None = None) -> str:
    return f"{RECEIPT_ID_PREFIX}-{epoch_millis(timestamp)}-{random_base36(5)}".upper()


def create_transaction_id(timestamp: datetime.datetime | None = None) -> str:
    return f"{TRANSACTION_ID_PREFIX}-{epoch_millis(timestamp)}-{random_base36(9)}".upper()


def generate_unique(
    factory: Callable[[], str],
    exists: Callable[[str], bool],
    identifier_name: str,
    max_attempts: int = 5,
) -> str:
    """Generate an identifier with `factory`, retrying while `exists` reports a collision.

    Raises:
        DuplicateKeyError: If every attempt collided with an existing identifier.
    """
    for attempt in range(1, max_attempts + 1):
        candidate = factory()
        if not exists(candidate):
            return candidate
        logger.warning(
            f"Generated {identifier_name} {candidate} already exists (attempt {attempt}/{max_attempts})"
        )

    err_msg = f"Could not generate a unique {identifier_name} after {max_attempts} attempts"
    logger.error(err_msg)
    raise DuplicateKeyError(err_msg, details={"field": identifier_name})
