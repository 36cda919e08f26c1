from h2_registry.batch.models import Batch
from h2_registry.core.error_handling import InvalidInputError, InvalidStateError
from h2_registry.core.models.base import BATCH_TRANSITIONS, BatchStatus
from h2_registry.logging_config import logger

MAX_REASON_LENGTH = 500


def validate_batch_transition(batch: Batch, target_status: BatchStatus) -> None:
    """
    Validate that the batch may move from its current status to the target status.

    Args:
        batch (Batch): The batch as currently persisted
        target_status (BatchStatus): The status the caller wants to move to

    Raises:
        InvalidStateError: If the transition is not one of pending -> approved,
            pending -> rejected or approved -> minted.
    """
    if target_status not in BATCH_TRANSITIONS[batch.status]:
        err_msg = (
            f"Batch {batch.id} cannot move from {batch.status.value} to {target_status.value}"
        )
        logger.error(err_msg)
        raise InvalidStateError(
            err_msg,
            details={
                "batch_id": batch.id,
                "status": batch.status.value,
                "target_status": target_status.value,
            },
        )


def validate_batch_pending(batch: Batch) -> None:
    if batch.status != BatchStatus.PENDING:
        err_msg = f"Batch {batch.id} is not pending verification"
        logger.error(err_msg)
        raise InvalidStateError(
            err_msg, details={"batch_id": batch.id, "status": batch.status.value}
        )


def validate_reason(reason: str | None, field: str) -> str:
    """Free-text reasons must be non-blank and at most 500 characters."""
    reason = (reason or "").strip()
    if not reason:
        err_msg = f"{field} is required"
        logger.error(err_msg)
        raise InvalidInputError(err_msg, details={"field": field})
    if len(reason) > MAX_REASON_LENGTH:
        err_msg = f"{field} cannot exceed {MAX_REASON_LENGTH} characters"
        logger.error(err_msg)
        raise InvalidInputError(err_msg, details={"field": field})
    return reason


def validate_measures_for_verification(batch: Batch) -> None:
    if batch.kg_produced <= 0:
        err_msg = f"Batch {batch.id} reports no hydrogen produced, cannot derive kWh per kg"
        logger.error(err_msg)
        raise InvalidInputError(
            err_msg, details={"batch_id": batch.id, "field": "kg_produced"}
        )
