import math
import random
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from h2_registry.batch.models import Batch
from h2_registry.batch.schemas import BatchCreate, VerificationResult
from h2_registry.batch.validation import (
    validate_batch_pending,
    validate_batch_transition,
    validate_measures_for_verification,
    validate_reason,
)
from h2_registry.core.database import cqrs
from h2_registry.core.error_handling import (
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
)
from h2_registry.core.models.base import BatchStatus, UserRoles, utc_datetime_now
from h2_registry.core.services import create_evidence_hash, generate_unique
from h2_registry.logging_config import logger
from h2_registry.settings import LedgerConfig
from h2_registry.user.models import User

HIGH_ENERGY_KWH_PER_KG = 100
LARGE_BATCH_KG = 10000
LOW_TRUST_SCORE = 70

CARBON_INTENSITY_FACTOR = 0.5
CARBON_INTENSITY_JITTER = 0.1


def get_batch_for_update(batch_id: int, write_session: Session) -> Batch:
    """Read the current persisted state of a batch, locking the row where the
    backend supports it."""
    stmt = (
        select(Batch)
        .where(Batch.id == batch_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    batch = write_session.exec(stmt).first()
    if batch is None:
        err_msg = f"Batch with id {batch_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"batch_id": batch_id})
    return batch


def submit_batch(
    producer: User,
    batch_create: BatchCreate,
    write_session: Session,
    config: LedgerConfig | None = None,
) -> Batch:
    """
    Record a new production batch in the pending state.

    The evidence hash is derived from the reported measures and the submission
    timestamp. A hash that collides with an existing batch is regenerated with a
    fresh timestamp until the configured number of attempts is exhausted.

    Args:
        producer (User): The producer submitting the batch
        batch_create (BatchCreate): The reported measures and certificate references
        write_session (Session): The database session to write to
        config (LedgerConfig | None): Ledger parameters, defaults to the settings

    Returns:
        Batch: The persisted pending batch

    Raises:
        DuplicateKeyError: If the batch number is already registered, or no
            unique evidence hash could be generated.
    """
    config = config or LedgerConfig.from_settings()

    with cqrs.atomic(write_session):
        if Batch.by_batch_number(batch_create.batch_number, write_session):
            err_msg = f"Batch number {batch_create.batch_number} already exists"
            logger.error(err_msg)
            raise DuplicateKeyError(err_msg, details={"field": "batch_number"})

        created_at = utc_datetime_now()

        def _evidence_hash() -> str:
            nonlocal created_at
            created_at = utc_datetime_now()
            return create_evidence_hash(
                batch_create.kg_produced,
                batch_create.kwh_used,
                batch_create.production_date,
                created_at,
            )

        evidence_hash = generate_unique(
            _evidence_hash,
            lambda candidate: Batch.by_evidence_hash(candidate, write_session)
            is not None,
            "evidence hash",
            max_attempts=config.max_identifier_attempts,
        )

        batch = Batch.create(
            {
                **batch_create.model_dump(),
                "producer_id": producer.id,
                "status": BatchStatus.PENDING,
                "evidence_hash": evidence_hash,
                "created_at": created_at,
                "updated_at": created_at,
            },
            write_session,
        )

    logger.info(f"Batch {batch.batch_number} submitted by producer {producer.id}")
    return batch


def calculate_trust_score(
    kwh_per_kg: float, config: LedgerConfig, rng: random.Random | Any = random
) -> float:
    """Heuristic confidence in a batch, favouring energy-efficient production.

    The efficiency-adjusted base score is clamped to [60, 100] before a random
    jitter of up to `trust_score_jitter` points is applied, and the result is
    clamped to [0, 100].
    """
    trust_score = config.trust_score_base
    if kwh_per_kg < 50:
        trust_score += 10
    elif kwh_per_kg < 60:
        trust_score += 5
    elif kwh_per_kg > 80:
        trust_score -= 10

    trust_score = max(60, min(100, trust_score))

    if config.trust_score_jitter > 0:
        trust_score += rng.randrange(-config.trust_score_jitter, config.trust_score_jitter)

    return max(0, min(100, trust_score))


def detect_anomalies(
    kwh_per_kg: float, kg_produced: float, trust_score: float
) -> list[str]:
    anomaly_flags = []
    if kwh_per_kg > HIGH_ENERGY_KWH_PER_KG:
        anomaly_flags.append("Unusually high energy consumption")
    if kg_produced > LARGE_BATCH_KG:
        anomaly_flags.append("Very large batch size")
    if trust_score < LOW_TRUST_SCORE:
        anomaly_flags.append("Low trust score detected")
    return anomaly_flags


def verify_batch(
    batch_id: int,
    certifier: User,
    read_session: Session,
    config: LedgerConfig | None = None,
    rng: random.Random | Any = random,
) -> VerificationResult:
    """
    Simulate the verification of a pending batch. Nothing is persisted; the
    result is handed back to the certifier, who may pass it to `approve_batch`.

    Args:
        batch_id (int): The batch to verify
        certifier (User): The certifier running the verification
        read_session (Session): The database session to read from
        config (LedgerConfig | None): Ledger parameters, defaults to the settings
        rng: Source of the simulated jitter, the `random` module by default

    Returns:
        VerificationResult: kWh per kg, trust score, carbon intensity and anomaly flags

    Raises:
        NotFoundError: If the batch does not exist.
        InvalidStateError: If the batch is not pending.
        InvalidInputError: If the batch reports no hydrogen produced.
    """
    config = config or LedgerConfig.from_settings()

    batch = Batch.by_id(batch_id, read_session)
    validate_batch_pending(batch)
    validate_measures_for_verification(batch)

    kwh_per_kg = batch.kwh_used / batch.kg_produced
    trust_score = calculate_trust_score(kwh_per_kg, config, rng)
    carbon_intensity = (
        kwh_per_kg * CARBON_INTENSITY_FACTOR + rng.random() * CARBON_INTENSITY_JITTER
    )

    return VerificationResult(
        kwh_per_kg=round(kwh_per_kg, 2),
        trust_score=trust_score,
        carbon_intensity=round(carbon_intensity, 4),
        anomaly_flags=detect_anomalies(kwh_per_kg, batch.kg_produced, trust_score),
        verified_at=utc_datetime_now(),
        verified_by=certifier.id,
    )


def approve_batch(
    batch_id: int,
    verification_result: VerificationResult,
    certifier: User,
    write_session: Session,
    notes: str | None = None,
) -> Batch:
    """Persist the verification result and move the batch to approved.

    Approving twice fails, as the batch is no longer pending."""
    with cqrs.atomic(write_session):
        batch = get_batch_for_update(batch_id, write_session)
        validate_batch_transition(batch, BatchStatus.APPROVED)

        batch_update: dict[str, Any] = {
            "status": BatchStatus.APPROVED,
            "kwh_per_kg": verification_result.kwh_per_kg,
            "trust_score": verification_result.trust_score,
            "carbon_intensity": verification_result.carbon_intensity,
            "anomaly_flags": list(verification_result.anomaly_flags),
            "verified_at": verification_result.verified_at or utc_datetime_now(),
            "verified_by": verification_result.verified_by or certifier.id,
        }
        if notes:
            batch_update["notes"] = notes.strip()

        batch.update(batch_update, write_session)

    logger.info(f"Batch {batch_id} approved by certifier {certifier.id}")
    return batch


def reject_batch(
    batch_id: int,
    reason: str,
    certifier: User,
    write_session: Session,
) -> Batch:
    reason = validate_reason(reason, "Rejection reason")

    with cqrs.atomic(write_session):
        batch = get_batch_for_update(batch_id, write_session)
        validate_batch_transition(batch, BatchStatus.REJECTED)

        batch.update(
            {"status": BatchStatus.REJECTED, "rejection_reason": reason},
            write_session,
        )

    logger.info(f"Batch {batch_id} rejected by certifier {certifier.id}")
    return batch


def mark_batch_minted(batch: Batch, write_session: Session) -> Batch:
    """Move an approved batch to minted. Only called from credit minting, inside
    its unit of work."""
    validate_batch_transition(batch, BatchStatus.MINTED)
    return batch.update({"status": BatchStatus.MINTED}, write_session)


def get_batch_by_id(batch_id: int, viewer: User, read_session: Session) -> Batch:
    batch = Batch.by_id(batch_id, read_session)

    if viewer.role == UserRoles.PRODUCER and batch.producer_id != viewer.id:
        err_msg = f"Producer {viewer.id} does not have access to batch {batch_id}"
        logger.error(err_msg)
        raise ForbiddenError(err_msg, details={"batch_id": batch_id})

    return batch


def list_batches(
    viewer: User,
    read_session: Session,
    status: BatchStatus | None = None,
    region: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Batch], int, int]:
    """
    List batches visible to the viewer, newest first.

    Producers only see their own batches. Certifiers see the batches awaiting
    action (pending or approved) unless a status filter is given.

    Returns:
        tuple[list[Batch], int, int]: The page of batches, the total number of
            matches and the number of pages.
    """
    filters: list[Any] = []

    if viewer.role == UserRoles.PRODUCER:
        filters.append(Batch.producer_id == viewer.id)

    if status is not None:
        filters.append(Batch.status == status)
    elif viewer.role == UserRoles.CERTIFIER:
        filters.append(
            Batch.status.in_([BatchStatus.PENDING, BatchStatus.APPROVED])  # type: ignore[attr-defined]
        )

    if region:
        filters.append(func.lower(Batch.region).contains(region.lower()))

    total = read_session.exec(
        select(func.count()).select_from(Batch).where(*filters)
    ).one()

    batches = read_session.exec(
        select(Batch)
        .where(*filters)
        .order_by(Batch.created_at.desc(), Batch.id.desc())  # type: ignore[attr-defined]
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    return list(batches), total, math.ceil(total / limit) if limit else 0
