from contextlib import contextmanager
from typing import Any, Generator

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, SQLModel

from h2_registry.core.error_handling import (
    ConcurrentModificationError,
    DuplicateKeyError,
    LedgerError,
)
from h2_registry.core.models.base import EventTypes, utc_datetime_now
from h2_registry.logging_config import logger

STAGED_CHANGES_KEY = "staged_entity_changes"


def _stage_change(
    write_session: Session, event_type: EventTypes, entity: SQLModel
) -> None:
    write_session.info.setdefault(STAGED_CHANGES_KEY, []).append(
        f"{event_type.value} {entity.__class__.__name__} {getattr(entity, 'id', None)}"
    )


def _concurrent_modification(e: StaleDataError) -> ConcurrentModificationError:
    err_msg = f"Entity was modified concurrently: {str(e)}"
    logger.warning(err_msg)
    return ConcurrentModificationError(err_msg)


@contextmanager
def atomic(write_session: Session) -> Generator[Session, None, None]:
    """Run the enclosed writes as one all-or-nothing unit.

    The session is committed exactly once when the block exits cleanly. Any
    exception rolls back every staged write and is re-raised; a stale version
    detected by the ORM surfaces as `ConcurrentModificationError`. Entity
    changes are only logged after the commit succeeds.
    """
    write_session.info[STAGED_CHANGES_KEY] = []
    try:
        try:
            yield write_session
            write_session.commit()
        except StaleDataError as e:
            raise _concurrent_modification(e) from e
    except LedgerError as e:
        logger.warning(f"Unit of work rejected ({e.kind}): {e.message}")
        write_session.rollback()
        write_session.info.pop(STAGED_CHANGES_KEY, None)
        raise
    except Exception as e:
        logger.error(
            f"Error during unit of work, rolling back session ID {id(write_session)}: {str(e)}"
        )
        write_session.rollback()
        write_session.info.pop(STAGED_CHANGES_KEY, None)
        raise

    for change in write_session.info.pop(STAGED_CHANGES_KEY, []):
        logger.info(change)


def write_to_database(
    entities: list[SQLModel] | SQLModel,
    write_session: Session,
) -> list[SQLModel]:
    """Stage the provided entities on the write session, flushing so that
    generated keys are available.

    Nothing is committed here; the enclosing `atomic` block commits."""

    if not isinstance(entities, list):
        entities = [entities]

    try:
        write_session.add_all(entities)
        write_session.flush()

        for entity in entities:
            write_session.refresh(entity)

    except IntegrityError as e:
        logger.error(f"Uniqueness violation during create: {str(e.orig)}")
        raise DuplicateKeyError(
            f"Could not create {entities[0].__class__.__name__}: duplicate key",
            details={"reason": str(e.orig)},
        ) from e

    for entity in entities:
        _stage_change(write_session, EventTypes.CREATE, entity)

    return entities


def update_database_entity(
    entity: SQLModel,
    update_entity: BaseModel | dict[str, Any],
    write_session: Session,
) -> SQLModel:
    """Apply the update to the entity and flush it.

    Versioned entities map `version` as the ORM version counter, so the flush
    only matches the row while its stored version equals the one the caller
    read, and bumps it in the same statement.

    Raises:
        ConcurrentModificationError: If the stored version no longer matches.
    """

    if isinstance(update_entity, BaseModel):
        update_data: dict[str, Any] = update_entity.model_dump(exclude_unset=True)
    else:
        update_data = dict(update_entity)

    for field, value in update_data.items():
        setattr(entity, field, value)

    if "updated_at" in type(entity).model_fields:
        entity.updated_at = utc_datetime_now()  # type: ignore[attr-defined]

    write_session.add(entity)
    try:
        write_session.flush()
    except StaleDataError as e:
        raise _concurrent_modification(e) from e

    write_session.refresh(entity)
    _stage_change(write_session, EventTypes.UPDATE, entity)

    return entity
