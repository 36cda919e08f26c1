import datetime
from typing import Any, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import declared_attr
from sqlmodel import Field, Session, SQLModel, select

from h2_registry.core.database import cqrs
from h2_registry.core.error_handling import NotFoundError
from h2_registry.core.models.base import utc_datetime_now

T = TypeVar("T", bound="ActiveRecord")


class ActiveRecord(SQLModel):
    created_at: datetime.datetime = Field(
        default_factory=utc_datetime_now, nullable=False
    )

    @classmethod
    def by_id(cls: Type[T], id_: int, session: Session) -> T:
        obj = session.get(cls, id_)
        if obj is None:
            raise NotFoundError(
                f"{cls.__name__} with id {id_} not found",
                details={"entity": cls.__name__, "id": id_},
            )
        return obj

    @classmethod
    def all(cls: Type[T], session: Session) -> list[T]:
        return list(session.exec(select(cls)).all())

    @classmethod
    def exists(cls, id_: int, session: Session) -> bool:
        return session.get(cls, id_) is not None

    @classmethod
    def create(
        cls: Type[T],
        source: dict[str, Any] | BaseModel,
        write_session: Session,
    ) -> T:
        if isinstance(source, BaseModel):
            source = source.model_dump()
        obj = cls.model_validate(source)
        created_entities = cqrs.write_to_database(obj, write_session)
        return created_entities[0]  # type: ignore[return-value]

    def update(
        self: T,
        update_entity: BaseModel | dict[str, Any],
        write_session: Session,
    ) -> T:
        return cqrs.update_database_entity(  # type: ignore[return-value]
            entity=self,
            update_entity=update_entity,
            write_session=write_session,
        )


class VersionedRecord(ActiveRecord):
    """Records that may be mutated concurrently carry an optimistic lock version."""

    updated_at: datetime.datetime = Field(
        default_factory=utc_datetime_now, nullable=False
    )
    version: int = Field(default=1, nullable=False)

    @declared_attr  # type: ignore[misc]
    def __mapper_args__(cls) -> dict[str, Any]:
        # The ORM adds `version = <loaded>` to every UPDATE and bumps it
        return {"version_id_col": cls.__table__.c.version}  # type: ignore[attr-defined]
