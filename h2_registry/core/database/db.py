from contextlib import contextmanager
from typing import Any, Generator
from urllib.parse import urlparse

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from h2_registry.batch import models as batch_models
from h2_registry.credit import models as credit_models
from h2_registry.event import models as event_models
from h2_registry.logging_config import logger
from h2_registry.settings import settings
from h2_registry.transaction import models as transaction_models
from h2_registry.user import models as user_models

"""
Importing the table modules registers every table on SQLModel.metadata
"""

__all__ = [
    "SQLModel",
    "user_models",
    "batch_models",
    "credit_models",
    "event_models",
    "transaction_models",
]


def create_db_engine(connection_str: str) -> Engine:
    if connection_str.startswith("sqlite"):
        return create_engine(
            connection_str,
            connect_args={"check_same_thread": False},
            echo=False,
        )

    return create_engine(
        connection_str,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        echo=False,
    )


class DButils:
    def __init__(
        self,
        connection_str: str | None = None,
        db_test_fp: str = settings.DATABASE_TEST_FP,
        test: bool = False,
    ):
        if test:
            self.connection_str = f"sqlite:///{db_test_fp}"
            source = "test"
        elif connection_str:
            self.connection_str = connection_str
            source = "argument"
        else:
            self.connection_str = settings.database_url
            source = "settings"

        parsed = urlparse(self.connection_str)
        redacted = self.connection_str
        if parsed.password:
            redacted = self.connection_str.replace(parsed.password, "********")
        logger.info(f"Database connection initialized from {source}: {redacted}")

        self.engine = create_db_engine(self.connection_str)

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def yield_session(self) -> Generator[Session, None, None]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    def get_session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)


# Initialising the DButil clients
db_name_to_client: dict[str, Any] = {}


def get_db_name_to_client() -> dict[str, Any]:
    global db_name_to_client

    if db_name_to_client == {}:
        test = settings.ENVIRONMENT == "TEST"
        write_client = DButils(test=test)
        write_client.create_all()
        db_name_to_client["db_write"] = write_client

        if settings.DATABASE_READ_URL and not test:
            # Replica schema follows the primary through replication
            db_name_to_client["db_read"] = DButils(
                connection_str=settings.DATABASE_READ_URL
            )
        else:
            db_name_to_client["db_read"] = write_client

    return db_name_to_client


@contextmanager
def get_session(target: str) -> Generator[Session, None, None]:
    """Helper to get a session for a specific target database."""
    clients = get_db_name_to_client()

    if target not in clients:
        raise KeyError(
            f"Database client '{target}' not found. Initialized clients: {list(clients.keys())}"
        )

    # Entities committed by a unit of work stay loaded for the response
    with Session(clients[target].engine, expire_on_commit=False) as session:
        yield session


def get_write_session() -> Generator[Session, None, None]:
    """FastAPI dependency for a write database session."""
    with get_session("db_write") as session:
        yield session


def get_read_session() -> Generator[Session, None, None]:
    """FastAPI dependency for a read database session."""
    with get_session("db_read") as session:
        yield session
