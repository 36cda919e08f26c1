import datetime
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from dotenv import load_dotenv
from sqlalchemy.engine.base import Engine
from sqlmodel import Session, SQLModel
from starlette.testclient import TestClient

from h2_registry.batch import services as batch_services
from h2_registry.batch.models import Batch
from h2_registry.batch.schemas import BatchCreate, VerificationResult
from h2_registry.core.database import db
from h2_registry.core.models.base import UserRoles
from h2_registry.credit import services as credit_services
from h2_registry.credit.models import Credit
from h2_registry.main import app
from h2_registry.settings import LedgerConfig
from h2_registry.user.models import User

load_dotenv()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "h2_registry_test.db"


@pytest.fixture()
def engine(db_path: Path) -> Generator[Engine, None, None]:
    """
    Creates an ephemeral SQLite database file with every table. A file rather
    than an in-memory database so that sessions on separate threads share it.
    """
    db_engine = db.create_db_engine(f"sqlite:///{db_path}")

    SQLModel.metadata.create_all(db_engine)

    yield db_engine
    db_engine.dispose()


@pytest.fixture()
def write_session(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture()
def read_session(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    """Opens further sessions on the test database, e.g. one per thread."""

    def _create_session() -> Session:
        return Session(engine, expire_on_commit=False)

    return _create_session


@pytest.fixture()
def ledger_config() -> LedgerConfig:
    return LedgerConfig()


@pytest.fixture()
def api_client(write_session: Session) -> Generator[TestClient, None, None]:
    """API Client for testing routes. Reads and writes share the test session."""

    def get_session_override():
        assert write_session.is_active
        return write_session

    def get_db_name_to_client_override():
        return {}

    app.dependency_overrides[db.get_write_session] = get_session_override
    app.dependency_overrides[db.get_read_session] = get_session_override
    app.dependency_overrides[db.get_db_name_to_client] = get_db_name_to_client_override

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict[str, str]:
    return {"X-User-Id": str(user.id)}


@pytest.fixture()
def user_factory(write_session: Session) -> Any:
    """Factory function to create users with different roles."""

    def _create_user(
        role: UserRoles, name_suffix: str = "", is_active: bool = True
    ) -> User:
        unique_suffix = f"_{name_suffix}" if name_suffix else f"_{role}"

        user = User.model_validate(
            {
                "name": f"fake_user{unique_suffix}",
                "email": f"test_user{unique_suffix}@fakecorp.com",
                "role": role,
                "organisation": "Fake Hydrogen Co",
                "is_active": is_active,
            }
        )
        write_session.add(user)
        write_session.commit()
        write_session.refresh(user)

        return user

    return _create_user


@pytest.fixture()
def fake_db_admin_user(user_factory) -> User:
    return user_factory(UserRoles.ADMIN, "admin")


@pytest.fixture()
def fake_db_producer(user_factory) -> User:
    return user_factory(UserRoles.PRODUCER, "producer")


@pytest.fixture()
def fake_db_certifier(user_factory) -> User:
    return user_factory(UserRoles.CERTIFIER, "certifier")


@pytest.fixture()
def fake_db_buyer(user_factory) -> User:
    return user_factory(UserRoles.BUYER, "buyer")


@pytest.fixture()
def fake_db_buyer_2(user_factory) -> User:
    return user_factory(UserRoles.BUYER, "buyer_2")


@pytest.fixture()
def fake_db_auditor(user_factory) -> User:
    return user_factory(UserRoles.AUDITOR, "auditor")


@pytest.fixture()
def batch_create() -> BatchCreate:
    return BatchCreate(
        batch_number="BATCH-2024-001",
        kg_produced=1500,
        kwh_used=45000,
        region="North America",
        production_date=datetime.datetime(2024, 1, 15, tzinfo=datetime.timezone.utc),
        certificate_files=["certificates/batch-2024-001.pdf"],
    )


@pytest.fixture()
def verification_result(fake_db_certifier: User) -> VerificationResult:
    return VerificationResult(
        kwh_per_kg=30,
        trust_score=95,
        carbon_intensity=15.05,
        anomaly_flags=[],
        verified_by=fake_db_certifier.id,
    )


@pytest.fixture()
def fake_db_pending_batch(
    write_session: Session,
    fake_db_producer: User,
    batch_create: BatchCreate,
    ledger_config: LedgerConfig,
) -> Batch:
    return batch_services.submit_batch(
        fake_db_producer, batch_create, write_session, ledger_config
    )


@pytest.fixture()
def fake_db_approved_batch(
    write_session: Session,
    fake_db_pending_batch: Batch,
    fake_db_certifier: User,
    verification_result: VerificationResult,
) -> Batch:
    return batch_services.approve_batch(
        fake_db_pending_batch.id,  # type: ignore[arg-type]
        verification_result,
        fake_db_certifier,
        write_session,
    )


@pytest.fixture()
def fake_db_credit(
    write_session: Session,
    fake_db_approved_batch: Batch,
    fake_db_certifier: User,
    ledger_config: LedgerConfig,
) -> Credit:
    credit, _ = credit_services.mint_credit(
        fake_db_approved_batch.id,  # type: ignore[arg-type]
        1500,
        fake_db_certifier,
        write_session,
        ledger_config,
    )
    return credit
