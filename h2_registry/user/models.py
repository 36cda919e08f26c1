from sqlmodel import Field, Session, select

from h2_registry import utils
from h2_registry.user.schemas import UserBase

# Users are owned by the identity registry; the ledger only resolves them
# by id or email and reads their role.


class User(UserBase, utils.ActiveRecord, table=True):
    # Postgres reserves the name "user" as a keyword, so we use "registry_user" instead
    __tablename__: str = "registry_user"  # type: ignore

    id: int | None = Field(default=None, primary_key=True)

    @classmethod
    def by_email(cls, email: str, read_session: Session) -> "User | None":
        return read_session.exec(select(cls).where(cls.email == email.lower())).first()
