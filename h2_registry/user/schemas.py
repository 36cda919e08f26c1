import re

from pydantic import BaseModel, field_validator
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import UserRoles


class UserBase(SQLModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(
        nullable=False,
        unique=True,
        index=True,
        description="The email address of the User, used to address credit transfers.",
    )
    role: UserRoles = Field(
        description="""The role of the User within the registry. Roles gate the ledger
                       operations a User may perform: producers submit batches, certifiers
                       verify and approve them and mint credits, buyers trade and retire
                       credits, auditors read statistics and admins may do everything.""",
    )
    organisation: str | None = Field(
        default=None,
        description="The organisation to which the user is registered.",
    )
    is_active: bool = Field(default=True)

    @field_validator("email")
    def validate_email(cls, v):
        if not re.match(r"[^@]+@[^@]+\.[^@]+", v):
            raise ValueError("Please enter a valid email address.")
        return v.lower()


class UserCreate(UserBase):
    pass


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    role: UserRoles
    organisation: str | None = None
    is_active: bool = True
