from fastapi import Depends, Header
from sqlmodel import Session

from h2_registry.core.database import cqrs, db
from h2_registry.core.error_handling import (
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
)
from h2_registry.logging_config import logger
from h2_registry.user.models import User
from h2_registry.user.schemas import UserCreate


def resolve_current_user(user_id: int, read_session: Session) -> User:
    """Resolve the acting user from the identity supplied by the caller.

    Raises:
        NotFoundError: If no user exists with the given id.
        ForbiddenError: If the user has been deactivated.
    """
    user = read_session.get(User, user_id)
    if user is None:
        err_msg = f"User with id {user_id} not found"
        logger.error(err_msg)
        raise NotFoundError(err_msg, details={"user_id": user_id})

    if not user.is_active:
        err_msg = f"User {user_id} is deactivated"
        logger.error(err_msg)
        raise ForbiddenError(err_msg, details={"user_id": user_id})

    return user


def resolve_user_by_email(email: str, read_session: Session) -> User | None:
    return User.by_email(email, read_session)


def create_user(user_create: UserCreate, write_session: Session) -> User:
    if User.by_email(user_create.email, write_session):
        err_msg = f"User with email {user_create.email} already exists"
        logger.error(err_msg)
        raise DuplicateKeyError(err_msg, details={"field": "email"})

    with cqrs.atomic(write_session):
        user = User.create(user_create, write_session)

    return user


def get_current_user(
    x_user_id: int = Header(
        ..., description="The id of the user, as authenticated by the upstream gateway."
    ),
    read_session: Session = Depends(db.get_read_session),
) -> User:
    """Resolve the user making the request from the `X-User-Id` header."""
    return resolve_current_user(x_user_id, read_session)
