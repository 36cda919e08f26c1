from enum import Enum

from h2_registry.core.error_handling import ForbiddenError
from h2_registry.core.models.base import UserRoles
from h2_registry.user.models import User


class LedgerAction(str, Enum):
    SUBMIT_BATCH = "submit_batch"
    VERIFY_BATCH = "verify_batch"
    APPROVE_BATCH = "approve_batch"
    REJECT_BATCH = "reject_batch"
    MINT_CREDIT = "mint_credit"
    TRANSFER_CREDIT = "transfer_credit"
    RETIRE_CREDIT = "retire_credit"
    PURCHASE_CREDIT = "purchase_credit"
    RECORD_VERIFICATION = "record_verification"
    UPDATE_TRANSACTION = "update_transaction"
    VIEW_STATISTICS = "view_statistics"


# Admins are allowed every action and are not listed per action.
ROLE_CAPABILITIES: dict[LedgerAction, frozenset[UserRoles]] = {
    LedgerAction.SUBMIT_BATCH: frozenset({UserRoles.PRODUCER}),
    LedgerAction.VERIFY_BATCH: frozenset({UserRoles.CERTIFIER}),
    LedgerAction.APPROVE_BATCH: frozenset({UserRoles.CERTIFIER}),
    LedgerAction.REJECT_BATCH: frozenset({UserRoles.CERTIFIER}),
    LedgerAction.MINT_CREDIT: frozenset({UserRoles.CERTIFIER}),
    LedgerAction.TRANSFER_CREDIT: frozenset({UserRoles.BUYER}),
    LedgerAction.RETIRE_CREDIT: frozenset({UserRoles.BUYER}),
    LedgerAction.PURCHASE_CREDIT: frozenset({UserRoles.BUYER}),
    LedgerAction.RECORD_VERIFICATION: frozenset({UserRoles.CERTIFIER}),
    LedgerAction.UPDATE_TRANSACTION: frozenset(
        {UserRoles.CERTIFIER, UserRoles.AUDITOR}
    ),
    LedgerAction.VIEW_STATISTICS: frozenset({UserRoles.CERTIFIER, UserRoles.AUDITOR}),
}


def user_has_capability(user: User, action: LedgerAction) -> bool:
    if user.role == UserRoles.ADMIN:
        return True
    return user.role in ROLE_CAPABILITIES[action]


def validate_user_capability(user: User, action: LedgerAction) -> None:
    """
    Validate that the user's role permits the requested ledger action.

    Args:
        user (User): The acting user
        action (LedgerAction): The action the user is attempting

    Raises:
        ForbiddenError: If the user's role does not permit the action.
    """
    if not user_has_capability(user, action):
        msg = f"Role {user.role} is not permitted to {action.value.replace('_', ' ')}"
        raise ForbiddenError(
            msg, details={"role": str(user.role), "action": action.value}
        )
