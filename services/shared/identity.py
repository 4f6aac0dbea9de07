"""Caller identity and authorization collaborator.

Identity itself is supplied by the surrounding platform; the engine only
consumes a Caller and asks an Authorizer whether an action is allowed.
"""

from enum import StrEnum
from typing import Literal, Protocol

from pydantic import BaseModel

from services.shared.errors import PermissionDeniedError

Role = Literal["admin", "editor", "viewer"]


class Action(StrEnum):
    SUBMIT = "submit documents"
    RESOLVE = "resolve invoice fields"
    CONFIRM_SUPPLIER = "confirm supplier matches"
    FINALIZE = "finalize invoices"
    DELETE = "delete invoices"
    REGISTER_REMISSION = "register remissions"
    ADMIN = "administer the engine"


class Caller(BaseModel):
    """Authenticated caller as supplied by the identity provider."""

    user_id: str
    role: Role = "viewer"


SYSTEM_CALLER = Caller(user_id="system", role="admin")


class Authorizer(Protocol):
    """Protocol for authorization checks."""

    def is_allowed(self, caller: Caller, action: Action) -> bool:
        """Return True when the caller may perform the action."""
        ...


class RoleAuthorizer:
    """Role-based authorizer: viewers read, editors work invoices, admins do everything."""

    _grants: dict[str, frozenset[Action]] = {
        "admin": frozenset(Action),
        "editor": frozenset(
            {
                Action.SUBMIT,
                Action.RESOLVE,
                Action.CONFIRM_SUPPLIER,
                Action.FINALIZE,
                Action.DELETE,
                Action.REGISTER_REMISSION,
            }
        ),
        "viewer": frozenset(),
    }

    def is_allowed(self, caller: Caller, action: Action) -> bool:
        return action in self._grants.get(caller.role, frozenset())


def require(authorizer: Authorizer, caller: Caller, action: Action) -> None:
    """Raise PermissionDeniedError unless the caller may perform the action."""
    if not authorizer.is_allowed(caller, action):
        raise PermissionDeniedError(caller.user_id, action.value)
