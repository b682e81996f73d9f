"""Family-access permission collaborator."""

import logging
from enum import Enum
from typing import Protocol, Set, Tuple

from core.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What a user wants to do with a patient's medications."""

    VIEW = "view"
    MANAGE = "manage"  # create, edit, change status, delete
    RECORD_DOSE = "record_dose"  # take, skip, snooze, undo


class PermissionChecker(Protocol):
    async def check_permission(self, user_id: str, patient_id: str, action: Action) -> bool:
        ...


class FamilyAccessPermissions:
    """
    Allows patients on their own data and family members on granted actions.

    Users listed as system users (schedulers, administrators) may do anything.
    """

    def __init__(self, system_users: Set[str] = frozenset({"system"})):
        self.system_users = set(system_users)
        self._grants: Set[Tuple[str, str, Action]] = set()

    def grant(self, user_id: str, patient_id: str, *actions: Action) -> None:
        for action in actions or tuple(Action):
            self._grants.add((user_id, patient_id, action))

    def revoke(self, user_id: str, patient_id: str) -> None:
        self._grants = {g for g in self._grants if not (g[0] == user_id and g[1] == patient_id)}

    async def check_permission(self, user_id: str, patient_id: str, action: Action) -> bool:
        if user_id in self.system_users or user_id == patient_id:
            return True
        return (user_id, patient_id, action) in self._grants


async def require_permission(
    checker: PermissionChecker,
    user_id: str,
    patient_id: str,
    action: Action
) -> None:
    """Raise PermissionDeniedError unless the checker allows the action."""
    if not await checker.check_permission(user_id, patient_id, action):
        logger.warning(f"Denied {action.value} on patient {patient_id} for user {user_id}")
        raise PermissionDeniedError(
            f"User {user_id} may not {action.value.replace('_', ' ')} for patient {patient_id}"
        )
