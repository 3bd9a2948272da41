from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet


class Role(str, Enum):
    APPROVER = "APPROVER"
    AUDITOR = "AUDITOR"
    SUPPORT = "SUPPORT"
    DEV = "DEV"
    OPS = "OPS"


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str
    email: str


@dataclass(frozen=True)
class Caller:
    """
    The identity on whose behalf an operation runs.

    Attributes:
        profile: Who the caller is.
        role: Resolved from the caller's group memberships.
        memberships: Application-ownership tags the caller holds.
    """
    profile: UserProfile
    role: Role
    memberships: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def user_id(self) -> str:
        return self.profile.user_id

    def is_same_user(self, user_id: str) -> bool:
        return bool(user_id) and self.profile.user_id.lower() == user_id.lower()
