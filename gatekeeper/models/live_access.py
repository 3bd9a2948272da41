from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List

from gatekeeper.models.request import AccessRequest


class EventType(str, Enum):
    APPROVAL = "APPROVAL"
    EXPIRATION = "EXPIRATION"


@dataclass
class LiveGrant:
    """A granted request paired with the moment its authorization started."""
    request: AccessRequest
    authorization_start: datetime


@dataclass
class AccessEntry:
    request_id: str
    name: str
    ip: str


@dataclass
class PlatformAccess:
    # Disjoint buckets; resources on any other platform are not reported.
    linux: List[AccessEntry] = field(default_factory=list)
    windows: List[AccessEntry] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.linux and not self.windows


@dataclass
class UserAccessView:
    """
    Everything one user can currently reach, plus what just expired.

    user_id is the external id (internal prefix stripped); gk_user_id is the
    stored id, kept for correlation with notification delivery.
    """
    user_id: str
    gk_user_id: str
    email: str
    active_access: PlatformAccess = field(default_factory=PlatformAccess)
    expired_access: PlatformAccess = field(default_factory=PlatformAccess)


@dataclass
class RequestEvent:
    request_id: int
    event_type: EventType
    users: List[UserAccessView] = field(default_factory=list)
