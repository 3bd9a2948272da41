from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    """
    Lifecycle states of an access request.
    EXPIRED is derived from the authorization window and never stored.
    """
    PENDING = "PENDING"
    APPROVAL_GRANTED = "APPROVAL_GRANTED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


@dataclass
class TargetResource:
    """
    A compute instance or database targeted by a request.

    Attributes:
        resource_id: The cloud identifier (e.g. i-0abc123...).
        platform: Platform/type tag (Linux, Windows, ...). Must match the request's platform.
        name: Display name of the resource.
        ip: Private IP, shown to users in live access notifications.
        application: The owning-application tag used for ownership checks.
        status: Runtime status as reported by the resource validator.
    """
    resource_id: str
    platform: str
    name: str = ""
    ip: str = ""
    application: str = ""
    status: str = "Unknown"


@dataclass
class RequestUser:
    """A user that will receive access. user_id carries the internal prefix once stored."""
    user_id: str
    name: str
    email: str


@dataclass
class AccessRequest:
    """
    Represents an access request within the system.

    Attributes:
        id: Numeric id assigned by the request store. Immutable.
        requestor_id / requestor_name / requestor_email: Who submitted the request.
        account: Target account alias (upper-cased at submission).
        region: Target region.
        hours: Authorized duration in wall-clock hours. Approvers may overwrite it.
        request_reason: Free-text justification.
        ticket_id: Optional reference to an external ticket.
        platform: Platform/type tag shared by every resource.
        resources / users: Fixed at creation.
        status: Stored lifecycle status.
        version: Optimistic concurrency counter, bumped on every transition.
        authorization_start: When the request reached APPROVAL_GRANTED.
        actioned_at: When any terminal transition happened.
    """
    requestor_id: str
    requestor_name: str
    requestor_email: str
    account: str
    region: str
    hours: int
    platform: str
    request_reason: str = ""
    ticket_id: Optional[str] = None
    resources: List[TargetResource] = field(default_factory=list)
    users: List[RequestUser] = field(default_factory=list)
    id: Optional[int] = None
    status: RequestStatus = RequestStatus.PENDING
    version: int = 0
    approver_comments: Optional[str] = None
    actioned_by_user_id: Optional[str] = None
    actioned_by_user_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    authorization_start: Optional[datetime] = None
    actioned_at: Optional[datetime] = None

    @property
    def environment(self) -> Tuple[str, str]:
        return self.account, self.region

    @property
    def resource_ids(self) -> List[str]:
        return [resource.resource_id for resource in self.resources]

    @property
    def expires_at(self) -> Optional[datetime]:
        """End of the authorized window, or None if the request was never granted."""
        if self.status is not RequestStatus.APPROVAL_GRANTED or self.authorization_start is None:
            return None
        return self.authorization_start + timedelta(hours=self.hours)

    def status_at(self, now: datetime) -> RequestStatus:
        """Stored status, with granted requests past their window reported as EXPIRED."""
        expires_at = self.expires_at
        if expires_at is not None and now >= expires_at:
            return RequestStatus.EXPIRED
        return self.status

    def copy(self) -> "AccessRequest":
        """Deep enough copy that store callers can never mutate stored state."""
        return replace(
            self,
            resources=[replace(r) for r in self.resources],
            users=[replace(u) for u in self.users],
        )
