import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Union

from gatekeeper.adapters.notifier import NotificationDispatcher
from gatekeeper.adapters.state_store import RequestStore
from gatekeeper.core.errors import (
    AuthorizationError,
    InvalidTransitionError,
    ValidationError,
)
from gatekeeper.core.filtering import ResultFilter
from gatekeeper.core.live_grants import LiveGrantTracker
from gatekeeper.core.policy import PolicyDecision, PolicyEvaluator
from gatekeeper.models.identity import Caller, Role, UserProfile
from gatekeeper.models.live_access import EventType, RequestEvent
from gatekeeper.models.request import (
    AccessRequest,
    RequestStatus,
    RequestUser,
    TargetResource,
    utc_now,
)
from gatekeeper.ui.json_logger import log_request_event
from gatekeeper.validators import (
    validate_account_alias,
    validate_hours,
    validate_platform,
    validate_region,
    validate_resource_platforms,
)

logger = logging.getLogger(__name__)

AUTO_APPROVAL_COMMENT = "Auto-approved by policy"
CANCELLATION_COMMENT = "The Request was canceled"


@dataclass
class AccessRequestDraft:
    """What a requester submits. Becomes an AccessRequest once validated and stored."""
    account: str
    region: str
    hours: int
    platform: str
    resources: List[TargetResource] = field(default_factory=list)
    users: List[RequestUser] = field(default_factory=list)
    request_reason: str = ""
    ticket_id: Optional[str] = None


@dataclass
class ActiveRequestView:
    request: AccessRequest
    resource_count: int
    user_count: int

    @property
    def created_at(self) -> Optional[datetime]:
        return self.request.created_at


def can_cancel(caller: Caller, request: AccessRequest) -> bool:
    """
    Approvers may cancel any pending request; requestors may cancel their own.
    """
    return caller.role is Role.APPROVER or caller.is_same_user(request.requestor_id)


class LifecycleEngine:
    """
    Drives requests through PENDING -> APPROVAL_GRANTED | APPROVAL_REJECTED | CANCELED.

    The store transition is the commit point. Everything after it (notifications,
    SNS, audit artifacts) is best-effort and can never undo or block the transition.
    """
    def __init__(self, store: RequestStore, evaluator: PolicyEvaluator, classifier, validator,
                 notifier: NotificationDispatcher, tracker: Optional[LiveGrantTracker] = None,
                 result_filter: Optional[ResultFilter] = None, publisher=None,
                 user_id_prefix: str = "gk-", audit_log_dir: Optional[str] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.evaluator = evaluator
        self.classifier = classifier
        self.validator = validator
        self.notifier = notifier
        self.tracker = tracker or LiveGrantTracker(store, user_id_prefix=user_id_prefix, clock=clock)
        # A grant may not outlive the window in which live views and expiry sweeps look for it
        self.max_hours = int(self.tracker.lookback.total_seconds() // 3600)
        self.result_filter = result_filter or ResultFilter()
        self.publisher = publisher
        self.user_id_prefix = user_id_prefix
        self.audit_log_dir = audit_log_dir
        self._clock = clock

    # --- Side effects ---

    def _fire_and_forget(self, request: AccessRequest, action: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"{action} failed for access request {request.id}: {type(e).__name__}: {e}")
            self.notifier.notify_admins_of_failure(request, e)

    def record_event(self, event_type: str, request: AccessRequest, **details) -> None:
        if not self.audit_log_dir:
            return
        self._fire_and_forget(request, f"Audit event {event_type}", log_request_event,
                              event_type, request, self.audit_log_dir, details)

    # --- Submission ---

    def _prefixed(self, user: RequestUser) -> RequestUser:
        user_id = user.user_id
        if self.user_id_prefix and not user_id.startswith(self.user_id_prefix):
            user_id = self.user_id_prefix + user_id
        return RequestUser(user_id=user_id, name=user.name, email=user.email)

    def _evaluate(self, caller: Caller, request: AccessRequest) -> PolicyDecision:
        sdlc_class = ""
        if caller.role is not Role.APPROVER:
            # Display names rarely say "dev"/"qa"/"prod"; the classifier resolves the SDLC
            sdlc_class = self.classifier.classify_sdlc(request.account)
        return self.evaluator.evaluate(request, caller.role, sdlc_class, caller.memberships)

    def submit(self, caller: Caller, draft: AccessRequestDraft) -> AccessRequest:
        """
        Validates, evaluates and stores a new request, auto-granting it when the
        policy does not require a human approval.
        """
        try:
            hours = validate_hours(draft.hours, self.max_hours)
            account = validate_account_alias(draft.account)
            validate_region(draft.region)
            validate_platform(draft.platform)
            validate_resource_platforms(draft.platform, draft.resources)
        except ValueError as e:
            raise ValidationError(str(e))

        resource_ids = [r.resource_id for r in draft.resources]
        try:
            invalid_resources = self.validator.validate_targets((account, draft.region), resource_ids)
        except Exception as e:
            logger.error(f"Target validation failed for account {account}: {e}")
            raise ValidationError(f"Unable to validate the requested instances: {e}")
        if invalid_resources:
            raise ValidationError(invalid_resources)

        request = AccessRequest(
            requestor_id=caller.profile.user_id,
            requestor_name=caller.profile.name,
            requestor_email=caller.profile.email,
            account=account,
            region=draft.region,
            hours=hours,
            platform=draft.platform,
            request_reason=draft.request_reason,
            ticket_id=draft.ticket_id,
            resources=[TargetResource(**vars(r)) for r in draft.resources],
            users=[self._prefixed(u) for u in draft.users],
        )

        # Policy faults abort the submission before anything is persisted
        decision = self._evaluate(caller, request)

        logger.info("Storing Access Request")
        stored = self.store.create(request)
        logger.info(f"Access Request stored with ID: {stored.id}")
        self.record_event("AccessRequested", stored, **decision.evidence)

        if not decision.approval_required:
            logger.info(f"Approval is not required for request {stored.id}: {decision.reason}")
            return self._grant(stored, caller.profile, AUTO_APPROVAL_COMMENT, None)

        logger.info(f"Approval required for request {stored.id}: {decision.reason}")
        if self.publisher is not None:
            self._fire_and_forget(stored, "SNS publish", self.publisher.publish, stored)
        else:
            logger.info("SNS topic ARN not provided. Skipping publishing of access request to SNS topic.")
        self._fire_and_forget(stored, "Approver notification", self.notifier.notify_admins, stored)
        return stored

    # --- Transitions ---

    def _transition(self, request: AccessRequest, new_status: RequestStatus, actor: UserProfile,
                    comments: Optional[str], hours: Optional[int] = None) -> AccessRequest:
        if request.status is not RequestStatus.PENDING:
            raise InvalidTransitionError(request.id)
        updated = self.store.transition(
            request.id, request.version, new_status, actor, self._clock(), comments, hours
        )
        logger.info(
            f"Access Request {updated.id} was {new_status.value} by {actor.name} ({actor.user_id})."
        )
        return updated

    def _grant(self, request: AccessRequest, actor: UserProfile, comments: Optional[str],
               hours: Optional[int]) -> AccessRequest:
        updated = self._transition(request, RequestStatus.APPROVAL_GRANTED, actor, comments, hours)
        self.record_event("AccessApproved", updated)
        self._fire_and_forget(updated, "Approval notification", self.notifier.notify_approved, updated)
        self._fire_and_forget(updated, "Live access notification",
                              self.notify_live_access, EventType.APPROVAL, updated)
        return updated

    def approve(self, request_id: int, caller: Caller, comments: Optional[str],
                final_hours: Optional[int] = None) -> AccessRequest:
        """
        Grants a pending request. final_hours overwrites the requested duration
        (approvers may shrink or extend it, up to the live window).

        The role check runs before the lookup: a non-approver gets
        AuthorizationError even for an id that does not exist.
        """
        if caller.role is not Role.APPROVER:
            raise AuthorizationError("Only approvers may approve access requests")
        if final_hours is not None:
            try:
                final_hours = validate_hours(final_hours, self.max_hours)
            except ValueError as e:
                raise ValidationError(str(e))

        request = self.store.get(request_id)
        return self._grant(request, caller.profile, comments, final_hours)

    def reject(self, request_id: int, caller: Caller, comments: Optional[str]) -> AccessRequest:
        """Rejects a pending request. Like approve, non-approvers are refused before the lookup."""
        if caller.role is not Role.APPROVER:
            raise AuthorizationError("Only approvers may reject access requests")

        request = self.store.get(request_id)
        updated = self._transition(request, RequestStatus.APPROVAL_REJECTED, caller.profile, comments)
        self.record_event("AccessRejected", updated)
        self._fire_and_forget(updated, "Rejection notification", self.notifier.notify_rejected, updated)
        return updated

    def cancel(self, request_id: int, caller: Caller) -> AccessRequest:
        request = self.store.get(request_id)
        if not can_cancel(caller, request):
            raise AuthorizationError("Only approvers or the requestor may cancel an access request")
        if caller.role is not Role.APPROVER:
            logger.info(f"Request {request_id} is being canceled by its requestor ({caller.user_id})")

        updated = self._transition(request, RequestStatus.CANCELED, caller.profile, CANCELLATION_COMMENT)
        self.record_event("AccessCanceled", updated, canceled_by_role=caller.role.value)
        self._fire_and_forget(updated, "Cancellation notification", self.notifier.notify_canceled, updated)
        return updated

    # --- Reads ---

    def _refresh_resource_status(self, request: AccessRequest) -> AccessRequest:
        try:
            statuses = self.validator.check_status(request.environment, request.resource_ids)
        except Exception as e:
            logger.warning(f"Could not check resource status for request {request.id}: {e}")
            statuses = {}
        for resource in request.resources:
            resource.status = statuses.get(resource.resource_id) or "Unknown"
        return request

    def list_active(self, caller: Caller) -> List[ActiveRequestView]:
        """Pending requests, oldest first, with live resource status. Empty when nothing is pending."""
        pending = self.result_filter.filter(
            self.store.list_by_status(RequestStatus.PENDING), caller.role, caller.user_id
        )
        return [
            ActiveRequestView(
                request=self._refresh_resource_status(request),
                resource_count=len(request.resources),
                user_count=len(request.users),
            )
            for request in pending
        ]

    def list_completed(self, caller: Caller) -> List[AccessRequest]:
        return self.result_filter.filter(self.store.list_completed(), caller.role, caller.user_id)

    def get_request(self, request_id: int, caller: Caller) -> List[AccessRequest]:
        """Zero or one request: the caller may not be allowed to see an existing one."""
        return self.result_filter.filter([self.store.get(request_id)], caller.role, caller.user_id)

    # --- Live access ---

    def live_requests_for_event(self, event_type: EventType, request: Union[AccessRequest, int],
                                now: Optional[datetime] = None) -> RequestEvent:
        if not isinstance(request, AccessRequest):
            request = self.store.get(request)
        return self.tracker.for_event(event_type, request, now)

    def notify_live_access(self, event_type: EventType, request: AccessRequest,
                           now: Optional[datetime] = None) -> RequestEvent:
        event = self.live_requests_for_event(event_type, request, now)
        self.notifier.notify_live_access(event, request)
        return event
