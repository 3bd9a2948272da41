import logging
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from gatekeeper.core.config import EmailSettings
from gatekeeper.core.errors import CollaboratorFailure
from gatekeeper.models.live_access import PlatformAccess, RequestEvent, UserAccessView
from gatekeeper.models.request import AccessRequest

logger = logging.getLogger(__name__)

TEMPLATES = {
    "accessRequested": (
        "Access request {request.id} from {request.requestor_name} is waiting for approval.\n"
        "Account: {request.account} ({request.region})\n"
        "Hours: {request.hours}\n"
        "Resources: {resources}\n"
        "Reason: {request.request_reason}\n"
    ),
    "accessGranted": (
        "Your access request {request.id} for {request.account} was granted for {request.hours} hour(s).\n"
        "Comments: {request.approver_comments}\n\n{disclaimer}\n"
    ),
    "accessDenied": (
        "Your access request {request.id} for {request.account} was denied.\n"
        "Comments: {request.approver_comments}\n"
    ),
    "requestCanceled": "Access request {request.id} for {request.account} was canceled.\n",
    "accessExpired": (
        "Your access from request {request.id} on {request.account} has expired.\n"
        "Resources: {resources}\n"
    ),
    "liveAccess": (
        "Hello {user.user_id},\n\n"
        "Active access:\n{active}\n\n"
        "Recently expired access:\n{expired}\n"
    ),
    "failure": (
        "Gatekeeper failed while processing access request {request.id}.\n\n{stacktrace}\n"
    ),
}


@dataclass
class Notification:
    to: str
    cc: Optional[str]
    subject: str
    template: str
    body: str


def _describe_resources(request: AccessRequest) -> str:
    return ", ".join(f"{r.name or r.resource_id} ({r.resource_id})" for r in request.resources) or "-"


def _describe_access(access: PlatformAccess) -> str:
    lines = [f"  [Linux] {e.name} {e.ip} (request {e.request_id})" for e in access.linux]
    lines += [f"  [Windows] {e.name} {e.ip} (request {e.request_id})" for e in access.windows]
    return "\n".join(lines) or "  none"


class NotificationDispatcher(ABC):
    """
    Fire-and-forget notifications for request lifecycle events.
    A failed send is logged and escalated to the team, never raised to the caller.
    """
    def __init__(self, settings: EmailSettings):
        self.settings = settings

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Delivers one message. May raise; callers go through _email_helper."""

    def _email_helper(self, to: str, cc: Optional[str], subject: str, template: str,
                      request: AccessRequest, **params) -> bool:
        try:
            body = TEMPLATES[template].format(
                request=request,
                resources=_describe_resources(request),
                disclaimer=self.settings.change_disclaimer,
                **params,
            )
            self.send(Notification(to=to, cc=cc, subject=subject, template=template, body=body))
            return True
        except Exception as ex:
            logger.warning(f"Unable to send '{template}' email for access request {request.id}: {ex}")
            self.notify_admins_of_failure(request, ex)
            return False

    def notify_admins(self, request: AccessRequest) -> None:
        """Tells the approver pool a request is waiting. Only when send_access_requested_email is on."""
        if not self.settings.send_access_requested_email:
            logger.info(f"No email sent to approvers for request {request.id}; send_access_requested_email is off.")
            return
        self._email_helper(self.settings.approvers, None,
                           f"GATEKEEPER: Access Requested ({request.id})", "accessRequested", request)

    def notify_approved(self, request: AccessRequest) -> None:
        logger.info(f"Notify the submitter that request {request.id} was approved")
        self._email_helper(request.requestor_email, None,
                           f"Gatekeeper: Access Request {request.id} was granted", "accessGranted", request)

    def notify_rejected(self, request: AccessRequest) -> None:
        logger.info(f"Notify the submitter that request {request.id} was rejected")
        self._email_helper(request.requestor_email, None,
                           f"Gatekeeper: Access Request {request.id} was denied", "accessDenied", request)

    def notify_canceled(self, request: AccessRequest) -> None:
        logger.info(f"Notify user and approvers that request {request.id} was canceled")
        self._email_helper(self.settings.approvers, request.requestor_email,
                           f"Gatekeeper: Access Request {request.id} was canceled", "requestCanceled", request)

    def notify_expired(self, request: AccessRequest) -> None:
        logger.info(f"Notify {len(request.users)} user(s) that request {request.id} has expired")
        for user in request.users:
            self._email_helper(user.email, None, "Gatekeeper: Your Access has expired", "accessExpired", request)

    def notify_live_access(self, event: RequestEvent, request: AccessRequest) -> None:
        """Sends each user a combined view of what is still active and what just expired."""
        for user in event.users:
            self._send_live_access(user, event, request)

    def _send_live_access(self, user: UserAccessView, event: RequestEvent, request: AccessRequest) -> None:
        self._email_helper(
            user.email, None,
            f"Gatekeeper: Your live access ({event.event_type.value.lower()} of request {event.request_id})",
            "liveAccess", request,
            user=user,
            active=_describe_access(user.active_access),
            expired=_describe_access(user.expired_access),
        )

    def notify_admins_of_failure(self, request: AccessRequest, exception: BaseException) -> None:
        """Escalation path. Failing here is only logged; nothing retries."""
        logger.info(f"Notify the admins that an exception was raised while processing request {request.id}")
        try:
            stacktrace = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
            body = TEMPLATES["failure"].format(request=request, stacktrace=stacktrace)
            self.send(Notification(to=self.settings.team, cc=None,
                                   subject="Gatekeeper: Failure executing process",
                                   template="failure", body=body))
        except Exception:
            logger.error("Error sending the team an email", exc_info=True)


class SesNotificationDispatcher(NotificationDispatcher):
    """Delivers notifications through Amazon SES."""

    def __init__(self, settings: EmailSettings, client=None):
        super().__init__(settings)
        self.ses = client or boto3.client("ses", region_name=settings.region)

    def send(self, notification: Notification) -> None:
        if not notification.to:
            raise CollaboratorFailure(f"No recipient configured for '{notification.template}' email")

        destination = {"ToAddresses": [a.strip() for a in notification.to.split(",") if a.strip()]}
        if notification.cc:
            destination["CcAddresses"] = [a.strip() for a in notification.cc.split(",") if a.strip()]

        try:
            self.ses.send_email(
                Source=self.settings.sender,
                Destination=destination,
                Message={
                    "Subject": {"Data": notification.subject},
                    "Body": {"Text": {"Data": notification.body}},
                },
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise CollaboratorFailure(f"SES rejected '{notification.template}' email: {code}")


class RecordingDispatcher(NotificationDispatcher):
    """Keeps notifications in memory. Used for local runs and tests."""

    def __init__(self, settings: EmailSettings = None):
        super().__init__(settings or EmailSettings())
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def templates(self) -> List[str]:
        return [n.template for n in self.sent]
