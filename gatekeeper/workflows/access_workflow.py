import json
import logging
import os
from typing import Any, Dict

from gatekeeper.bootstrap import build_engine, build_identity_provider
from gatekeeper.core.config import load_settings
from gatekeeper.core.errors import (
    AuthorizationError,
    ConfigurationError,
    InvalidTransitionError,
    RequestNotFoundError,
    ValidationError,
)
from gatekeeper.core.lifecycle import AccessRequestDraft, LifecycleEngine
from gatekeeper.models.request import RequestUser, TargetResource

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

# Operations a queued message may ask for
OPERATIONS = ("submit", "approve", "reject", "cancel")

# Rejected operations are the caller's problem, not the queue's: they are never retried
REJECTIONS = (ValidationError, RequestNotFoundError, InvalidTransitionError, AuthorizationError)


class WorkflowError(Exception):
    """Raised when a queued message cannot be turned into an operation."""
    pass


class WorkflowBootstrapError(Exception):
    """Raised when the Lambda environment is missing required configuration."""
    pass


class AccessRequestWorkflow:
    def __init__(self, engine: LifecycleEngine, identity_provider):
        """
        Runs lifecycle operations queued by the API layer.

        Args:
            engine: The lifecycle engine
            identity_provider: Resolves the caller's email into a Caller
        """
        self.engine = engine
        self.identity = identity_provider

    def _draft(self, payload: Dict[str, Any]) -> AccessRequestDraft:
        try:
            return AccessRequestDraft(
                account=payload["account"],
                region=payload["region"],
                hours=payload["hours"],
                platform=payload["platform"],
                resources=[TargetResource(**r) for r in payload.get("resources", [])],
                users=[RequestUser(**u) for u in payload.get("users", [])],
                request_reason=payload.get("request_reason", ""),
                ticket_id=payload.get("ticket_id"),
            )
        except (KeyError, TypeError) as e:
            raise WorkflowError(f"Malformed submission payload: {e}")

    def process_request(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Expected event payload:
        {
            "operation": "submit" | "approve" | "reject" | "cancel",
            "caller_email": "jane@example.com",
            "request_id": 42,                  # transitions only
            "comments": "...", "hours": 6,     # approve/reject
            "request": {...}                   # submit only
        }
        """
        operation = event.get("operation")
        caller_email = event.get("caller_email")
        if operation not in OPERATIONS or not caller_email:
            raise WorkflowError(f"Unsupported operation or missing caller: {operation!r}")

        caller = self.identity.current_caller(caller_email)
        logger.info(f"Running '{operation}' as role {caller.role.value}")

        try:
            if operation == "submit":
                request = self.engine.submit(caller, self._draft(event.get("request") or {}))
            else:
                request_id = event.get("request_id")
                if request_id is None:
                    raise WorkflowError(f"'{operation}' requires a request_id")
                request_id = int(request_id)
                if operation == "approve":
                    request = self.engine.approve(request_id, caller, event.get("comments"), event.get("hours"))
                elif operation == "reject":
                    request = self.engine.reject(request_id, caller, event.get("comments"))
                else:
                    request = self.engine.cancel(request_id, caller)
        except REJECTIONS as e:
            logger.warning(f"Operation '{operation}' rejected: {type(e).__name__}")
            return {"ok": False, "error": str(e)}

        return {"ok": True, "request_id": request.id, "status": request.status.value}


def _bootstrap_workflow() -> AccessRequestWorkflow:
    try:
        settings = load_settings(os.environ.get("GATEKEEPER_CONFIG"))
        identity = build_identity_provider(settings)
        engine = build_engine(settings)
    except ConfigurationError as e:
        logger.error(f"CRITICAL: Failed to bootstrap the workflow environment: {e}")
        raise WorkflowBootstrapError(str(e))
    return AccessRequestWorkflow(engine, identity)


def lambda_handler(event, context):
    """
    Lambda entry point for queued lifecycle operations.

    Args:
        event: SQS event whose records carry one operation each
        context: Lambda context object
    """
    workflow = _bootstrap_workflow()

    processed = 0
    malformed = 0
    for record in event.get('Records', []):
        try:
            ticket = json.loads(record.get('body', '{}'))
        except json.JSONDecodeError:
            logger.error("Failed to parse SQS message body as JSON. Discarding message.")
            malformed += 1
            continue

        logger.info(f"Processing ticket from SQS: {record.get('messageId')}")
        try:
            workflow.process_request(ticket)
        except WorkflowError as e:
            logger.error(f"Discarding message {record.get('messageId')}: {e}")
            malformed += 1
            continue
        processed += 1

    return {"processed": processed, "malformed": malformed}
