"""
Exception taxonomy for the access request lifecycle.

User-facing failures (ValidationError, RequestNotFoundError,
InvalidTransitionError, AuthorizationError) are reported back to the caller.
PolicyLookupError and ConfigurationError are configuration faults.
CollaboratorFailure is always recovered locally by the lifecycle engine.
"""


class GatekeeperError(Exception):
    """Base exception for all gatekeeper errors."""
    pass


class ValidationError(GatekeeperError):
    """Raised when a submission is malformed. The request is never persisted."""
    pass


class PolicyLookupError(GatekeeperError):
    """Raised when no approval threshold or SDLC class can be resolved."""
    pass


class RequestNotFoundError(GatekeeperError):
    def __init__(self, request_id):
        super().__init__(f"Access Request {request_id} does not exist")
        self.request_id = request_id


class InvalidTransitionError(GatekeeperError):
    """
    Raised when a request is no longer PENDING.
    The message is generic on purpose: it never names the concurrent actor.
    """
    def __init__(self, request_id):
        super().__init__(f"Access Request {request_id} has already been actioned")
        self.request_id = request_id


class AuthorizationError(GatekeeperError):
    """Raised when the caller's role does not permit a transition."""
    pass


class CollaboratorFailure(GatekeeperError):
    """Raised by adapters when an external service call fails."""
    pass


class UnknownRoleError(GatekeeperError):
    """Unreachable role value. Fatal, never shown to end users as a validation problem."""
    pass


class ConfigurationError(GatekeeperError):
    """Raised when the settings file is missing, malformed, or references unset variables."""
    pass
