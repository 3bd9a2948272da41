import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from gatekeeper.core.config import GatekeeperSettings
from gatekeeper.core.errors import PolicyLookupError, UnknownRoleError
from gatekeeper.models.identity import Role
from gatekeeper.models.request import AccessRequest

VERSION = "1.0.0"


@dataclass
class PolicyDecision:
    """
    The standardized 'Decision' object returned by the evaluator.
    Carries the evidence that led to it so the audit trail can explain "why".
    """
    approval_required: bool
    reason: str
    role: Role
    sdlc_class: str
    threshold: int
    requested_hours: int
    owns_all_resources: Optional[bool] = None
    policy_hash: str = ""
    engine_version: str = VERSION
    evaluated_at: str = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat())

    @property
    def evidence(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "sdlc_class": self.sdlc_class,
            "threshold_hours": self.threshold,
            "requested_hours": self.requested_hours,
            "owns_all_resources": self.owns_all_resources,
        }


class ApprovalPolicy:
    """
    Read-only (role, sdlc class) -> max hours without approval.
    """
    def __init__(self, thresholds: Mapping[str, Mapping[str, int]], policy_hash: str = ""):
        self._thresholds = thresholds
        self.policy_hash = policy_hash

    @classmethod
    def from_settings(cls, settings: GatekeeperSettings) -> "ApprovalPolicy":
        return cls(settings.approval_policy, policy_hash=settings.config_hash)

    def threshold(self, role: Role, sdlc_class: str) -> int:
        if not sdlc_class:
            raise PolicyLookupError("Could not resolve an SDLC classification for the requested account")

        by_sdlc = self._thresholds.get(role.value)
        if by_sdlc is None:
            raise PolicyLookupError(f"No approval policy configured for role {role.value}")

        value = by_sdlc.get(sdlc_class.lower())
        if value is None:
            raise PolicyLookupError(
                f"No approval threshold configured for role {role.value} in SDLC '{sdlc_class.lower()}'"
            )
        return value


def owns_all_resources(request: AccessRequest, memberships: Iterable[str]) -> bool:
    """
    A requester owns a request when every resource's owning application is in
    their memberships. A single un-owned resource is enough to fail.
    """
    owned = set(memberships or ())
    return all(resource.application in owned for resource in request.resources)


# --- Role strategies ---
# Each returns (approval_required, owns_all_resources or None when not consulted)

def _never(request, threshold, memberships):
    return False, None


def _hours_only(request, threshold, memberships):
    return request.hours > threshold, None


def _hours_or_ownership(request, threshold, memberships):
    owned = owns_all_resources(request, memberships)
    return request.hours > threshold or not owned, owned


ROLE_STRATEGIES: Dict[Role, Callable] = {
    Role.APPROVER: _never,
    Role.SUPPORT: _hours_only,
    Role.AUDITOR: _hours_or_ownership,
    Role.DEV: _hours_or_ownership,
    Role.OPS: _hours_or_ownership,
}


class PolicyEvaluator:
    """
    The 'Pure' decision component.
    Given the same (role, sdlc class, hours, ownership) it always returns the same answer.
    """
    def __init__(self, policy: ApprovalPolicy, strategies: Optional[Dict[Role, Callable]] = None):
        self.policy = policy
        self.strategies = strategies if strategies is not None else ROLE_STRATEGIES

    def evaluate(self, request: AccessRequest, role: Role, sdlc_class: str,
                 memberships: Iterable[str] = ()) -> PolicyDecision:
        strategy = self.strategies.get(role)
        if strategy is None:
            # should NEVER happen
            raise UnknownRoleError(f"Could not determine approval strategy for role {role!r}")

        if role is Role.APPROVER:
            # Approvers self-authorize, no threshold lookup needed
            threshold = 0
        else:
            threshold = self.policy.threshold(role, sdlc_class)

        required, owned = strategy(request, threshold, memberships)

        if not required:
            reason = "Within policy, no approval required."
        elif owned is False:
            reason = "Requester does not own every targeted resource."
        else:
            reason = f"Requested {request.hours}h exceeds the {threshold}h limit for {sdlc_class.lower()}."

        return PolicyDecision(
            approval_required=required,
            reason=reason,
            role=role,
            sdlc_class=(sdlc_class or "").lower(),
            threshold=threshold,
            requested_hours=request.hours,
            owns_all_resources=owned,
            policy_hash=self.policy.policy_hash,
        )

    def is_approval_needed(self, request: AccessRequest, role: Role, sdlc_class: str,
                           memberships: Iterable[str] = ()) -> bool:
        return self.evaluate(request, role, sdlc_class, memberships).approval_required
