from typing import Callable, Dict, Iterable, List, TypeVar

from gatekeeper.models.identity import Role

T = TypeVar("T")


def _sees_everything(requestor_id: str, caller_id: str) -> bool:
    return True


def _sees_own(requestor_id: str, caller_id: str) -> bool:
    return bool(requestor_id) and bool(caller_id) and requestor_id.lower() == caller_id.lower()


# Roles not listed fall back to _sees_own
VISIBILITY: Dict[Role, Callable[[str, str], bool]] = {
    Role.APPROVER: _sees_everything,
    Role.AUDITOR: _sees_everything,
}


def _requestor_id(result) -> str:
    # ActiveRequestView wraps the request, AccessRequest carries it directly
    request = getattr(result, "request", result)
    return getattr(request, "requestor_id", "") or ""


class ResultFilter:
    """Role-aware visibility applied to every list/read operation. Never used on writes."""

    def __init__(self, visibility: Dict[Role, Callable[[str, str], bool]] = None):
        self.visibility = visibility if visibility is not None else VISIBILITY

    def filter(self, results: Iterable[T], role: Role, caller_id: str) -> List[T]:
        rule = self.visibility.get(role, _sees_own)
        return [result for result in results if rule(_requestor_id(result), caller_id)]
