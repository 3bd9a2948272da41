import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add repo root to import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from gatekeeper.adapters.aws_orgs import AccountClassifier
from gatekeeper.adapters.notifier import RecordingDispatcher
from gatekeeper.adapters.state_store import InMemoryRequestStore
from gatekeeper.core.config import settings_from_dict
from gatekeeper.core.lifecycle import AccessRequestDraft, LifecycleEngine
from gatekeeper.core.live_grants import LiveGrantTracker
from gatekeeper.core.policy import ApprovalPolicy, PolicyEvaluator
from gatekeeper.models.identity import Caller, Role, UserProfile
from gatekeeper.models.request import RequestUser, TargetResource

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

SETTINGS = {
    "approval_policy": {
        "SUPPORT": {"dev": 48, "qa": 48, "prod": 4},
        "AUDITOR": {"dev": 8, "qa": 8, "prod": 2},
        "DEV": {"dev": 8, "qa": 4, "prod": 0},
        "OPS": {"dev": 24, "qa": 24, "prod": 8},
    },
    "accounts": {"qa1": "dev", "qa2": "qa", "prod1": "prod"},
    "email": {
        "approvers": "approvers@example.com",
        "team": "team@example.com",
        "send_access_requested_email": True,
    },
}


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeValidator:
    """Pretends to be SSM. Ids listed in `invalid` fail validation, `statuses` drives check_status."""
    def __init__(self, invalid=(), statuses=None, fail_status=False):
        self.invalid = set(invalid)
        self.statuses = statuses
        self.fail_status = fail_status
        self.status_calls = 0

    def validate_targets(self, environment, resource_ids):
        bad = [i for i in resource_ids if i in self.invalid]
        return ("The following instances are not properly configured with SSM: " + ", ".join(bad)) if bad else ""

    def check_status(self, environment, resource_ids):
        self.status_calls += 1
        if self.fail_status:
            raise RuntimeError("SSM unreachable")
        if self.statuses is None:
            return {i: "Online" for i in resource_ids}
        return {i: s for i, s in self.statuses.items() if i in resource_ids}


class FakePublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, request):
        if self.fail:
            raise RuntimeError("SNS down")
        self.published.append(request.id)


def make_caller(user_id: str, role: Role, memberships=()) -> Caller:
    return Caller(UserProfile(user_id, user_id.title(), f"{user_id}@example.com"), role, frozenset(memberships))


def linux(resource_id: str, application: str = "PAYMENTS") -> TargetResource:
    return TargetResource(resource_id, "Linux", f"host-{resource_id}", "10.0.0.1", application)


def windows(resource_id: str, application: str = "PAYMENTS") -> TargetResource:
    return TargetResource(resource_id, "Windows", f"host-{resource_id}", "10.0.0.2", application)


def make_draft(account="qa1", hours=4, platform="Linux", resources=None, users=None) -> AccessRequestDraft:
    return AccessRequestDraft(
        account=account,
        region="us-east-1",
        hours=hours,
        platform=platform,
        resources=resources if resources is not None else [linux("i-1")],
        users=users if users is not None else [RequestUser("jdoe", "Jane Doe", "jdoe@example.com")],
        request_reason="testing",
    )


@pytest.fixture
def settings():
    return settings_from_dict(SETTINGS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryRequestStore(clock=clock)


@pytest.fixture
def notifier(settings):
    return RecordingDispatcher(settings.email)


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def engine(settings, store, notifier, validator, publisher, clock):
    return LifecycleEngine(
        store=store,
        evaluator=PolicyEvaluator(ApprovalPolicy.from_settings(settings)),
        classifier=AccountClassifier(accounts=settings.accounts, use_organizations=False),
        validator=validator,
        notifier=notifier,
        tracker=LiveGrantTracker(store, lookback_hours=settings.live_window_hours, clock=clock),
        publisher=publisher,
        clock=clock,
    )


@pytest.fixture
def dev():
    return make_caller("jdoe", Role.DEV, {"PAYMENTS"})


@pytest.fixture
def support():
    return make_caller("rroe", Role.SUPPORT)


@pytest.fixture
def approver():
    return make_caller("aboss", Role.APPROVER)
