import sys
from datetime import timedelta

from gatekeeper.adapters.aws_orgs import AccountClassifier
from gatekeeper.adapters.notifier import RecordingDispatcher
from gatekeeper.adapters.state_store import InMemoryRequestStore
from gatekeeper.bootstrap import build_engine
from gatekeeper.core.config import load_settings
from gatekeeper.core.lifecycle import AccessRequestDraft
from gatekeeper.models.identity import Caller, Role, UserProfile
from gatekeeper.models.live_access import EventType
from gatekeeper.models.request import RequestUser, TargetResource, utc_now
from gatekeeper.ui.printer import print_active_requests, print_request_event, print_requests


class MockValidator:
    """
    Stunt Double: Pretends to be SSM.
    Every instance is Online.
    """
    def validate_targets(self, environment, resource_ids) -> str:
        return ""

    def check_status(self, environment, resource_ids):
        return {i: "Online" for i in resource_ids}


if __name__ == "__main__":
    # --- SETUP ---
    print("Initializing Gatekeeper...")
    settings = load_settings("config/gatekeeper.yaml")
    notifier = RecordingDispatcher(settings.email)
    engine = build_engine(
        settings,
        store=InMemoryRequestStore(),
        validator=MockValidator(),
        classifier=AccountClassifier(accounts=settings.accounts, use_organizations=False),
        notifier=notifier,
        publisher=None,
    )

    dev = Caller(UserProfile("jdoe", "Jane Doe", "jdoe@example.com"), Role.DEV, frozenset({"PAYMENTS"}))
    support = Caller(UserProfile("rroe", "Rick Roe", "rroe@example.com"), Role.SUPPORT)
    approver = Caller(UserProfile("aboss", "Alex Boss", "aboss@example.com"), Role.APPROVER)

    # --- 1. Dev on a dev account, owns everything, under the threshold: auto-granted ---
    auto = engine.submit(dev, AccessRequestDraft(
        account="qa1", region="us-east-1", hours=4, platform="Linux",
        resources=[TargetResource("i-0aaa111", "Linux", "payments-api-1", "10.0.0.11", "PAYMENTS")],
        users=[RequestUser("jdoe", "Jane Doe", "jdoe@example.com")],
        request_reason="Investigate payment retries",
    ))

    # --- 2. Support on prod above the threshold: waits for an approver ---
    pending = engine.submit(support, AccessRequestDraft(
        account="prod1", region="us-east-1", hours=10, platform="Linux",
        resources=[
            TargetResource("i-0bbb222", "Linux", "ledger-1", "10.1.0.21", "LEDGER"),
            TargetResource("i-0bbb333", "Linux", "ledger-2", "10.1.0.22", "LEDGER"),
        ],
        users=[RequestUser("jdoe", "Jane Doe", "jdoe@example.com")],
        request_reason="Production incident",
        ticket_id="INC-1234",
    ))
    print_active_requests(engine.list_active(approver))

    granted = engine.approve(pending.id, approver, "ok", 6)
    print_requests(engine.list_completed(approver), title="Completed requests")

    # --- 3. The auto-granted request expires ---
    expired_at = auto.authorization_start + timedelta(hours=auto.hours, seconds=1)
    event = engine.live_requests_for_event(EventType.EXPIRATION, auto, now=expired_at)
    print_request_event(event)

    print(f"\n[Notifications sent]: {', '.join(notifier.templates())}")

    # --- EXIT CODES ---
    if granted.hours == 6 and auto.actioned_by_user_id == dev.user_id and utc_now() < granted.expires_at:
        sys.exit(0)
    sys.exit(2)
