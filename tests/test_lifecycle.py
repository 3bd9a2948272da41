"""
Unit tests for the request lifecycle engine.
"""
import threading

import pytest

from conftest import linux, make_caller, make_draft, windows
from gatekeeper.core.errors import (
    AuthorizationError,
    InvalidTransitionError,
    PolicyLookupError,
    RequestNotFoundError,
    ValidationError,
)
from gatekeeper.core.lifecycle import AUTO_APPROVAL_COMMENT, CANCELLATION_COMMENT
from gatekeeper.models.identity import Role
from gatekeeper.models.request import RequestStatus


class TestSubmission:

    def test_dev_under_threshold_owning_everything_is_auto_granted(self, engine, dev, notifier, clock):
        request = engine.submit(dev, make_draft(account="qa1", hours=4))

        assert request.status is RequestStatus.APPROVAL_GRANTED
        assert request.actioned_by_user_id == dev.user_id
        assert request.approver_comments == AUTO_APPROVAL_COMMENT
        assert request.authorization_start == clock.now
        approved = [n for n in notifier.sent if n.template == "accessGranted"]
        assert len(approved) == 1
        assert approved[0].to == dev.profile.email

    def test_support_over_threshold_waits_for_approval(self, engine, support, notifier, publisher):
        request = engine.submit(support, make_draft(account="prod1", hours=10))

        assert request.status is RequestStatus.PENDING
        assert request.authorization_start is None
        assert publisher.published == [request.id]
        assert notifier.templates() == ["accessRequested"]

    def test_unowned_resource_needs_approval(self, engine, dev):
        draft = make_draft(resources=[linux("i-1"), linux("i-2", "LEDGER")])
        assert engine.submit(dev, draft).status is RequestStatus.PENDING

    def test_users_are_prefixed_and_account_upper_cased(self, engine, dev):
        request = engine.submit(dev, make_draft(account="qa1"))
        assert request.account == "QA1"
        assert [u.user_id for u in request.users] == ["gk-jdoe"]

    def test_platform_mismatch_is_never_persisted(self, engine, dev, store):
        with pytest.raises(ValidationError, match="i-2"):
            engine.submit(dev, make_draft(resources=[linux("i-1"), windows("i-2")]))
        assert store.list_by_requestor(dev.user_id) == []

    def test_invalid_instance_reported(self, engine, dev, validator, store):
        validator.invalid = {"i-1"}
        with pytest.raises(ValidationError, match="i-1"):
            engine.submit(dev, make_draft())
        assert store.list_by_requestor(dev.user_id) == []

    def test_unknown_account_aborts_submission(self, engine, dev, store):
        with pytest.raises(PolicyLookupError):
            engine.submit(dev, make_draft(account="nowhere"))
        assert store.list_by_requestor(dev.user_id) == []

    def test_approver_needs_no_account_classification(self, engine, approver):
        request = engine.submit(approver, make_draft(account="nowhere", hours=100))
        assert request.status is RequestStatus.APPROVAL_GRANTED
        assert request.actioned_by_user_id == approver.user_id

    def test_bad_hours_rejected(self, engine, dev):
        with pytest.raises(ValidationError, match="positive"):
            engine.submit(dev, make_draft(hours=0))

    @pytest.mark.parametrize("hours", [169, 170, 200])
    def test_hours_beyond_live_window_refused(self, engine, approver, store, hours):
        with pytest.raises(ValidationError, match="maximum of 168 hours"):
            engine.submit(approver, make_draft(hours=hours))
        assert store.list_by_requestor(approver.user_id) == []

    def test_longest_grant_fits_the_live_window(self, engine, approver):
        assert engine.submit(approver, make_draft(hours=168)).status is RequestStatus.APPROVAL_GRANTED

    def test_unknown_region_refused(self, engine, dev, store):
        draft = make_draft()
        draft.region = "mars-1"
        with pytest.raises(ValidationError, match="Invalid AWS region"):
            engine.submit(dev, draft)
        assert store.list_by_requestor(dev.user_id) == []

    def test_publish_failure_does_not_block_submission(self, engine, support, publisher, notifier):
        publisher.fail = True
        request = engine.submit(support, make_draft(account="prod1", hours=10))

        assert request.status is RequestStatus.PENDING
        assert "failure" in notifier.templates()


class TestTransitions:

    @pytest.fixture
    def pending(self, engine, support):
        return engine.submit(support, make_draft(account="prod1", hours=10))

    def test_approve_overwrites_hours(self, engine, pending, approver, notifier, clock, store):
        clock.advance(minutes=5)
        approved = engine.approve(pending.id, approver, "ok", 6)

        assert approved.status is RequestStatus.APPROVAL_GRANTED
        assert approved.hours == 6
        assert approved.approver_comments == "ok"
        assert approved.actioned_by_user_id == approver.user_id
        assert approved.authorization_start == clock.now
        assert store.get(pending.id).hours == 6
        assert "accessGranted" in notifier.templates()

    def test_approve_keeps_hours_when_not_given(self, engine, pending, approver):
        assert engine.approve(pending.id, approver, "ok").hours == 10

    def test_approve_beyond_live_window_refused(self, engine, pending, approver, store):
        with pytest.raises(ValidationError, match="maximum of 168 hours"):
            engine.approve(pending.id, approver, "ok", 200)
        assert store.get(pending.id).status is RequestStatus.PENDING

    def test_reject(self, engine, pending, approver, notifier):
        rejected = engine.reject(pending.id, approver, "no ticket")

        assert rejected.status is RequestStatus.APPROVAL_REJECTED
        assert rejected.authorization_start is None
        assert rejected.approver_comments == "no ticket"
        assert notifier.sent[-1].template == "accessDenied"

    def test_cancel_by_requestor(self, engine, pending, support, notifier):
        canceled = engine.cancel(pending.id, make_caller("RROE", Role.SUPPORT))

        assert canceled.status is RequestStatus.CANCELED
        assert canceled.approver_comments == CANCELLATION_COMMENT
        cancel_mail = notifier.sent[-1]
        assert cancel_mail.template == "requestCanceled"
        assert cancel_mail.cc == support.profile.email

    def test_cancel_by_approver(self, engine, pending, approver):
        assert engine.cancel(pending.id, approver).status is RequestStatus.CANCELED

    def test_cancel_by_someone_else_refused(self, engine, pending):
        with pytest.raises(AuthorizationError):
            engine.cancel(pending.id, make_caller("mallory", Role.DEV))

    @pytest.mark.parametrize("role", [Role.DEV, Role.OPS, Role.SUPPORT, Role.AUDITOR])
    def test_only_approvers_approve_or_reject(self, engine, pending, role):
        caller = make_caller("someone", role)
        with pytest.raises(AuthorizationError):
            engine.approve(pending.id, caller, "ok")
        with pytest.raises(AuthorizationError):
            engine.reject(pending.id, caller, "no")

    def test_unknown_request(self, engine, approver):
        with pytest.raises(RequestNotFoundError):
            engine.approve(999, approver, "ok")
        with pytest.raises(RequestNotFoundError):
            engine.cancel(999, approver)

    def test_role_is_checked_before_lookup(self, engine, dev):
        with pytest.raises(AuthorizationError):
            engine.approve(999, dev, "ok")
        with pytest.raises(AuthorizationError):
            engine.reject(999, dev, "no")

    @pytest.mark.parametrize("first", ["approve", "reject", "cancel"])
    def test_terminal_states_are_final(self, engine, pending, approver, first):
        actions = {
            "approve": lambda: engine.approve(pending.id, approver, "ok"),
            "reject": lambda: engine.reject(pending.id, approver, "no"),
            "cancel": lambda: engine.cancel(pending.id, approver),
        }
        actions[first]()
        for name, action in actions.items():
            with pytest.raises(InvalidTransitionError, match="already been actioned"):
                action()

    def test_notification_failure_does_not_roll_back(self, engine, pending, approver, notifier, store):
        def broken(request):
            raise RuntimeError("SES down")
        notifier.notify_approved = broken

        approved = engine.approve(pending.id, approver, "ok")

        assert approved.status is RequestStatus.APPROVAL_GRANTED
        assert store.get(pending.id).status is RequestStatus.APPROVAL_GRANTED
        assert "failure" in notifier.templates()


class TestConcurrency:

    def test_simultaneous_approve_and_reject_one_wins(self, engine, support, store):
        pending = engine.submit(support, make_draft(account="prod1", hours=10))
        approvers = [make_caller("approver-a", Role.APPROVER), make_caller("approver-b", Role.APPROVER)]
        barrier = threading.Barrier(2)
        outcomes = {}

        def act(name, fn):
            barrier.wait()
            try:
                outcomes[name] = fn().status
            except InvalidTransitionError as e:
                outcomes[name] = e

        threads = [
            threading.Thread(target=act, args=("approve", lambda: engine.approve(pending.id, approvers[0], "ok"))),
            threading.Thread(target=act, args=("reject", lambda: engine.reject(pending.id, approvers[1], "no"))),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = {k: v for k, v in outcomes.items() if isinstance(v, RequestStatus)}
        losers = [v for v in outcomes.values() if isinstance(v, InvalidTransitionError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert store.get(pending.id).status == list(winners.values())[0]


class TestReads:

    def test_list_active_reports_unknown_status(self, engine, support, approver, validator):
        engine.submit(support, make_draft(account="prod1", hours=10, resources=[linux("i-1"), linux("i-2")]))
        validator.statuses = {"i-1": "Online"}

        views = engine.list_active(approver)

        assert len(views) == 1
        assert views[0].resource_count == 2
        assert views[0].user_count == 1
        assert {r.resource_id: r.status for r in views[0].request.resources} == {"i-1": "Online", "i-2": "Unknown"}

    def test_list_active_survives_status_failure(self, engine, support, approver, validator):
        engine.submit(support, make_draft(account="prod1", hours=10))
        validator.fail_status = True

        views = engine.list_active(approver)

        assert [r.status for r in views[0].request.resources] == ["Unknown"]

    def test_list_active_empty(self, engine, approver):
        assert engine.list_active(approver) == []

    def test_list_active_is_filtered(self, engine, support, dev, approver):
        engine.submit(support, make_draft(account="prod1", hours=10))
        assert engine.list_active(dev) == []
        assert len(engine.list_active(support)) == 1
        assert len(engine.list_active(approver)) == 1

    def test_list_completed_newest_first(self, engine, dev, support, approver, clock):
        first = engine.submit(dev, make_draft())
        clock.advance(minutes=1)
        pending = engine.submit(support, make_draft(account="prod1", hours=10))
        clock.advance(minutes=1)
        engine.reject(pending.id, approver, "no")

        completed = engine.list_completed(approver)

        assert [r.id for r in completed] == [pending.id, first.id]
        assert [r.id for r in engine.list_completed(dev)] == [first.id]

    def test_get_request_hidden_from_other_users(self, engine, dev, support):
        request = engine.submit(dev, make_draft())
        assert engine.get_request(request.id, support) == []
        assert [r.id for r in engine.get_request(request.id, dev)] == [request.id]
        with pytest.raises(RequestNotFoundError):
            engine.get_request(12345, dev)
