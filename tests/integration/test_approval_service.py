"""Integration tests for the approval workflow service.

Runs the full path on an in-memory SQLite database:
1. Instance creation from rules or the default ladder
2. Stage advancement by mgmt and exec approvers
3. Rejection and cancellation
4. Action policies gating approvals (chat acknowledgement guard and override)
"""

import pytest

from erpflow.core.approval import (
    ActionDeniedError,
    ApprovalAction,
    ApprovalNotFoundError,
    ApprovalService,
    NotAnApproverError,
    TransitionError,
)
from erpflow.core.policy import Actor, DenialReason
from erpflow.db.models import (
    ActionPolicy,
    ApprovalRule,
    AuditLog,
    ChatAck,
    ChatAckLink,
    ChatAckRequest,
    ChatMessage,
)

pytestmark = pytest.mark.integration

MGMT = Actor(user_id="u-m", roles=["mgmt"], group_ids=["mgmt"])
EXEC = Actor(user_id="u-x", roles=["exec"], group_ids=["exec"])
ADMIN = Actor(user_id="u-admin", roles=["admin"], group_ids=["mgmt"])
STAFF = Actor(user_id="u-s", roles=["staff"])


@pytest.fixture
def service(db_session, settings, clock):
    return ApprovalService(db_session, settings=settings, clock=clock)


def submit(service, target_id="inv-1", amount=120000, flow_type="invoice"):
    return service.create_approval_for(flow_type, "invoices", target_id, {"totalAmount": amount}, requested_by="u-s")


class TestCreateApproval:
    """Test instance creation."""

    def test_default_ladder(self, service):
        approval = submit(service)

        assert approval["status"] == "pending_qa"
        assert approval["current_step"] == 1
        assert approval["rule_id"] is None
        assert [(s["step_order"], s["approver_group_id"]) for s in approval["steps"]] == [(1, "mgmt"), (2, "exec")]
        assert approval["stage_policy"] == {"1": {"mode": "all"}, "2": {"mode": "all"}}

    def test_open_instance_is_reused(self, service):
        first = submit(service)
        second = submit(service, amount=1)

        assert second["id"] == first["id"]

    def test_closed_instance_is_not_reused(self, service):
        first = submit(service, amount=10)
        service.approve(first["id"], MGMT)

        assert submit(service, amount=10)["id"] != first["id"]

    def test_rule_definition(self, service, db_session):
        db_session.add(ApprovalRule(
            id="r-quorum",
            flow_type="expense",
            steps={"stages": [{
                "order": 1,
                "completion": {"mode": "quorum", "quorum": 2},
                "approvers": [{"type": "user", "id": "u-1"}, {"type": "user", "id": "u-2"},
                              {"type": "user", "id": "u-3"}],
            }]},
        ))
        db_session.flush()

        approval = submit(service, flow_type="expense", amount=10)

        assert approval["rule_id"] == "r-quorum"
        assert approval["stage_policy"] == {"1": {"mode": "quorum", "quorum": 2}}
        assert len(approval["steps"]) == 3

    def test_get_approval(self, service):
        approval = submit(service)

        assert service.get_approval(approval["id"])["id"] == approval["id"]
        assert service.get_approval("missing") is None


class TestActions:
    """Test approve / reject / cancel without configured policies."""

    def test_two_stage_approval(self, service):
        approval = submit(service)

        after_mgmt = service.approve(approval["id"], MGMT)
        assert after_mgmt["status"] == "pending_exec"
        assert after_mgmt["current_step"] == 2

        final = service.approve(approval["id"], EXEC)
        assert final["status"] == "approved"
        assert final["current_step"] is None
        assert [s["status"] for s in final["steps"]] == ["approved", "approved"]

    def test_quorum_stage(self, service, db_session):
        db_session.add(ApprovalRule(
            flow_type="expense",
            steps={"stages": [{
                "order": 1,
                "completion": {"mode": "quorum", "quorum": 2},
                "approvers": [{"type": "user", "id": "u-1"}, {"type": "user", "id": "u-2"},
                              {"type": "user", "id": "u-3"}],
            }]},
        ))
        db_session.flush()
        approval = submit(service, flow_type="expense", amount=10)

        assert service.approve(approval["id"], Actor(user_id="u-2"))["status"] == "pending_qa"
        final = service.approve(approval["id"], Actor(user_id="u-1"))

        assert final["status"] == "approved"
        assert sorted(s["status"] for s in final["steps"]) == ["approved", "approved", "skipped"]

    def test_reject(self, service):
        approval = submit(service)

        rejected = service.reject(approval["id"], MGMT, reason="wrong customer")

        assert rejected["status"] == "rejected"
        assert [s["status"] for s in rejected["steps"]] == ["rejected", "cancelled"]

    def test_cancel_requires_reason(self, service):
        approval = submit(service)

        with pytest.raises(TransitionError):
            service.act(approval["id"], ApprovalAction.CANCEL, STAFF)

        assert service.cancel(approval["id"], STAFF, reason="duplicate")["status"] == "cancelled"

    def test_not_an_approver(self, service):
        approval = submit(service)

        with pytest.raises(NotAnApproverError):
            service.approve(approval["id"], EXEC)

        assert service.get_approval(approval["id"])["status"] == "pending_qa"

    def test_unknown_instance(self, service):
        with pytest.raises(ApprovalNotFoundError):
            service.approve("missing", MGMT)

    def test_history(self, service):
        approval = submit(service)
        service.approve(approval["id"], MGMT, reason="ok")
        service.approve(approval["id"], EXEC)

        history = service.get_history(approval["id"])

        assert len(history) == 2
        assert {h["user_id"] for h in history} == {"u-m", "u-x"}
        assert {h["action"] for h in history} == {"approve"}
        assert {h["details"]["toStatus"] for h in history} == {"pending_exec", "approved"}

    def test_list_pending_for(self, service):
        first = submit(service, target_id="inv-1")
        submit(service, target_id="inv-2")
        service.approve(first["id"], MGMT)

        assert [a["target_id"] for a in service.list_pending_for(MGMT)] == ["inv-2"]
        assert [a["target_id"] for a in service.list_pending_for(EXEC)] == ["inv-1"]


@pytest.fixture
def ack_gate(db_session):
    """Approve policy guarded by chat acknowledgement."""
    db_session.add(ActionPolicy(
        id="ack-gate",
        flow_type="invoice",
        action_key="approve",
        priority=10,
        guards=["chat_ack_completed"],
    ))
    db_session.flush()


def link_ack_request(db_session, instance_id, required):
    db_session.add(ChatMessage(id="m-1", body="confirm the new rate"))
    db_session.flush()
    db_session.add(ChatAckRequest(id="req-1", message_id="m-1", required_user_ids=list(required)))
    db_session.flush()
    db_session.add(ChatAckLink(ack_request_id="req-1", target_table="approval_instances", target_id=instance_id))
    db_session.flush()


class TestPolicyGate:
    """Test action policies on approval instances."""

    def test_incomplete_ack_denies(self, service, db_session, ack_gate):
        approval = submit(service)
        link_ack_request(db_session, approval["id"], ["u-a"])

        with pytest.raises(ActionDeniedError) as exc_info:
            service.approve(approval["id"], MGMT)

        decision = exc_info.value.decision
        assert decision.reason == DenialReason.GUARD_FAILED
        assert decision.matched_policy_id == "ack-gate"
        assert decision.guard_failures[0].reason == "incomplete"

    def test_completed_ack_allows(self, service, db_session, ack_gate):
        approval = submit(service)
        link_ack_request(db_session, approval["id"], ["u-a"])
        db_session.add(ChatAck(request_id="req-1", user_id="u-a"))
        db_session.flush()

        assert service.approve(approval["id"], MGMT)["status"] == "pending_exec"
        assert db_session.query(AuditLog).filter_by(action="action_policy_override").count() == 0

    def test_admin_needs_reason_to_override(self, service, db_session, ack_gate):
        approval = submit(service)
        link_ack_request(db_session, approval["id"], ["u-a"])

        with pytest.raises(ActionDeniedError) as exc_info:
            service.approve(approval["id"], ADMIN)

        assert exc_info.value.decision.reason == DenialReason.REASON_REQUIRED

    def test_admin_override_is_audited(self, service, db_session, ack_gate):
        approval = submit(service)
        link_ack_request(db_session, approval["id"], ["u-a"])

        result = service.approve(approval["id"], ADMIN, reason="customer waiting on site")

        assert result["status"] == "pending_exec"
        audit = db_session.query(AuditLog).filter_by(action="action_policy_override").one()
        assert audit.user_id == "u-admin"
        assert audit.target_id == approval["id"]
        assert audit.reason_text == "customer waiting on site"
        assert audit.details["guardOverride"] is True
        assert audit.details["matchedPolicyId"] == "ack-gate"

    def test_other_actions_stay_permissive(self, service, db_session, ack_gate):
        """Test that actions without policies keep legacy behavior."""
        approval = submit(service)
        link_ack_request(db_session, approval["id"], ["u-a"])

        assert service.reject(approval["id"], MGMT)["status"] == "rejected"
