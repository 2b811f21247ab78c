"""Tests for approval step normalization."""

import pytest

from erpflow.core.approval.states import CompletionMode
from erpflow.core.approval.steps import (
    ApprovalStep,
    StageCompletion,
    normalize_legacy_steps,
    normalize_rule_steps,
    normalize_rule_steps_with_policy,
    normalize_staged_definition,
    stage_policy_from_json,
    stage_policy_to_json,
)


def orders_and_approvers(normalized):
    return [(s.step_order, s.approver_group_id or s.approver_user_id) for s in normalized.steps]


class TestLegacySteps:
    """Test flat step lists."""

    def test_one_stage_per_entry(self):
        normalized = normalize_legacy_steps([
            {"approverGroupId": "mgmt"},
            {"approverUserId": "u-7"},
        ])

        assert orders_and_approvers(normalized) == [(1, "mgmt"), (2, "u-7")]
        assert normalized.stage_policy == {1: StageCompletion(), 2: StageCompletion()}

    def test_parallel_keys_share_a_stage(self):
        normalized = normalize_legacy_steps([
            {"approverGroupId": "mgmt"},
            {"approverUserId": "u-7", "parallelKey": "finance"},
            {"approverGroupId": "finance", "parallelKey": "finance"},
            {"approverGroupId": "exec"},
        ])

        assert orders_and_approvers(normalized) == [(1, "mgmt"), (2, "u-7"), (2, "finance"), (3, "exec")]

    def test_explicit_orders_win(self):
        normalized = normalize_legacy_steps([
            {"approverGroupId": "exec", "stepOrder": 3, "parallelKey": "x"},
            {"approverGroupId": "mgmt", "stepOrder": 1},
            {"approverGroupId": "audit", "stepOrder": 1},
        ])

        assert orders_and_approvers(normalized) == [(3, "exec"), (1, "mgmt"), (1, "audit")]
        assert normalized.orders == [1, 3]

    def test_invalid_explicit_order_uses_position(self):
        normalized = normalize_legacy_steps([
            {"approverGroupId": "mgmt", "stepOrder": 3},
            {"approverGroupId": "exec", "stepOrder": float("nan")},
            {"approverGroupId": "audit", "stepOrder": 0},
        ])

        assert orders_and_approvers(normalized) == [(3, "mgmt"), (2, "exec"), (3, "audit")]

    def test_entries_without_approver_are_dropped(self):
        normalized = normalize_legacy_steps([{"approverGroupId": "  "}, "mgmt", {"approverGroupId": "exec"}])

        assert orders_and_approvers(normalized) == [(1, "exec")]

    def test_group_wins_over_user(self):
        normalized = normalize_legacy_steps([{"approverGroupId": "mgmt", "approverUserId": "u-1"}])

        assert normalized.steps == [ApprovalStep(1, approver_group_id="mgmt")]

    def test_empty_list_is_none(self):
        assert normalize_legacy_steps([]) is None
        assert normalize_legacy_steps([{}]) is None


STAGED = {
    "stages": [
        {"order": 2, "approvers": [{"type": "group", "id": "exec"}]},
        {
            "order": 1,
            "completion": {"mode": "quorum", "quorum": 2},
            "approvers": [
                {"type": "group", "id": "mgmt"},
                {"type": "user", "id": "u-7"},
                {"type": "user", "id": "u-9"},
            ],
        },
    ],
}


class TestStagedDefinition:
    """Test staged definitions and their all-or-nothing validation."""

    def test_valid_definition(self):
        normalized = normalize_staged_definition(STAGED)

        assert orders_and_approvers(normalized) == [(1, "mgmt"), (1, "u-7"), (1, "u-9"), (2, "exec")]
        assert normalized.completion_for(1) == StageCompletion(CompletionMode.QUORUM, 2)
        assert normalized.completion_for(2) == StageCompletion(CompletionMode.ALL)

    def test_completion_as_string(self):
        normalized = normalize_staged_definition({
            "stages": [{"order": 1, "completion": "any", "approvers": [{"type": "group", "id": "mgmt"}]}],
        })

        assert normalized.completion_for(1).mode == CompletionMode.ANY

    def test_duplicate_approvers_count_once(self):
        normalized = normalize_staged_definition({
            "stages": [{
                "order": 1,
                "approvers": [{"type": "user", "id": "u-1"}, {"type": "user", "id": "u-1"}],
            }],
        })

        assert len(normalized.steps) == 1

    @pytest.mark.parametrize("quorum", [0, 4, -1, "2", None, True])
    def test_quorum_out_of_range_rejects_everything(self, quorum):
        stages = [dict(STAGED["stages"][0]), dict(STAGED["stages"][1])]
        stages[1]["completion"] = {"mode": "quorum", "quorum": quorum}

        assert normalize_staged_definition({"stages": stages}) is None

    @pytest.mark.parametrize("stage", [
        {"order": 0, "approvers": [{"type": "group", "id": "g"}]},
        {"order": "1", "approvers": [{"type": "group", "id": "g"}]},
        {"order": 3, "approvers": []},
        {"order": 3, "approvers": [{"type": "role", "id": "g"}]},
        {"order": 3, "approvers": [{"type": "user", "id": " "}]},
        {"order": 3, "completion": {"mode": "majority"}, "approvers": [{"type": "group", "id": "g"}]},
        {"order": 2, "approvers": [{"type": "group", "id": "g"}]},
        "stage",
    ])
    def test_malformed_stage_rejects_everything(self, stage):
        assert normalize_staged_definition({"stages": STAGED["stages"] + [stage]}) is None

    def test_missing_stages(self):
        assert normalize_staged_definition({}) is None
        assert normalize_staged_definition({"stages": []}) is None


class TestNormalizeRuleSteps:
    """Test shape dispatch."""

    def test_dispatches_on_shape(self):
        assert normalize_rule_steps_with_policy([{"approverGroupId": "mgmt"}]).orders == [1]
        assert normalize_rule_steps_with_policy(STAGED).orders == [1, 2]

    @pytest.mark.parametrize("raw", [None, "mgmt", 3])
    def test_other_shapes_are_none(self, raw):
        assert normalize_rule_steps_with_policy(raw) is None

    def test_steps_only(self):
        assert normalize_rule_steps([{"approverGroupId": "mgmt"}]) == [ApprovalStep(1, "mgmt")]
        assert normalize_rule_steps({"stages": "x"}) is None

    def test_to_dict(self):
        data = normalize_staged_definition(STAGED).to_dict()

        assert data["steps"][0] == {"stepOrder": 1, "approverGroupId": "mgmt"}
        assert data["stagePolicy"] == {"1": {"mode": "quorum", "quorum": 2}, "2": {"mode": "all"}}


class TestStagePolicy:
    """Test stage completion policies."""

    def test_required_approvals(self):
        assert StageCompletion().required_approvals(3) == 3
        assert StageCompletion(CompletionMode.ANY).required_approvals(3) == 1
        assert StageCompletion(CompletionMode.QUORUM, 2).required_approvals(3) == 2

    def test_stored_policy_is_read_back(self):
        stored = stage_policy_to_json({1: StageCompletion(CompletionMode.QUORUM, 2), 2: StageCompletion()})

        assert stage_policy_from_json(stored) == {
            1: StageCompletion(CompletionMode.QUORUM, 2),
            2: StageCompletion(),
        }

    def test_malformed_stored_entries_default_to_all(self):
        assert stage_policy_from_json({"1": {"mode": "weird"}, "x": {"mode": "any"}}) == {1: StageCompletion()}
        assert stage_policy_from_json(None) == {}
