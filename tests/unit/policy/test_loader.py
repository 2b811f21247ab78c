"""Tests for YAML policy files."""

from datetime import datetime

import pytest
import yaml

from erpflow.core.config import Settings
from erpflow.core.policy.loader import (
    PolicyConfigError,
    StaticPolicyStore,
    load_policies,
    parse_policies,
)

POLICY_YAML = """
policies:
  - id: estimate-approve-ack
    flowType: estimate
    actionKey: approve
    priority: 100
    subjects:
      roles: [mgmt]
    stateConstraints:
      statusIn: [pending_qa, pending_exec]
    guards:
      - chat_ack_completed
      - type: editable_days
        days: 7
    requireReason: true
  - flowType: estimate
    actionKey: approve
    priority: 10
  - flowType: estimate
    actionKey: submit
    isEnabled: false
"""


class TestParsePolicies:
    """Test parsing of policy documents."""

    def test_parse_full_entry(self):
        policies = parse_policies(yaml.safe_load(POLICY_YAML))

        first = policies[0]
        assert first.id == "estimate-approve-ack"
        assert first.priority == 100
        assert first.subjects.roles == ["mgmt"]
        assert first.state_constraints.status_in == ["pending_qa", "pending_exec"]
        assert first.guards == ["chat_ack_completed", {"type": "editable_days", "days": 7}]
        assert first.require_reason is True

    def test_defaults_and_generated_ids(self):
        policies = parse_policies(yaml.safe_load(POLICY_YAML))

        assert policies[1].id == "estimate:approve:2"
        assert policies[1].is_enabled is True
        assert policies[1].subjects.is_wildcard
        assert policies[2].is_enabled is False

    def test_accepts_bare_list(self):
        policies = parse_policies([{"flowType": "invoice", "actionKey": "approve"}])

        assert [p.id for p in policies] == ["invoice:approve:1"]

    def test_guards_kept_as_authored(self):
        """Test that malformed guards are left for the engine to reject."""
        policies = parse_policies([{"flowType": "invoice", "actionKey": "approve", "guards": "oops"}])

        assert policies[0].guards == "oops"

    def test_empty_document(self):
        assert parse_policies({}) == []
        assert parse_policies({"policies": None}) == []

    def test_policies_must_be_list(self):
        with pytest.raises(PolicyConfigError, match="must be a list"):
            parse_policies({"policies": {"id": "x"}})

    def test_entry_must_be_mapping(self):
        with pytest.raises(PolicyConfigError, match="#2"):
            parse_policies([{"flowType": "invoice", "actionKey": "approve"}, "approve"])

    def test_missing_flow_type(self):
        with pytest.raises(PolicyConfigError, match="Invalid policy #1"):
            parse_policies([{"actionKey": "approve"}])

    def test_duplicate_ids(self):
        entries = [
            {"id": "dup", "flowType": "invoice", "actionKey": "approve"},
            {"id": "dup", "flowType": "invoice", "actionKey": "submit"},
        ]

        with pytest.raises(PolicyConfigError, match="Duplicate policy id: dup"):
            parse_policies(entries)

    def test_policy_config_error_is_value_error(self):
        assert issubclass(PolicyConfigError, ValueError)


class TestLoadPolicies:
    """Test loading policy files from disk."""

    def test_load_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(POLICY_YAML)

        assert len(load_policies(path)) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policies(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("policies: [unclosed\n")

        with pytest.raises(PolicyConfigError, match="Invalid YAML"):
            load_policies(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_policies(path) == []


class TestStaticPolicyStore:
    """Test the in-memory policy store."""

    def test_filters_and_orders(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(POLICY_YAML)
        store = StaticPolicyStore.from_file(path)

        assert [p.id for p in store.list_enabled("estimate", "approve")] == [
            "estimate-approve-ack", "estimate:approve:2",
        ]
        assert store.list_enabled("estimate", "submit") == []

    def test_created_at_breaks_ties(self):
        store = StaticPolicyStore(parse_policies([
            {"id": "old", "flowType": "f", "actionKey": "a", "createdAt": datetime(2024, 1, 1)},
            {"id": "new", "flowType": "f", "actionKey": "a", "createdAt": datetime(2024, 6, 1)},
        ]))

        assert [p.id for p in store.list_enabled("f", "a")] == ["new", "old"]

    def test_from_settings(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(POLICY_YAML)
        settings = Settings(_env_file=None, policies_file=str(path))

        store = StaticPolicyStore.from_settings(settings)

        assert len(store.list_enabled("estimate", "approve")) == 2

    def test_from_settings_without_file(self, settings):
        assert StaticPolicyStore.from_settings(settings).list_enabled("estimate", "approve") == []
