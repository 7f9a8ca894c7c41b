"""
Authorization Gate Tests.

Decisions are pure functions of (principal, key, action) against a policy.
"""

import json

import pytest

from switchvault.control_plane.authorization import (
    ACTION_READ,
    ACTION_TOGGLE,
    AllowAuthenticatedPolicy,
    AllowListPolicy,
    AuthorizationGate,
    RootAuthorityPolicy,
    load_policy,
    policy_from_dict,
)
from switchvault.core.failures import PolicyConfigError, UnauthorizedError


class TestAllowListPolicy:
    """Tests for per-key allow lists."""

    @pytest.fixture
    def gate(self):
        return AuthorizationGate(AllowListPolicy({
            "global": ["principalA", "principalB"],
            "*": ["ops-lead"],
        }))

    def test_listed_principal_granted(self, gate):
        decision = gate.authorize("principalA", "global", ACTION_TOGGLE)
        assert decision.granted is True

    def test_unlisted_principal_denied_with_reason(self, gate):
        decision = gate.authorize("principalC", "global", ACTION_TOGGLE)

        assert decision.granted is False
        assert "principalC" in decision.reason

    def test_wildcard_applies_to_every_key(self, gate):
        assert gate.authorize("ops-lead", "payments", ACTION_TOGGLE).granted is True

    def test_listing_is_per_key(self, gate):
        assert gate.authorize("principalA", "payments", ACTION_TOGGLE).granted is False

    def test_reads_open_by_default(self, gate):
        assert gate.authorize("anyone", "global", ACTION_READ).granted is True

    def test_restricted_reads(self):
        gate = AuthorizationGate(AllowListPolicy({"global": ["a"]}, restrict_reads=True))

        assert gate.authorize("a", "global", ACTION_READ).granted is True
        assert gate.authorize("b", "global", ACTION_READ).granted is False

    def test_decisions_are_pure(self, gate):
        """Same inputs, same decision, no matter how often asked."""
        decisions = {gate.authorize("principalC", "global", ACTION_TOGGLE) for _ in range(10)}
        assert len(decisions) == 1


class TestRootAuthorityPolicy:

    def test_only_root_may_toggle(self):
        gate = AuthorizationGate(RootAuthorityPolicy("root"))

        assert gate.authorize("root", "global", ACTION_TOGGLE).granted is True
        assert gate.authorize("root", "anything", ACTION_TOGGLE).granted is True
        assert gate.authorize("alice", "global", ACTION_TOGGLE).granted is False

    def test_empty_root_rejected(self):
        with pytest.raises(PolicyConfigError):
            RootAuthorityPolicy("")


class TestGateGuards:
    """Gate-level checks that apply to every policy."""

    def test_missing_principal_denied(self):
        gate = AuthorizationGate(AllowAuthenticatedPolicy())

        assert gate.authorize(None, "global", ACTION_TOGGLE).granted is False
        assert gate.authorize("", "global", ACTION_TOGGLE).granted is False

    def test_unknown_action_denied(self):
        gate = AuthorizationGate(AllowAuthenticatedPolicy())
        assert gate.authorize("alice", "global", "delete").granted is False

    def test_require_raises_unauthorized(self):
        gate = AuthorizationGate(RootAuthorityPolicy("root"))

        with pytest.raises(UnauthorizedError) as exc_info:
            gate.require("alice", "global", ACTION_TOGGLE)

        assert exc_info.value.error_name == "Unauthorized"
        assert exc_info.value.principal == "alice"
        assert exc_info.value.key == "global"


class TestPolicyFiles:
    """Policies load from schema-validated JSON."""

    def test_load_allow_list(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"type": "allow_list", "allowed": {"global": ["a"]}}))

        policy = load_policy(str(path))

        assert isinstance(policy, AllowListPolicy)
        assert policy.evaluate("a", "global", ACTION_TOGGLE).granted is True

    def test_load_root_authority(self):
        policy = policy_from_dict({"type": "root_authority", "root_principal": "root"})
        assert isinstance(policy, RootAuthorityPolicy)

    def test_root_authority_requires_principal(self):
        with pytest.raises(PolicyConfigError):
            policy_from_dict({"type": "root_authority"})

    def test_unknown_type_rejected(self):
        with pytest.raises(PolicyConfigError):
            policy_from_dict({"type": "everyone_is_admin"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(PolicyConfigError):
            load_policy(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text("{not json")

        with pytest.raises(PolicyConfigError):
            load_policy(str(path))
