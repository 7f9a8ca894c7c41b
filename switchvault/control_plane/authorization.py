"""
Authorization Gate for SwitchVault

Decides whether a principal may perform an action on a switch key.

Decisions are a pure function of (principal, key, action) against the
policy snapshot the gate was built with. The gate never mutates state and
never mints identities; principals come from the external identity provider.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import jsonschema

from switchvault.core.failures import PolicyConfigError, UnauthorizedError

logger = logging.getLogger(__name__)


ACTION_TOGGLE = "toggle"
ACTION_READ = "read"

VALID_ACTIONS = {ACTION_TOGGLE, ACTION_READ}

WILDCARD_KEY = "*"


@dataclass(frozen=True)
class AuthorizationDecision:
    """Immutable Granted / Denied(reason) result."""
    granted: bool
    reason: str

    @classmethod
    def grant(cls, reason: str = "granted") -> 'AuthorizationDecision':
        return cls(granted=True, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> 'AuthorizationDecision':
        return cls(granted=False, reason=reason)


class AuthorizationPolicy(ABC):
    """A pluggable access rule. Implementations must be side-effect free."""

    name: str = "policy"

    @abstractmethod
    def evaluate(self, principal: str, key: str, action: str) -> AuthorizationDecision:
        ...


class AllowListPolicy(AuthorizationPolicy):
    """
    Principals allowed per key.

    The "*" entry applies to every key. Reads are open to any principal
    unless `restrict_reads` is set.
    """

    name = "allow_list"

    def __init__(self, allowed: Mapping[str, Iterable[str]], restrict_reads: bool = False):
        self._allowed: Dict[str, frozenset] = {k: frozenset(v) for k, v in allowed.items()}
        self.restrict_reads = restrict_reads

    def evaluate(self, principal: str, key: str, action: str) -> AuthorizationDecision:
        if action == ACTION_READ and not self.restrict_reads:
            return AuthorizationDecision.grant("reads are open")

        if principal in self._allowed.get(key, frozenset()):
            return AuthorizationDecision.grant(f"{principal} allow-listed for {key}")
        if principal in self._allowed.get(WILDCARD_KEY, frozenset()):
            return AuthorizationDecision.grant(f"{principal} allow-listed for all keys")

        return AuthorizationDecision.deny(f"{principal} is not allow-listed for {key}")


class RootAuthorityPolicy(AuthorizationPolicy):
    """A single root principal may toggle every key."""

    name = "root_authority"

    def __init__(self, root_principal: str):
        if not root_principal:
            raise PolicyConfigError("root principal must be non-empty")
        self.root_principal = root_principal

    def evaluate(self, principal: str, key: str, action: str) -> AuthorizationDecision:
        if action == ACTION_READ:
            return AuthorizationDecision.grant("reads are open")
        if principal == self.root_principal:
            return AuthorizationDecision.grant("root authority")
        return AuthorizationDecision.deny(f"only root authority may {action} {key}")


class AllowAuthenticatedPolicy(AuthorizationPolicy):
    """
    Any authenticated principal may do anything.

    Development only: it reproduces the implicit trust of a UI where every
    signed-in user can flip the switch.
    """

    name = "allow_authenticated"

    def evaluate(self, principal: str, key: str, action: str) -> AuthorizationDecision:
        return AuthorizationDecision.grant("authenticated principal")


class AuthorizationGate:
    """Validates principals against a policy before any mutation happens."""

    def __init__(self, policy: AuthorizationPolicy):
        self.policy = policy

    def authorize(self, principal: Optional[str], key: str, action: str) -> AuthorizationDecision:
        """Return Granted or Denied(reason). Never raises for a denial."""
        if action not in VALID_ACTIONS:
            return AuthorizationDecision.deny(f"unknown action {action!r}")
        if not principal:
            return AuthorizationDecision.deny("no authenticated principal")

        decision = self.policy.evaluate(principal, key, action)
        if not decision.granted:
            logger.warning(
                "Denied principal=%s key=%s action=%s policy=%s: %s",
                principal, key, action, self.policy.name, decision.reason,
            )
        return decision

    def require(self, principal: Optional[str], key: str, action: str) -> AuthorizationDecision:
        """Like authorize, but raises UnauthorizedError on denial."""
        decision = self.authorize(principal, key, action)
        if not decision.granted:
            raise UnauthorizedError(principal, key, action, decision.reason)
        return decision


# ============================================================================
# Policy files
# ============================================================================

POLICY_SCHEMA = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": ["allow_list", "root_authority", "allow_authenticated"]},
        "root_principal": {"type": "string", "minLength": 1},
        "restrict_reads": {"type": "boolean"},
        "allowed": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {"type": "string", "minLength": 1},
            },
        },
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": "root_authority"}}},
            "then": {"required": ["root_principal"]},
        },
        {
            "if": {"properties": {"type": {"const": "allow_list"}}},
            "then": {"required": ["allowed"]},
        },
    ],
}


def policy_from_dict(data: dict) -> AuthorizationPolicy:
    """Build a policy from its JSON form after schema validation."""
    try:
        jsonschema.validate(instance=data, schema=POLICY_SCHEMA)
    except jsonschema.ValidationError as e:
        raise PolicyConfigError(f"policy schema violation: {e.message}")

    policy_type = data["type"]
    if policy_type == "root_authority":
        return RootAuthorityPolicy(data["root_principal"])
    if policy_type == "allow_list":
        return AllowListPolicy(data["allowed"], restrict_reads=data.get("restrict_reads", False))
    return AllowAuthenticatedPolicy()


def load_policy(path: str) -> AuthorizationPolicy:
    """Load an authorization policy from a JSON file."""
    policy_path = Path(path)
    if not policy_path.exists():
        raise PolicyConfigError(f"policy file not found: {policy_path}")

    try:
        with open(policy_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PolicyConfigError(f"policy file is not valid JSON: {e}")

    policy = policy_from_dict(data)
    logger.info("Loaded %s policy from %s", policy.name, policy_path)
    return policy
