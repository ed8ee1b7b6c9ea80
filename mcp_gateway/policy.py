"""
Role-based authorization of tool calls.

Policy is deny-by-default: a call is allowed only when some rule for one of
the caller's principals matches the tool and, for namespace-scoped rules,
the call's namespace argument. A `role:` rule only matches the token's
roles and a `user:` rule only matches its `sub`, so a role named like a
user never inherits that user's grants.

Policy file (YAML or JSON), e.g. config/policy.yaml:

    namespace_argument: namespace
    anonymous:
      enabled: false
      role: anonymous
    rules:
      - role: viewer
        tools: ["diagnose_*", "list_pods"]
        namespaces: ["default"]
      - role: operator
        tools: ["k8s:*"]          # capability tags match too
      - user: ci-agent
        tools: ["hello_world"]

Rule patterns are either exact or end in a single trailing "*", and are
compared against the tool name and the tool's capability tag.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mcp_gateway.auth import Claims
from mcp_gateway.config import ConfigError, ConfigErrorKind
from mcp_gateway.registry import ToolDescriptor

logger = logging.getLogger("mcp_gateway.policy")

NO_MATCHING_RULE = "no matching rule"


def pattern_matches(pattern: str, value: str) -> bool:
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return pattern == value


class PrincipalKind(str, Enum):
    """What a rule's subject_or_role is compared against."""

    ROLE = "role"
    USER = "user"
    # Rules built in code without a kind match either.
    ANY = "any"


@dataclass(frozen=True)
class AuthorizationRule:
    """Grants tools matching tool_pattern, optionally only in some namespaces."""

    subject_or_role: str
    tool_pattern: str
    allowed_namespaces: frozenset[str] | None = None
    principal_kind: PrincipalKind = PrincipalKind.ANY

    def applies_to(self, subject: str, roles: frozenset[str]) -> bool:
        if self.principal_kind is PrincipalKind.ROLE:
            return self.subject_or_role in roles
        if self.principal_kind is PrincipalKind.USER:
            return self.subject_or_role == subject
        return self.subject_or_role == subject or self.subject_or_role in roles

    def matches_tool(self, tool_name: str, capability: str | None = None) -> bool:
        if pattern_matches(self.tool_pattern, tool_name):
            return True
        return bool(capability) and pattern_matches(self.tool_pattern, capability)


@dataclass(frozen=True)
class PolicySet:
    """An immutable, ordered set of rules plus the file-level options."""

    rules: tuple[AuthorizationRule, ...] = ()
    namespace_argument: str = "namespace"
    anonymous_enabled: bool = False
    anonymous_role: str = "anonymous"


@dataclass(frozen=True)
class Decision:
    """Result of authorize(); reason is logged and returned to the caller."""

    allowed: bool
    reason: str = ""
    rule: AuthorizationRule | None = None

    @classmethod
    def allow(cls, rule: AuthorizationRule) -> "Decision":
        return cls(allowed=True, reason="allowed", rule=rule)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)


def caller_roles(claims: Claims, policy: PolicySet) -> frozenset[str]:
    """Token roles, or the anonymous role for a role-less caller when enabled."""
    if not claims.roles and policy.anonymous_enabled:
        return frozenset({policy.anonymous_role})
    return frozenset(claims.roles)


def authorize(
    claims: Claims,
    tool_name: str,
    arguments: Mapping[str, Any],
    policy: PolicySet,
    *,
    capability: str | None = None,
) -> Decision:
    """
    Decide whether the caller may invoke tool_name with these arguments.

    Pure function of its inputs. Rules are scanned in order and the first
    rule that allows the call wins; a rule that matches the tool but not the
    namespace does not stop the scan, since a later rule may still allow it.
    """
    roles = caller_roles(claims, policy)
    namespace_reason = None

    for rule in policy.rules:
        if not rule.applies_to(claims.subject, roles):
            continue
        if not rule.matches_tool(tool_name, capability):
            continue
        if rule.allowed_namespaces is None:
            return Decision.allow(rule)

        namespace = arguments.get(policy.namespace_argument)
        if isinstance(namespace, str) and namespace in rule.allowed_namespaces:
            return Decision.allow(rule)
        if namespace is None:
            namespace_reason = (
                f"argument '{policy.namespace_argument}' is required for tool '{tool_name}'"
            )
        else:
            namespace_reason = f"namespace '{namespace}' is not permitted for tool '{tool_name}'"

    return Decision.deny(namespace_reason or NO_MATCHING_RULE)


def visible_tools(
    claims: Claims, tools: Iterable[ToolDescriptor], policy: PolicySet
) -> list[ToolDescriptor]:
    """Tools the caller could call in at least one namespace, for tools/list."""
    roles = caller_roles(claims, policy)
    rules = [r for r in policy.rules if r.applies_to(claims.subject, roles)]
    return [
        tool
        for tool in tools
        if any(r.matches_tool(tool.name, tool.required_capability) for r in rules)
    ]


# ---------------------------------------------------------------------------
# Policy file loading
# ---------------------------------------------------------------------------


class _RuleEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str | None = None
    user: str | None = None
    tools: list[str] = Field(min_length=1)
    namespaces: list[str] | None = None

    @model_validator(mode="after")
    def _one_principal(self) -> "_RuleEntry":
        if (self.role is None) == (self.user is None):
            raise ValueError("each rule needs exactly one of 'role' or 'user'")
        for pattern in self.tools:
            if not pattern or "*" in pattern[:-1]:
                raise ValueError(f"invalid tool pattern {pattern!r}: only a trailing '*' is allowed")
        return self


class _AnonymousEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    role: str = "anonymous"


class _PolicyDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace_argument: str = "namespace"
    anonymous: _AnonymousEntry = Field(default_factory=_AnonymousEntry)
    rules: list[_RuleEntry] = Field(default_factory=list)


def parse_policy(document: Any) -> PolicySet:
    """Build a PolicySet from a decoded policy document."""
    try:
        parsed = _PolicyDocument.model_validate(document or {})
    except ValidationError as e:
        raise ConfigError(ConfigErrorKind.INVALID_POLICY, f"Invalid policy: {e}") from e

    rules = []
    for entry in parsed.rules:
        if entry.role is not None:
            principal, kind = entry.role, PrincipalKind.ROLE
        else:
            principal, kind = entry.user, PrincipalKind.USER
        namespaces = frozenset(entry.namespaces) if entry.namespaces is not None else None
        for pattern in entry.tools:
            rules.append(
                AuthorizationRule(
                    subject_or_role=principal,
                    tool_pattern=pattern,
                    allowed_namespaces=namespaces,
                    principal_kind=kind,
                )
            )

    return PolicySet(
        rules=tuple(rules),
        namespace_argument=parsed.namespace_argument,
        anonymous_enabled=parsed.anonymous.enabled,
        anonymous_role=parsed.anonymous.role,
    )


def load_policy(path: Path) -> PolicySet:
    """Read a YAML (or .json) policy file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(ConfigErrorKind.INVALID_POLICY, f"Cannot read policy file {path}: {e}") from e

    try:
        if Path(path).suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(ConfigErrorKind.INVALID_POLICY, f"Cannot parse policy file {path}: {e}") from e

    return parse_policy(document)


class PolicyStore:
    """
    Holds the active PolicySet.

    Requests read `current` once and evaluate against that snapshot, so a
    reload never mixes old and new rules within one decision.
    """

    def __init__(self, policy: PolicySet, source: Path | None = None):
        self._policy = policy
        self._source = source

    @classmethod
    def from_file(cls, path: Path) -> "PolicyStore":
        return cls(load_policy(path), source=path)

    @property
    def current(self) -> PolicySet:
        return self._policy

    def replace(self, policy: PolicySet) -> None:
        self._policy = policy
        logger.info(
            "Authorization policy replaced",
            extra={"event_data": {"rules": len(policy.rules)}},
        )

    def reload(self) -> PolicySet:
        """
        Re-read the source file and swap it in.

        A file that fails to load leaves the active policy untouched.
        """
        if self._source is None:
            raise ConfigError(ConfigErrorKind.INVALID_POLICY, "Policy store has no source file")
        policy = load_policy(self._source)
        self.replace(policy)
        return policy


class AuthorizationEvaluator:
    """Evaluates calls against whatever policy the store currently holds."""

    def __init__(self, store: PolicyStore):
        self._store = store

    @property
    def store(self) -> PolicyStore:
        return self._store

    def authorize(
        self,
        claims: Claims,
        tool_name: str,
        arguments: Mapping[str, Any],
        *,
        capability: str | None = None,
    ) -> Decision:
        return authorize(claims, tool_name, arguments, self._store.current, capability=capability)

    def visible_tools(self, claims: Claims, tools: Iterable[ToolDescriptor]) -> list[ToolDescriptor]:
        return visible_tools(claims, tools, self._store.current)
