#!/usr/bin/env python3
"""IAM Policy Remediation Data Model.

This module defines the principals, policy references, attachment pages,
requests and results exchanged between the resolver, enumerator, remediator
and workflow controller.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from remediation_errors import ConfigurationError


class ResourceType(str, Enum):
    """IAM principal kinds that can carry managed policies."""

    ROLE = "Role"
    USER = "User"
    GROUP = "Group"

    @classmethod
    def parse(cls, value: "str | ResourceType") -> "ResourceType":
        """Parse "Role", "role" or "AWS::IAM::Role" style values.

        Raises:
            ConfigurationError: If the value names no supported type.
        """
        if isinstance(value, ResourceType):
            return value
        name = str(value or "").strip()
        if name.startswith("AWS::IAM::"):
            name = name[len("AWS::IAM::") :]
        for member in cls:
            if member.value.lower() == name.lower():
                return member
        raise ConfigurationError(f"Unsupported resource type: {value!r}")

    @property
    def config_resource_type(self) -> str:
        """AWS Config resource type, e.g. AWS::IAM::Role."""
        return f"AWS::IAM::{self.value}"

    @property
    def api_noun(self) -> str:
        """Noun used in IAM API names, e.g. attach_role_policy."""
        return self.value.lower()

    @property
    def name_parameter(self) -> str:
        """IAM request parameter naming the principal, e.g. RoleName."""
        return f"{self.value}Name"


@dataclass(frozen=True)
class PolicyReference:
    """Immutable handle to a managed policy."""

    arn: str

    def __str__(self) -> str:
        return self.arn


@dataclass(frozen=True)
class Principal:
    """A role, user or group resolved for a single remediation request."""

    name: str
    resource_type: ResourceType

    def api_kwargs(self) -> dict[str, str]:
        """IAM request parameters identifying this principal."""
        return {self.resource_type.name_parameter: self.name}


@dataclass(frozen=True)
class AttachmentPage:
    """One page of the managed policies attached to a principal."""

    items: tuple[PolicyReference, ...]
    is_truncated: bool = False
    continuation_marker: str | None = None

    def __contains__(self, policy: object) -> bool:
        return policy in self.items


def parse_policy_list(value: Any) -> list[PolicyReference]:
    """Parse a comma separated string or a list of ARNs.

    Entries are stripped, blank entries dropped and duplicates removed while
    keeping the first occurrence.
    """
    if value is None:
        return []
    if isinstance(value, str):
        raw_items = value.split(",")
    else:
        raw_items = []
        for item in value:
            # StringList parameters may still arrive as "a,b" elements
            raw_items.extend(str(item).split(","))

    policies: list[PolicyReference] = []
    for item in raw_items:
        arn = item.strip()
        if arn and PolicyReference(arn) not in policies:
            policies.append(PolicyReference(arn))
    return policies


def validate_policy_configuration(
    policy_to_remove: PolicyReference | None,
    new_policies: "list[PolicyReference] | tuple[PolicyReference, ...]",
) -> None:
    """Check the replacement configuration before anything touches AWS.

    Raises:
        ConfigurationError: If the policy to remove is missing, no replacement
            policies are given, or the replacements include the policy to remove.
    """
    if policy_to_remove is None or not policy_to_remove.arn.strip():
        raise ConfigurationError("policy_to_remove is required")
    if not new_policies:
        raise ConfigurationError("At least one new policy is required")
    if policy_to_remove in new_policies:
        raise ConfigurationError(
            f"New policies must not include the policy being removed: "
            f"{policy_to_remove.arn}"
        )


_EXCEPTION_GROUP_RE = re.compile(r"(\w+)\s*:\s*\[([^\]]*)\]")
_EXCEPTION_KEYS = {
    "roles": ResourceType.ROLE,
    "users": ResourceType.USER,
    "groups": ResourceType.GROUP,
}


@dataclass
class ExceptionList:
    """Principals excluded from remediation.

    Parsed from the "users:[user1;user2], groups:[group1], roles:[role1;role2]"
    format; names may be fnmatch patterns.
    """

    patterns: dict[ResourceType, list[str]] = field(default_factory=dict)

    @classmethod
    def parse(cls, value: str | None) -> "ExceptionList":
        """Parse the exception list string.

        Raises:
            ConfigurationError: If a group names an unknown resource kind.
        """
        value = value or ""
        leftover = _EXCEPTION_GROUP_RE.sub("", value).replace(",", "").strip()
        if leftover:
            raise ConfigurationError(
                f"Malformed exception list {value!r}: expected "
                f"'users:[a;b], groups:[c], roles:[d]', could not parse {leftover!r}"
            )

        patterns: dict[ResourceType, list[str]] = {}
        for key, names in _EXCEPTION_GROUP_RE.findall(value):
            resource_type = _EXCEPTION_KEYS.get(key.lower())
            if resource_type is None:
                raise ConfigurationError(f"Unknown exception list key: {key!r}")
            entries = [n.strip() for n in names.split(";") if n.strip()]
            patterns.setdefault(resource_type, []).extend(entries)
        return cls(patterns=patterns)

    def matches(self, principal: Principal) -> str | None:
        """Return the pattern excluding the principal, or None."""
        for pattern in self.patterns.get(principal.resource_type, []):
            if fnmatch.fnmatch(principal.name, pattern):
                return pattern
        return None

    def __bool__(self) -> bool:
        return any(self.patterns.values())


@dataclass(frozen=True)
class RemediationRequest:
    """The unit of work for one remediation invocation."""

    resource_id: str
    resource_type: ResourceType
    policy_to_remove: PolicyReference
    new_policies: tuple[PolicyReference, ...]
    execution_credentials: str | None = None

    @classmethod
    def create(
        cls,
        resource_id: str,
        resource_type: "str | ResourceType",
        policy_to_remove: str,
        new_policies: Any,
        execution_credentials: str | None = None,
    ) -> "RemediationRequest":
        """Build and validate a request from raw parameters.

        Raises:
            ConfigurationError: If any parameter is missing or inconsistent.
        """
        if not resource_id or not str(resource_id).strip():
            raise ConfigurationError("resource_id is required")
        policy = PolicyReference(str(policy_to_remove or "").strip())
        policies = parse_policy_list(new_policies)
        validate_policy_configuration(policy, policies)
        return cls(
            resource_id=str(resource_id).strip(),
            resource_type=ResourceType.parse(resource_type),
            policy_to_remove=policy,
            new_policies=tuple(policies),
            execution_credentials=execution_credentials or None,
        )


@dataclass
class RemediationResult:
    """Outcome of a remediation that did not abort."""

    principal_name: str
    attached_policies: list[PolicyReference]
    detached_old_policy: bool
    resource_type: ResourceType | None = None
    dry_run: bool = False
    skipped: bool = False
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        """Render the result for the invoking orchestrator."""
        return {
            "principalName": self.principal_name,
            "resourceType": self.resource_type.value if self.resource_type else None,
            "attachedPolicies": [p.arn for p in self.attached_policies],
            "detachedOldPolicy": self.detached_old_policy,
            "dryRun": self.dry_run,
            "skipped": self.skipped,
            "timestamp": self.timestamp,
        }
