"""Pytest configuration for Lambda tests."""

import os
import sys
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest


# Add the lambdas directory to the Python path
sys.path.insert(0, str(Path(__file__).parent))

from aws_clients import AWSClientInterface  # noqa: E402
from remediation_errors import NotFoundError  # noqa: E402


OLD_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonEC2RoleforSSM"
POLICY_A = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
POLICY_B = "arn:aws:iam::aws:policy/AmazonSSMDirectoryServiceAccess"
POLICY_C = "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy"


def unrelated_policies(count: int) -> list[str]:
    """Return ARNs of customer managed policies unrelated to the remediation."""
    return [f"arn:aws:iam::123456789012:policy/unrelated-{i}" for i in range(count)]


class MockAWSClients(AWSClientInterface):
    """In-memory IAM and AWS Config for testing.

    Records every call in order and raises queued failures on request.
    """

    def __init__(self) -> None:
        """Initialize mock AWS clients."""
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.attachments: dict[tuple[str, str], list[str]] = {}
        self.resources: dict[str, list[dict[str, Any]]] = {}
        self.failures: list[dict[str, Any]] = []

    def add_principal(
        self,
        name: str,
        policies: list[str] | None = None,
        resource_type: str = "Role",
        resource_id: str | None = None,
    ) -> None:
        """Register a principal with its attached policies and Config entry."""
        self.attachments[(resource_type.lower(), name)] = list(policies or [])
        self.resources[resource_id or f"ID-{name}"] = [
            {
                "resourceType": f"AWS::IAM::{resource_type}",
                "resourceId": resource_id or f"ID-{name}",
                "resourceName": name,
            }
        ]

    def attached(self, name: str, resource_type: str = "Role") -> list[str]:
        return self.attachments[(resource_type.lower(), name)]

    def fail_on(
        self,
        operation: str,
        error: Exception,
        policy_arn: str | None = None,
        times: int = 1,
    ) -> None:
        """Raise error from the next `times` calls to operation."""
        self.failures.append(
            {
                "operation": operation,
                "error": error,
                "policy_arn": policy_arn,
                "remaining": times,
            }
        )

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _record(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        for failure in self.failures:
            if failure["operation"] != operation or failure["remaining"] < 1:
                continue
            if failure["policy_arn"] and kwargs.get("PolicyArn") != failure["policy_arn"]:
                continue
            failure["remaining"] -= 1
            raise failure["error"]

    def _policies(self, noun: str, kwargs: dict[str, Any]) -> list[str]:
        name = kwargs[f"{noun.capitalize()}Name"]
        if (noun, name) not in self.attachments:
            raise NotFoundError(
                f"The {noun} with name {name} cannot be found.",
                operation=f"{noun}",
                error_code="NoSuchEntity",
            )
        return self.attachments[(noun, name)]

    def _list(self, noun: str, kwargs: dict[str, Any]) -> Any:
        self._record(f"list_attached_{noun}_policies", kwargs)
        policies = self._policies(noun, kwargs)
        start = int(kwargs.get("Marker") or 0)
        end = start + kwargs.get("MaxItems", 100)
        response: dict[str, Any] = {
            "AttachedPolicies": [
                {"PolicyName": arn.rsplit("/", 1)[-1], "PolicyArn": arn}
                for arn in policies[start:end]
            ],
            "IsTruncated": end < len(policies),
        }
        if response["IsTruncated"]:
            response["Marker"] = str(end)
        return response

    def _attach(self, noun: str, kwargs: dict[str, Any]) -> Any:
        self._record(f"attach_{noun}_policy", kwargs)
        policies = self._policies(noun, kwargs)
        if kwargs["PolicyArn"] not in policies:
            policies.append(kwargs["PolicyArn"])
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    def _detach(self, noun: str, kwargs: dict[str, Any]) -> Any:
        self._record(f"detach_{noun}_policy", kwargs)
        policies = self._policies(noun, kwargs)
        if kwargs["PolicyArn"] not in policies:
            raise NotFoundError(
                f"Policy {kwargs['PolicyArn']} was not found.",
                operation=f"detach_{noun}_policy",
                error_code="NoSuchEntity",
            )
        policies.remove(kwargs["PolicyArn"])
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    def list_discovered_resources(self, **kwargs: Any) -> Any:
        self._record("list_discovered_resources", kwargs)
        identifiers = []
        for resource_id in kwargs.get("resourceIds", []):
            identifiers.extend(
                r
                for r in self.resources.get(resource_id, [])
                if r["resourceType"] == kwargs.get("resourceType")
            )
        return {"resourceIdentifiers": identifiers}

    def list_attached_role_policies(self, **kwargs: Any) -> Any:
        return self._list("role", kwargs)

    def list_attached_user_policies(self, **kwargs: Any) -> Any:
        return self._list("user", kwargs)

    def list_attached_group_policies(self, **kwargs: Any) -> Any:
        return self._list("group", kwargs)

    def attach_role_policy(self, **kwargs: Any) -> Any:
        return self._attach("role", kwargs)

    def attach_user_policy(self, **kwargs: Any) -> Any:
        return self._attach("user", kwargs)

    def attach_group_policy(self, **kwargs: Any) -> Any:
        return self._attach("group", kwargs)

    def detach_role_policy(self, **kwargs: Any) -> Any:
        return self._detach("role", kwargs)

    def detach_user_policy(self, **kwargs: Any) -> Any:
        return self._detach("user", kwargs)

    def detach_group_policy(self, **kwargs: Any) -> Any:
        return self._detach("group", kwargs)


@pytest.fixture
def mock_aws_clients():
    """Mock AWS clients."""
    return MockAWSClients()


@pytest.fixture(autouse=True)
def mock_boto3():
    """Block new boto3 imports so no test reaches AWS."""
    with patch.dict("sys.modules", {"boto3": None, "botocore": None}):
        yield


@pytest.fixture
def clean_environment():
    """Provide a clean environment for testing."""
    original_env = os.environ.copy()
    # Clear AWS-related and remediation environment variables
    aws_vars = [
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AWS_PROFILE",
        "AWS_REGION",
        "POLICY_TO_REMOVE",
        "NEW_POLICIES",
        "RESOURCE_TYPE",
        "AUTOMATION_ASSUME_ROLE",
        "MAX_ATTEMPTS",
        "RETRY_DELAY_SECONDS",
        "PAGE_SIZE",
        "DRY_RUN",
        "EXCEPTION_LIST",
    ]

    for var in aws_vars:
        os.environ.pop(var, None)

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
