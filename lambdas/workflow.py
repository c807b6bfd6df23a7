#!/usr/bin/env python3
"""IAM Policy Replacement Workflow.

This module can be run both as an AWS Lambda function (or automation script
step) and locally for testing. A remediation request moves through two
states, resolving the scanner's resource id and then remediating the
principal, with bounded retries for transient failures and an immediate
abort on anything else.
"""

import argparse
import json
import os
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import yaml
from aws_clients import (
    AWSClientInterface,
    AWSClients,
    log_level_from_env,
    setup_logging,
)
from policy_enumerator import DEFAULT_PAGE_SIZE, PolicyEnumerator
from remediation_errors import (
    PHASE_RESOLVE,
    ConfigurationError,
    NotFoundError,
    RemediationError,
    TransientAPIError,
)
from remediation_models import (
    ExceptionList,
    Principal,
    RemediationRequest,
    RemediationResult,
    parse_policy_list,
    validate_policy_configuration,
)
from remediator import PolicyRemediator
from resource_resolver import ResourceResolver

logger = setup_logging(log_level_from_env(), __name__)

T = TypeVar("T")

MODULE_LOGGERS = (
    "aws_clients",
    "policy_enumerator",
    "resource_resolver",
    "remediator",
    "workflow",
)

DEFAULT_POLICY_TO_REMOVE = "arn:aws:iam::aws:policy/service-role/AmazonEC2RoleforSSM"
DEFAULT_NEW_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
    "arn:aws:iam::aws:policy/AmazonSSMDirectoryServiceAccess",
    "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy",
]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _first_value(value: Any) -> Any:
    """Unwrap single-element lists sent for String automation parameters."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _event_value(event: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if event.get(key) not in (None, "", []):
            return event[key]
    return None


@dataclass
class RemediationConfig:
    """Operator-supplied configuration for the remediation."""

    policy_to_remove: str = ""
    new_policies: list[str] = field(default_factory=list)
    resource_type: str = "Role"
    assume_role_arn: str | None = None
    region: str | None = None
    max_attempts: int = 2
    retry_delay_seconds: float = 1.0
    page_size: int = DEFAULT_PAGE_SIZE
    dry_run: bool = False
    exception_list: str = ""

    def __post_init__(self) -> None:
        """Normalize policies and coerce settings loaded as strings.

        Raises:
            ConfigurationError: If a numeric setting cannot be converted.
        """
        self.new_policies = [p.arn for p in parse_policy_list(self.new_policies)]
        self.policy_to_remove = str(self.policy_to_remove or "").strip()
        self.resource_type = str(self.resource_type or "Role").strip()
        self.exception_list = str(self.exception_list or "")
        try:
            self.max_attempts = int(self.max_attempts)
            self.page_size = int(self.page_size)
            self.retry_delay_seconds = float(self.retry_delay_seconds)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting: {e!s}") from e
        self.dry_run = _parse_bool(self.dry_run)

    @classmethod
    def from_env(cls) -> "RemediationConfig":
        """Create config from environment variables."""
        return cls(
            policy_to_remove=os.environ.get("POLICY_TO_REMOVE", ""),
            new_policies=os.environ.get("NEW_POLICIES", ""),
            resource_type=os.environ.get("RESOURCE_TYPE", "Role"),
            assume_role_arn=os.environ.get("AUTOMATION_ASSUME_ROLE") or None,
            region=os.environ.get("AWS_REGION") or None,
            max_attempts=os.environ.get("MAX_ATTEMPTS", "2"),
            retry_delay_seconds=os.environ.get("RETRY_DELAY_SECONDS", "1.0"),
            page_size=os.environ.get("PAGE_SIZE", str(DEFAULT_PAGE_SIZE)),
            dry_run=os.environ.get("DRY_RUN", "false"),
            exception_list=os.environ.get("EXCEPTION_LIST", ""),
        )

    @classmethod
    def from_dict(cls, config_dict: dict) -> "RemediationConfig":
        """Create config from dictionary.

        Raises:
            ConfigurationError: If the dictionary has unknown keys.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**config_dict)

    @classmethod
    def from_file(cls, path: str | Path) -> "RemediationConfig":
        """Create config from a YAML (or JSON) file."""
        try:
            with Path(path).open() as f:
                config_dict = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Cannot read configuration file {path}: {e!s}"
            ) from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration file {path} must hold a mapping")
        return cls.from_dict(config_dict)

    def with_event(self, event: dict[str, Any]) -> "RemediationConfig":
        """Return a copy overridden by automation parameters in the event."""
        overrides: dict[str, Any] = {}
        policy_to_remove = _first_value(_event_value(event, "PolicyToRemove"))
        if policy_to_remove:
            overrides["policy_to_remove"] = policy_to_remove
        new_policies = _event_value(event, "NewPolicies", "newPolicies")
        if new_policies:
            overrides["new_policies"] = new_policies
        resource_type = _first_value(_event_value(event, "ResourceType", "resourceType"))
        if resource_type:
            overrides["resource_type"] = resource_type
        assume_role = _first_value(_event_value(event, "AutomationAssumeRole"))
        if assume_role:
            overrides["assume_role_arn"] = assume_role
        if "DryRun" in event:
            overrides["dry_run"] = _parse_bool(_first_value(event["DryRun"]))
        return replace(self, **overrides)

    def validate(self) -> None:
        """Validate settings before any network call.

        Raises:
            ConfigurationError: If any setting is missing or out of range.
        """
        if not self.policy_to_remove:
            raise ConfigurationError("policy_to_remove is required")
        if self.policy_to_remove in self.new_policies:
            raise ConfigurationError(
                f"New policies must not include the policy being removed: "
                f"{self.policy_to_remove}"
            )
        if not self.new_policies:
            raise ConfigurationError("At least one new policy is required")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("retry_delay_seconds must not be negative")
        if not 1 <= self.page_size <= 1000:
            raise ConfigurationError("page_size must be between 1 and 1000")
        ExceptionList.parse(self.exception_list)

    def build_request(self, resource_id: str | None) -> RemediationRequest:
        """Validate the config and build the request for one resource id."""
        self.validate()
        return RemediationRequest.create(
            resource_id=resource_id or "",
            resource_type=self.resource_type,
            policy_to_remove=self.policy_to_remove,
            new_policies=self.new_policies,
            execution_credentials=self.assume_role_arn,
        )


class WorkflowState(str, Enum):
    """States of a single remediation request."""

    RESOLVING = "RESOLVING"
    REMEDIATING = "REMEDIATING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    ABORTED = "ABORTED"


class WorkflowController:
    """Runs resolve then remediate for one request at a time.

    The controller keeps no per-request state between runs, so one instance
    may serve concurrent requests for different principals. Requests for the
    same principal are not serialized.
    """

    def __init__(
        self,
        aws_clients: AWSClientInterface,
        max_attempts: int = 2,
        retry_delay_seconds: float = 1.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        dry_run: bool = False,
        exception_list: ExceptionList | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the controller.

        Args:
            aws_clients: Client handle shared by the resolver and remediator.
            max_attempts: Attempt ceiling per state for transient failures.
            retry_delay_seconds: Pause between attempts.
            page_size: Page size for attachment listings.
            dry_run: Log mutations instead of making them.
            exception_list: Principals that are resolved but never remediated.
            sleep: Sleep function, replaceable in tests.
        """
        if max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.exception_list = exception_list or ExceptionList()
        self.sleep = sleep
        self.resolver = ResourceResolver(aws_clients)
        self.remediator = PolicyRemediator(
            aws_clients,
            enumerator=PolicyEnumerator(aws_clients, page_size=page_size),
            dry_run=dry_run,
        )

    @classmethod
    def from_config(
        cls, aws_clients: AWSClientInterface, config: RemediationConfig
    ) -> "WorkflowController":
        """Create a controller from a RemediationConfig."""
        return cls(
            aws_clients,
            max_attempts=config.max_attempts,
            retry_delay_seconds=config.retry_delay_seconds,
            page_size=config.page_size,
            dry_run=config.dry_run,
            exception_list=ExceptionList.parse(config.exception_list),
        )

    def run(
        self, request: RemediationRequest, principal_name: str | None = None
    ) -> RemediationResult:
        """Resolve the request's principal and remediate it.

        Args:
            request: The remediation request.
            principal_name: Name of an already resolved principal. When
                given, the Config lookup is skipped.

        Returns:
            RemediationResult: The outcome on COMPLETED or SKIPPED.

        Raises:
            RemediationError: On ABORTED; the error records the state it
            aborted in, the last completed phase and the attempts made.
        """
        state = WorkflowState.RESOLVING
        last_completed: str | None = None
        try:
            validate_policy_configuration(
                request.policy_to_remove, request.new_policies
            )
            if principal_name:
                logger.info(
                    f"{request.resource_id}: principal name supplied, "
                    f"skipping resource lookup"
                )
                name = principal_name
            else:
                name = self._with_retries(
                    state,
                    lambda: self.resolver.resolve(
                        request.resource_id, request.resource_type
                    ),
                )
            last_completed = PHASE_RESOLVE
            principal = Principal(name=name, resource_type=request.resource_type)

            pattern = self.exception_list.matches(principal)
            if pattern:
                logger.warning(
                    f"{principal.resource_type.value} {principal.name} matches "
                    f"exception pattern '{pattern}'. Skipping remediation."
                )
                self._transition(state, WorkflowState.SKIPPED, request)
                return RemediationResult(
                    principal_name=principal.name,
                    attached_policies=[],
                    detached_old_policy=False,
                    resource_type=principal.resource_type,
                    dry_run=self.remediator.dry_run,
                    skipped=True,
                )

            state = self._transition(state, WorkflowState.REMEDIATING, request)
            result = self._with_retries(
                state,
                lambda: self.remediator.remediate(
                    principal, request.policy_to_remove, list(request.new_policies)
                ),
            )
            self._transition(state, WorkflowState.COMPLETED, request)
            return result

        except RemediationError as e:
            e.aborted_state = state.value
            if e.last_completed_phase is None:
                e.last_completed_phase = last_completed
            self._transition(state, WorkflowState.ABORTED, request)
            logger.error(
                f"Remediation of {request.resource_id} aborted in {state.value} "
                f"({type(e).__name__}, phase={e.phase}, "
                f"last completed={e.last_completed_phase}): {e!s}"
            )
            raise

    def _with_retries(self, state: WorkflowState, operation: Callable[[], T]) -> T:
        """Run operation, retrying TransientAPIError up to max_attempts."""
        attempt = 1
        while True:
            try:
                return operation()
            except TransientAPIError as e:
                e.attempts = attempt
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{state.value} failed after {attempt} attempt(s): {e!s}"
                    )
                    raise
                logger.warning(
                    f"{state.value} attempt {attempt} of {self.max_attempts} "
                    f"failed: {e!s}. Retrying."
                )
                if self.retry_delay_seconds > 0:
                    self.sleep(self.retry_delay_seconds)
                attempt += 1
            except RemediationError as e:
                e.attempts = attempt
                raise

    @staticmethod
    def _transition(
        current: WorkflowState, new: WorkflowState, request: RemediationRequest
    ) -> WorkflowState:
        logger.info(f"{request.resource_id}: {current.value} -> {new.value}")
        return new


def _run_event(event: dict[str, Any]) -> RemediationResult:
    """Build config, credentials and controller for one event and run it.

    Events carry either the automation parameters (ResourceId, ...) or an
    already resolved roleName, which skips the Config lookup.
    """
    config = RemediationConfig.from_env().with_event(event)
    resource_id = _first_value(_event_value(event, "ResourceId", "resourceId"))
    role_name = None
    if not resource_id:
        role_name = _first_value(_event_value(event, "roleName", "RoleName"))
        if role_name:
            config = replace(config, resource_type="Role")
    request = config.build_request(resource_id or role_name)

    aws_clients = AWSClients.from_credentials(
        request.execution_credentials, region=config.region
    )
    controller = WorkflowController.from_config(aws_clients, config)
    return controller.run(request, principal_name=role_name)


# Lambda handler function
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    """AWS Lambda handler - thin wrapper around business logic.

    Args:
        event: Automation parameters (ResourceId, PolicyToRemove, NewPolicies,
            optional ResourceType and AutomationAssumeRole).
        _context: The context of the event (unused).

    Returns:
        Dict[str, Any]: The remediation result, or the error that aborted it.
    """
    try:
        result = _run_event(event)
        action = "Skipped" if result.skipped else "Remediated"
        return {
            "statusCode": 200,
            "body": f"{action} {result.principal_name}",
            "result": result.to_dict(),
        }

    except RemediationError as e:
        logger.error(f"Remediation failed: {e!s}", exc_info=True)
        return {"statusCode": 500, "body": f"Error: {e!s}", "error": e.to_dict()}

    except Exception as e:
        logger.error(f"Error in lambda_handler: {e!s}", exc_info=True)
        return {"statusCode": 500, "body": f"Error: {e!s}"}


def replace_old_policies(events: dict[str, Any], _context: Any) -> dict[str, Any]:
    """Automation script step handler.

    Unlike lambda_handler this raises on failure so the automation step is
    marked failed and the orchestrator can retry or abort it.
    """
    return _run_event(events).to_dict()


# Local execution support
def create_sample_event() -> dict:
    """Create a sample automation event for testing.

    Returns:
        Dict: A sample remediation event.
    """
    return {
        "ResourceId": "AROAEXAMPLEROLEID0001",
        "ResourceType": "AWS::IAM::Role",
        "PolicyToRemove": DEFAULT_POLICY_TO_REMOVE,
        "NewPolicies": list(DEFAULT_NEW_POLICIES),
    }


class LocalAWSClients(AWSClientInterface):
    """In-memory AWS clients for local runs without credentials.

    Every resource id resolves to a principal of the same name, and every
    principal starts with only the policy to remove attached.
    """

    def __init__(self, policy_to_remove: str) -> None:
        self.policy_to_remove = policy_to_remove
        self.attachments: dict[str, list[str]] = {}
        self.logger = logger
        self.logger.info("Using mock AWS clients for local testing")

    def _policies(self, name: str) -> list[str]:
        return self.attachments.setdefault(name, [self.policy_to_remove])

    def _principal_name(self, kwargs: dict[str, Any]) -> str:
        for key in ("RoleName", "UserName", "GroupName"):
            if key in kwargs:
                return kwargs[key]
        raise NotFoundError("No principal name in request", "Local", "NoSuchEntity")

    def _list(self, **kwargs: Any) -> Any:
        self.logger.info(f"MOCK: list_attached_policies({kwargs})")
        policies = self._policies(self._principal_name(kwargs))
        start = int(kwargs.get("Marker") or 0)
        end = start + kwargs.get("MaxItems", DEFAULT_PAGE_SIZE)
        response: dict[str, Any] = {
            "AttachedPolicies": [
                {"PolicyArn": arn, "PolicyName": arn.rsplit("/", 1)[-1]}
                for arn in policies[start:end]
            ],
            "IsTruncated": end < len(policies),
        }
        if response["IsTruncated"]:
            response["Marker"] = str(end)
        return response

    def _attach(self, **kwargs: Any) -> Any:
        self.logger.info(f"MOCK: attach_policy({kwargs})")
        policies = self._policies(self._principal_name(kwargs))
        if kwargs["PolicyArn"] not in policies:
            policies.append(kwargs["PolicyArn"])
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    def _detach(self, **kwargs: Any) -> Any:
        self.logger.info(f"MOCK: detach_policy({kwargs})")
        policies = self._policies(self._principal_name(kwargs))
        if kwargs["PolicyArn"] not in policies:
            raise NotFoundError(
                f"Policy {kwargs['PolicyArn']} is not attached",
                "DetachPolicy",
                "NoSuchEntity",
            )
        policies.remove(kwargs["PolicyArn"])
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    def list_discovered_resources(self, **kwargs: Any) -> Any:
        self.logger.info(f"MOCK: list_discovered_resources({kwargs})")
        return {
            "resourceIdentifiers": [
                {
                    "resourceType": kwargs["resourceType"],
                    "resourceId": resource_id,
                    "resourceName": resource_id,
                }
                for resource_id in kwargs.get("resourceIds", [])
            ]
        }

    def list_attached_role_policies(self, **kwargs: Any) -> Any:
        return self._list(**kwargs)

    def list_attached_user_policies(self, **kwargs: Any) -> Any:
        return self._list(**kwargs)

    def list_attached_group_policies(self, **kwargs: Any) -> Any:
        return self._list(**kwargs)

    def attach_role_policy(self, **kwargs: Any) -> Any:
        return self._attach(**kwargs)

    def attach_user_policy(self, **kwargs: Any) -> Any:
        return self._attach(**kwargs)

    def attach_group_policy(self, **kwargs: Any) -> Any:
        return self._attach(**kwargs)

    def detach_role_policy(self, **kwargs: Any) -> Any:
        return self._detach(**kwargs)

    def detach_user_policy(self, **kwargs: Any) -> Any:
        return self._detach(**kwargs)

    def detach_group_policy(self, **kwargs: Any) -> Any:
        return self._detach(**kwargs)


def main(argv: list[str] | None = None) -> int:
    """Run function for local execution.

    This function is used to run the remediation locally. It can be run with
    the following command:

    python workflow.py --resource-id AROAEXAMPLE --config config.yaml
    """
    parser = argparse.ArgumentParser(description="IAM Policy Replacement Remediator")
    parser.add_argument("--config", help="Configuration file (YAML or JSON)")
    parser.add_argument("--event", help="Event file (JSON)")
    parser.add_argument("--resource-id", help="AWS Config resource id")
    parser.add_argument("--resource-type", help="Role, User or Group")
    parser.add_argument("--policy-to-remove", help="ARN of the policy to remove")
    parser.add_argument(
        "--new-policies", help="Comma separated ARNs of the replacement policies"
    )
    parser.add_argument("--assume-role", help="ARN of the execution role")
    parser.add_argument("--region", help="AWS region")
    parser.add_argument("--dry-run", action="store_true", help="Dry run mode")
    parser.add_argument("--log-level", default="INFO", help="Log level")

    args = parser.parse_args(argv)

    # Setup logging for every remediation module, then use a local logger
    for name in MODULE_LOGGERS:
        setup_logging(args.log_level, name)
    local_logger = setup_logging(args.log_level, __name__)

    try:
        config = (
            RemediationConfig.from_file(args.config)
            if args.config
            else RemediationConfig.from_env()
        )

        if args.event:
            with Path(args.event).open() as f:
                event = json.load(f)
        elif args.resource_id:
            event = {"ResourceId": args.resource_id}
        else:
            local_logger.info("No event file or resource id provided, using sample event")
            event = create_sample_event()

        config = config.with_event(event)
        overrides: dict[str, Any] = {}
        if args.resource_type:
            overrides["resource_type"] = args.resource_type
        if args.policy_to_remove:
            overrides["policy_to_remove"] = args.policy_to_remove
        if args.new_policies:
            overrides["new_policies"] = args.new_policies
        if args.assume_role:
            overrides["assume_role_arn"] = args.assume_role
        if args.region:
            overrides["region"] = args.region
        if args.dry_run:
            overrides["dry_run"] = True
        config = replace(config, **overrides)

        resource_id = _first_value(_event_value(event, "ResourceId", "resourceId"))
        request = config.build_request(resource_id)

        # Use real AWS clients if credentials are available, otherwise mock;
        # dry runs still read live attachments through the real clients
        aws_clients: AWSClientInterface
        aws_env_vars = os.environ.get("AWS_PROFILE") or os.environ.get(
            "AWS_ACCESS_KEY_ID"
        )
        if aws_env_vars:
            aws_clients = AWSClients.from_credentials(
                request.execution_credentials, region=config.region
            )
            local_logger.info("Using real AWS clients")
        else:
            aws_clients = LocalAWSClients(config.policy_to_remove)

        result = WorkflowController.from_config(aws_clients, config).run(request)

    except RemediationError as e:
        local_logger.error(f"Remediation failed: {json.dumps(e.to_dict())}")
        return 1

    local_logger.info(f"Processing complete: {json.dumps(result.to_dict())}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
