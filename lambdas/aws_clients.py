#!/usr/bin/env python3
"""AWS client seam for the IAM policy remediator.

The remediation components never talk to boto3 directly: they receive an
AWSClientInterface at construction time. AWSClients is the real
implementation; it translates botocore failures into the remediation error
taxonomy so callers can tell retryable failures from fatal ones.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from remediation_errors import (
    AccessDeniedError,
    APIError,
    NotFoundError,
    TransientAPIError,
)


def setup_logging(level: str = "INFO", name: str | None = None) -> logging.Logger:
    """Set up logging configuration.

    Args:
        level: The logging level to use. Defaults to "INFO".
        name: Logger name. Defaults to this module's name.

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(name or __name__)
    if not logger.handlers:  # Avoid duplicate handlers
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(getattr(logging, level.upper()))
    return logger


def log_level_from_env() -> str:
    """Return DEBUG when the DEBUG env var is true, otherwise INFO."""
    return "DEBUG" if os.environ.get("DEBUG", "false").lower() == "true" else "INFO"


logger = setup_logging(log_level_from_env(), __name__)

# Retries are owned by the workflow controller, so the SDK makes one attempt
BOTO_CONFIG = Config(
    retries={"mode": "standard", "max_attempts": 1},
    connect_timeout=10,
    read_timeout=30,
)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServiceFailure",
    "InternalFailure",
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
}
NOT_FOUND_ERROR_CODES = {
    "NoSuchEntity",
    "NoSuchEntityException",
    "ResourceNotFoundException",
    "ResourceNotDiscoveredException",
}
ACCESS_DENIED_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}
TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def translate_client_error(operation: str, error: Exception) -> APIError:
    """Map a botocore failure onto the remediation error taxonomy.

    Args:
        operation: Name of the API operation that failed.
        error: The exception raised by botocore.

    Returns:
        APIError: The matching TransientAPIError, NotFoundError,
        AccessDeniedError or generic APIError.
    """
    if isinstance(error, ClientError):
        error_code = error.response.get("Error", {}).get("Code", "Unknown")
        message = f"{operation} failed ({error_code}): {error!s}"
        if error_code in TRANSIENT_ERROR_CODES:
            return TransientAPIError(message, operation, error_code)
        if error_code in NOT_FOUND_ERROR_CODES:
            return NotFoundError(message, operation, error_code)
        if error_code in ACCESS_DENIED_ERROR_CODES:
            return AccessDeniedError(message, operation, error_code)
        return APIError(message, operation, error_code)

    if isinstance(error, TRANSIENT_BOTOCORE_ERRORS):
        return TransientAPIError(
            f"{operation} failed: {error!s}", operation, type(error).__name__
        )
    return APIError(f"{operation} failed: {error!s}", operation, type(error).__name__)


class AWSClientInterface(ABC):
    """Abstract interface for AWS clients to enable mocking.

    This interface defines the IAM and AWS Config calls the remediation makes.
    Implementations must raise the remediation error taxonomy
    (TransientAPIError, NotFoundError, AccessDeniedError, APIError) rather
    than SDK specific exceptions.
    """

    @abstractmethod
    def list_discovered_resources(self, **kwargs: Any) -> Any:
        """List resources discovered by AWS Config."""
        pass

    @abstractmethod
    def list_attached_role_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a role."""
        pass

    @abstractmethod
    def list_attached_user_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a user."""
        pass

    @abstractmethod
    def list_attached_group_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a group."""
        pass

    @abstractmethod
    def attach_role_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a role."""
        pass

    @abstractmethod
    def attach_user_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a user."""
        pass

    @abstractmethod
    def attach_group_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a group."""
        pass

    @abstractmethod
    def detach_role_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a role."""
        pass

    @abstractmethod
    def detach_user_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a user."""
        pass

    @abstractmethod
    def detach_group_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a group."""
        pass


class AWSClients(AWSClientInterface):
    """Real AWS clients wrapper.

    Wraps the IAM and AWS Config clients built from a single boto3 session,
    translating every botocore failure with translate_client_error.
    """

    def __init__(
        self,
        region: str | None = None,
        session: Any = None,
        iam_client: Any = None,
        config_client: Any = None,
    ) -> None:
        """Initialize AWS clients.

        Args:
            region: AWS region for the Config client.
            session: boto3 session to build clients from. Defaults to the
                ambient credential chain.
            iam_client: Prebuilt IAM client, mainly for tests.
            config_client: Prebuilt AWS Config client, mainly for tests.
        """
        if iam_client is None or config_client is None:
            session = session or boto3.Session(region_name=region)
        self.iam = iam_client or session.client("iam", config=BOTO_CONFIG)
        self.config = config_client or session.client(
            "config", region_name=region, config=BOTO_CONFIG
        )

    @classmethod
    def from_credentials(
        cls,
        execution_credentials: str | None,
        region: str | None = None,
        session_name: str = "iam-policy-remediation",
    ) -> "AWSClients":
        """Build clients for the delegated execution role.

        Args:
            execution_credentials: ARN of the role to assume, or None to use
                the ambient credential chain.
            region: AWS region.
            session_name: STS role session name.

        Returns:
            AWSClients: Clients acting as the execution role.
        """
        if not execution_credentials:
            return cls(region=region)

        sts = boto3.client("sts", region_name=region, config=BOTO_CONFIG)
        try:
            response = sts.assume_role(
                RoleArn=execution_credentials,
                RoleSessionName=session_name,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error("AssumeRole", e) from e

        credentials = response["Credentials"]
        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=region,
        )
        logger.info(f"Assumed execution role {execution_credentials}")
        return cls(region=region, session=session)

    def _call(self, operation: str, method: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return method(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(operation, e) from e

    def list_discovered_resources(self, **kwargs: Any) -> Any:
        """List resources discovered by AWS Config."""
        return self._call(
            "ListDiscoveredResources", self.config.list_discovered_resources, **kwargs
        )

    def list_attached_role_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a role."""
        return self._call(
            "ListAttachedRolePolicies", self.iam.list_attached_role_policies, **kwargs
        )

    def list_attached_user_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a user."""
        return self._call(
            "ListAttachedUserPolicies", self.iam.list_attached_user_policies, **kwargs
        )

    def list_attached_group_policies(self, **kwargs: Any) -> Any:
        """List managed policies attached to a group."""
        return self._call(
            "ListAttachedGroupPolicies",
            self.iam.list_attached_group_policies,
            **kwargs,
        )

    def attach_role_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a role."""
        return self._call("AttachRolePolicy", self.iam.attach_role_policy, **kwargs)

    def attach_user_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a user."""
        return self._call("AttachUserPolicy", self.iam.attach_user_policy, **kwargs)

    def attach_group_policy(self, **kwargs: Any) -> Any:
        """Attach a managed policy to a group."""
        return self._call("AttachGroupPolicy", self.iam.attach_group_policy, **kwargs)

    def detach_role_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a role."""
        return self._call("DetachRolePolicy", self.iam.detach_role_policy, **kwargs)

    def detach_user_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a user."""
        return self._call("DetachUserPolicy", self.iam.detach_user_policy, **kwargs)

    def detach_group_policy(self, **kwargs: Any) -> Any:
        """Detach a managed policy from a group."""
        return self._call("DetachGroupPolicy", self.iam.detach_group_policy, **kwargs)
