#!/usr/bin/env python3
"""Error taxonomy for IAM policy replacement remediation.

Every failure raised by the resolver, enumerator, remediator and workflow
derives from RemediationError and records the phase it was raised in, so the
invoking orchestrator can tell which step failed and resume safely.
"""

from typing import Any

PHASE_CONFIGURE = "configure"
PHASE_RESOLVE = "resolve"
PHASE_ATTACH = "attach"
PHASE_VERIFY = "verify"
PHASE_DETACH = "detach"


class RemediationError(Exception):
    """Base class for all remediation failures."""

    retryable = False

    def __init__(self, message: str, phase: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Human readable description.
            phase: Workflow phase the error was raised in, if known.
        """
        super().__init__(message)
        self.message = message
        self.phase = phase
        # Filled in by the workflow controller when it aborts
        self.aborted_state: str | None = None
        self.last_completed_phase: str | None = None
        self.attempts = 0

    def to_dict(self) -> dict[str, Any]:
        """Describe the error for the invoking orchestrator."""
        return {
            "errorType": type(self).__name__,
            "error": self.message,
            "phase": self.phase,
            "abortedState": self.aborted_state,
            "lastCompletedPhase": self.last_completed_phase,
            "attempts": self.attempts,
        }


class ConfigurationError(RemediationError):
    """Remediation configuration is invalid; raised before any network call."""

    def __init__(self, message: str) -> None:
        super().__init__(message, phase=PHASE_CONFIGURE)


class ResolutionError(RemediationError):
    """Scanner resource id could not be mapped to exactly one principal."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        super().__init__(message, phase=PHASE_RESOLVE)
        self.resource_id = resource_id


class APIError(RemediationError):
    """A call to an AWS API failed."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        error_code: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, phase=phase)
        self.operation = operation
        self.error_code = error_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["operation"] = self.operation
        data["errorCode"] = self.error_code
        return data


class TransientAPIError(APIError):
    """Throttling or connectivity failure; safe to retry."""

    retryable = True


class NotFoundError(APIError):
    """The principal (or policy) referenced by the call does not exist."""


class AccessDeniedError(APIError):
    """The execution credentials are not allowed to make the call."""


class AttachFailure(RemediationError):
    """A replacement policy could not be attached; detach was not attempted."""

    def __init__(
        self,
        policy_arn: str,
        attached_policies: list[str] | None = None,
        cause: Exception | None = None,
    ) -> None:
        message = f"Failed to attach policy {policy_arn}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, phase=PHASE_ATTACH)
        self.policy_arn = policy_arn
        self.attached_policies = list(attached_policies or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["policyArn"] = self.policy_arn
        data["attachedPolicies"] = self.attached_policies
        return data


class DetachFailure(RemediationError):
    """The old policy could not be removed after the replacements were attached."""

    def __init__(
        self,
        policy_arn: str,
        attached_policies: list[str] | None = None,
        cause: Exception | None = None,
    ) -> None:
        message = f"Failed to detach policy {policy_arn}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, phase=PHASE_DETACH)
        self.policy_arn = policy_arn
        self.attached_policies = list(attached_policies or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["policyArn"] = self.policy_arn
        data["attachedPolicies"] = self.attached_policies
        return data
