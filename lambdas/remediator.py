#!/usr/bin/env python3
"""IAM Managed Policy Remediator.

Replaces a disallowed managed policy on a single principal: the replacement
policies are attached first, then the disallowed policy is detached only if
it is actually attached. Attaching before detaching means the principal is
never left without both the old grant and its full replacement.
"""

from aws_clients import AWSClientInterface, log_level_from_env, setup_logging
from policy_enumerator import PolicyEnumerator
from remediation_errors import (
    PHASE_ATTACH,
    PHASE_DETACH,
    PHASE_VERIFY,
    APIError,
    AttachFailure,
    DetachFailure,
    RemediationError,
    TransientAPIError,
)
from remediation_models import (
    PolicyReference,
    Principal,
    RemediationResult,
    validate_policy_configuration,
)

logger = setup_logging(log_level_from_env(), __name__)


class PolicyRemediator:
    """Attach-then-verify-then-detach remediation for one principal.

    Re-running remediate after a partial failure is safe: attaching an already
    attached policy is a no-op, and detach is skipped when the old policy is
    already gone.
    """

    def __init__(
        self,
        aws_clients: AWSClientInterface,
        enumerator: PolicyEnumerator | None = None,
        dry_run: bool = False,
    ) -> None:
        """Initialize the PolicyRemediator.

        Args:
            aws_clients: Client handle used for attach and detach calls.
            enumerator: Enumerator used to verify the old attachment.
                Defaults to one built on aws_clients.
            dry_run: Log attach and detach calls instead of making them.
        """
        self.aws_clients = aws_clients
        self.enumerator = enumerator or PolicyEnumerator(aws_clients)
        self.dry_run = dry_run

    def remediate(
        self,
        principal: Principal,
        policy_to_remove: PolicyReference,
        new_policies: "list[PolicyReference] | tuple[PolicyReference, ...]",
    ) -> RemediationResult:
        """Replace policy_to_remove with new_policies on the principal.

        Args:
            principal: The resolved principal.
            policy_to_remove: The disallowed policy.
            new_policies: Replacement policies, attached in the given order.

        Returns:
            RemediationResult: Which policies were attached and whether the
            old policy was detached.

        Raises:
            ConfigurationError: If the policy configuration is invalid.
            AttachFailure: If a replacement policy could not be attached.
            DetachFailure: If the old policy could not be detached.
            TransientAPIError: On retryable failures, tagged with the phase.
        """
        last_completed: str | None = None
        try:
            validate_policy_configuration(policy_to_remove, new_policies)

            self._log(
                f"Attaching replacement policies to {principal.resource_type.value} "
                f"{principal.name}"
            )
            attached = self._attach_new_policies(principal, new_policies)
            last_completed = PHASE_ATTACH

            old_policy_attached = self._verify_old_policy(principal, policy_to_remove)
            last_completed = PHASE_VERIFY

            detached = False
            if old_policy_attached:
                self._log(f"Detaching noncomplying policy {policy_to_remove}")
                self._detach_old_policy(principal, policy_to_remove, attached)
                detached = True
                last_completed = PHASE_DETACH
            else:
                self._log(
                    f"Policy {policy_to_remove} is not attached to {principal.name}; "
                    f"skipping detach"
                )
        except RemediationError as e:
            if e.last_completed_phase is None:
                e.last_completed_phase = last_completed
            raise

        return RemediationResult(
            principal_name=principal.name,
            attached_policies=attached,
            detached_old_policy=detached,
            resource_type=principal.resource_type,
            dry_run=self.dry_run,
        )

    def _log(self, message: str) -> None:
        prefix = "DRY RUN: " if self.dry_run else ""
        logger.info(f"{prefix}{message}")

    def _attach_new_policies(
        self,
        principal: Principal,
        new_policies: "list[PolicyReference] | tuple[PolicyReference, ...]",
    ) -> list[PolicyReference]:
        """Attach each new policy in order, stopping at the first failure."""
        attach = getattr(
            self.aws_clients, f"attach_{principal.resource_type.api_noun}_policy"
        )
        attached: list[PolicyReference] = []
        for policy in new_policies:
            if self.dry_run:
                logger.info(f"DRY RUN: Would attach policy {policy}")
                attached.append(policy)
                continue
            try:
                attach(**principal.api_kwargs(), PolicyArn=policy.arn)
            except TransientAPIError as e:
                e.phase = PHASE_ATTACH
                raise
            except APIError as e:
                logger.error(f"Error attaching policy {policy}: {e!s}")
                raise AttachFailure(
                    policy.arn, [p.arn for p in attached], cause=e
                ) from e
            logger.info(f"Attached policy {policy} to {principal.name}")
            attached.append(policy)
        return attached

    def _verify_old_policy(
        self, principal: Principal, policy_to_remove: PolicyReference
    ) -> bool:
        try:
            attached = self.enumerator.is_attached(principal, policy_to_remove)
        except APIError as e:
            e.phase = PHASE_VERIFY
            raise
        logger.info(
            f"Policy {policy_to_remove} attached to {principal.name}: {attached}"
        )
        return attached

    def _detach_old_policy(
        self,
        principal: Principal,
        policy_to_remove: PolicyReference,
        attached: list[PolicyReference],
    ) -> None:
        if self.dry_run:
            logger.info(f"DRY RUN: Would detach policy {policy_to_remove}")
            return

        detach = getattr(
            self.aws_clients, f"detach_{principal.resource_type.api_noun}_policy"
        )
        try:
            detach(**principal.api_kwargs(), PolicyArn=policy_to_remove.arn)
        except TransientAPIError as e:
            e.phase = PHASE_DETACH
            raise
        except APIError as e:
            logger.error(f"Error detaching policy {policy_to_remove}: {e!s}")
            raise DetachFailure(
                policy_to_remove.arn, [p.arn for p in attached], cause=e
            ) from e
        logger.info(f"Detached policy {policy_to_remove} from {principal.name}")
