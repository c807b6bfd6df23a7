#!/usr/bin/env python3
"""Resolve AWS Config resource ids to IAM principal names.

AWS Config reports IAM principals by their unique id (for example
AROAEXAMPLEID), while the IAM attach and detach APIs need the principal's
name, so every remediation starts with a lookup in Config's resource
directory.
"""

from aws_clients import AWSClientInterface, log_level_from_env, setup_logging
from remediation_errors import PHASE_RESOLVE, APIError, NotFoundError, ResolutionError
from remediation_models import ResourceType

logger = setup_logging(log_level_from_env(), __name__)


class ResourceResolver:
    """Maps a scanner resource id to the principal's canonical name."""

    def __init__(self, aws_clients: AWSClientInterface) -> None:
        self.aws_clients = aws_clients

    def resolve(self, resource_id: str, resource_type: ResourceType) -> str:
        """Look up the principal name for a Config resource id.

        Args:
            resource_id: Opaque id supplied by the compliance scanner.
            resource_type: Kind of principal the id refers to.

        Returns:
            str: The principal's name.

        Raises:
            ResolutionError: If the id is unknown, has no name, or maps to
                more than one principal.
            TransientAPIError: On throttling or connectivity failures.
        """
        try:
            response = self.aws_clients.list_discovered_resources(
                resourceType=resource_type.config_resource_type,
                resourceIds=[resource_id],
            )
        except NotFoundError as e:
            raise ResolutionError(
                f"Resource {resource_id} not found: {e.message}", resource_id
            ) from e
        except APIError as e:
            e.phase = PHASE_RESOLVE
            raise

        identifiers = (response or {}).get("resourceIdentifiers", [])
        names = []
        for identifier in identifiers:
            name = identifier.get("resourceName")
            if name and name not in names:
                names.append(name)

        if not identifiers:
            raise ResolutionError(
                f"No {resource_type.config_resource_type} found for resource id "
                f"{resource_id}",
                resource_id,
            )
        if not names:
            raise ResolutionError(
                f"Resource {resource_id} has no resource name", resource_id
            )
        if len(names) > 1:
            raise ResolutionError(
                f"Resource id {resource_id} is ambiguous: matches {', '.join(names)}",
                resource_id,
            )

        logger.info(
            f"Resolved {resource_type.value} resource {resource_id} to {names[0]}"
        )
        return names[0]
