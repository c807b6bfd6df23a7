#!/usr/bin/env python3
"""Managed policy attachment enumerator.

Answers "is policy X attached to this principal?" by walking the principal's
attached managed policies one page at a time, stopping at the first page
that contains the policy.
"""

from collections.abc import Iterator

from aws_clients import AWSClientInterface, log_level_from_env, setup_logging
from remediation_errors import PHASE_VERIFY, APIError
from remediation_models import AttachmentPage, PolicyReference, Principal

logger = setup_logging(log_level_from_env(), __name__)

DEFAULT_PAGE_SIZE = 10


class PolicyEnumerator:
    """Paginated reader of the managed policies attached to a principal.

    The enumerator holds no per-principal state; every call to
    iter_attachment_pages starts a fresh listing.
    """

    def __init__(
        self, aws_clients: AWSClientInterface, page_size: int = DEFAULT_PAGE_SIZE
    ) -> None:
        """Initialize the enumerator.

        Args:
            aws_clients: Client handle used for the listing calls.
            page_size: Maximum number of policies requested per page.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.aws_clients = aws_clients
        self.page_size = page_size

    def iter_attachment_pages(self, principal: Principal) -> Iterator[AttachmentPage]:
        """Yield the principal's attachment pages lazily.

        Pages are only requested as the caller consumes them, so a caller that
        stops early never pays for the remaining pages.

        Raises:
            TransientAPIError: On throttling or connectivity failures.
            NotFoundError: If the principal no longer exists.
            APIError: If a truncated page carries no continuation marker.
        """
        list_policies = getattr(
            self.aws_clients,
            f"list_attached_{principal.resource_type.api_noun}_policies",
        )
        marker: str | None = None
        while True:
            kwargs = {**principal.api_kwargs(), "MaxItems": self.page_size}
            if marker:
                kwargs["Marker"] = marker
            response = list_policies(**kwargs)
            page = self._to_page(response)
            logger.debug(
                f"Fetched {len(page.items)} attached policies for "
                f"{principal.resource_type.value} {principal.name} "
                f"(truncated={page.is_truncated})"
            )
            yield page

            if not page.is_truncated:
                return
            if not page.continuation_marker:
                raise APIError(
                    "Truncated attachment listing returned no Marker",
                    operation=f"ListAttached{principal.resource_type.value}Policies",
                    phase=PHASE_VERIFY,
                )
            marker = page.continuation_marker

    def is_attached(self, principal: Principal, target: PolicyReference) -> bool:
        """Return True if target is currently attached to the principal."""
        for page in self.iter_attachment_pages(principal):
            if target in page:
                return True
        return False

    @staticmethod
    def _to_page(response: dict) -> AttachmentPage:
        """Convert an IAM ListAttached*Policies response into a page."""
        items = tuple(
            PolicyReference(policy["PolicyArn"])
            for policy in response.get("AttachedPolicies", [])
        )
        is_truncated = bool(response.get("IsTruncated", False))
        return AttachmentPage(
            items=items,
            is_truncated=is_truncated,
            continuation_marker=response.get("Marker") if is_truncated else None,
        )
