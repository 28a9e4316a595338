"""
Conditional Access authentication contexts (c1…c99) and the SharePoint site
access state they are applied through.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..config import ToolkitError
from ..graph.client import GraphClient, SharePointClient

logger = logging.getLogger("m365_admin_toolkit.conditional_access")

AUTH_CONTEXTS = "identity/conditionalAccess/authenticationContextClassReferences"

# SharePoint Online SPOConditionalAccessPolicyType
SPO_POLICY_VALUES = {
    "AllowFullAccess": 0,
    "AllowLimitedAccess": 1,
    "BlockAccess": 2,
    "AuthenticationContext": 3,
}
SPO_POLICY_NAMES = {v: k for k, v in SPO_POLICY_VALUES.items()}

_CONTEXT_ID = re.compile(r"^c([1-9]|[1-9][0-9])$", re.IGNORECASE)


class ContextNotFoundError(ToolkitError):
    """Raised when an authentication context does not exist or is unpublished."""
    pass


class SiteAccessError(ToolkitError):
    """Raised when SharePoint returns no properties for a site."""
    pass


@dataclass(frozen=True)
class SiteAccessRequest:
    """Desired conditional access state for one site. Empty context = clear."""
    site_url: str
    authentication_context_name: str = ""

    @property
    def policy(self) -> str:
        return "AuthenticationContext" if self.authentication_context_name else "AllowFullAccess"

    @property
    def policy_value(self) -> int:
        return SPO_POLICY_VALUES[self.policy]

    def payload(self) -> dict:
        return {
            "SiteUrl": self.site_url,
            "AuthenticationContextName": self.authentication_context_name,
        }


@dataclass
class SiteAccessState:
    """Conditional access state as SharePoint reports it."""
    site_url: str
    site_id: str = ""
    policy: str = "AllowFullAccess"
    context_name: str = ""

    def matches(self, request: SiteAccessRequest) -> bool:
        if self.policy != request.policy:
            return False
        return (self.context_name or "").lower() == request.authentication_context_name.lower()

    def to_dict(self) -> dict:
        return {
            "siteUrl": self.site_url,
            "siteId": self.site_id,
            "conditionalAccessPolicy": self.policy,
            "authenticationContextName": self.context_name,
        }


def _policy_name(value) -> str:
    if isinstance(value, int):
        return SPO_POLICY_NAMES.get(value, str(value))
    return str(value or "AllowFullAccess")


async def read_site_access(admin: SharePointClient, site_url: str) -> SiteAccessState:
    """Read ConditionalAccessPolicy/AuthenticationContextName via the admin site."""
    props = await admin.post(
        "SPO.Tenant/GetSitePropertiesByUrl",
        {"url": site_url, "includeDetail": True},
    )
    if not props.get("Url") and not props.get("SiteId"):
        raise SiteAccessError(f"SharePoint returned no properties for {site_url}")
    return SiteAccessState(
        site_url=props.get("Url", site_url),
        site_id=props.get("SiteId", ""),
        policy=_policy_name(props.get("ConditionalAccessPolicy")),
        context_name=props.get("AuthenticationContextName") or "",
    )


async def list_authentication_contexts(graph: GraphClient) -> list[dict]:
    contexts = await graph.get_all_pages(AUTH_CONTEXTS, skip_top=True)
    return [
        {
            "id": c.get("id"),
            "displayName": c.get("displayName"),
            "description": c.get("description"),
            "isAvailable": c.get("isAvailable"),
        }
        for c in contexts
    ]


async def resolve_authentication_context(graph: GraphClient, name_or_id: str) -> dict:
    """Find a context by id (c1…c99) or display name; it must be published."""
    wanted = name_or_id.strip().lower()
    by_id = bool(_CONTEXT_ID.match(wanted))
    match: Optional[dict] = None
    for context in await list_authentication_contexts(graph):
        key = (context.get("id") if by_id else context.get("displayName")) or ""
        if key.lower() == wanted:
            match = context
            break

    if match is None:
        raise ContextNotFoundError(f"Authentication context not found: {name_or_id}")
    if not match.get("isAvailable"):
        raise ContextNotFoundError(
            f"Authentication context '{match.get('displayName')}' ({match.get('id')}) "
            "is not published to apps"
        )
    return match
