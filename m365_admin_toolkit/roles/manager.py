"""
Directory Role Manager
Reads role definitions and assignments, plans and creates custom roles
cloned from built-in ones.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..config import ToolkitError
from ..graph.client import GraphClient, GraphAPIError
from .permissions import (
    DEFAULT_DENYLIST,
    PermissionFilterResult,
    partition_by_namespace,
    subtract_denylist,
)

logger = logging.getLogger("m365_admin_toolkit.roles")

ROLE_DEFINITIONS = "roleManagement/directory/roleDefinitions"
ROLE_ASSIGNMENTS = "roleManagement/directory/roleAssignments"

_GUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class RoleNotFoundError(ToolkitError):
    """Raised when a role definition cannot be found."""
    pass


class RoleExistsError(ToolkitError):
    """Raised when a custom role with the same display name already exists."""
    pass


class RolePlanError(ToolkitError):
    """Raised when a custom role plan cannot be submitted."""
    pass


def role_actions(definition: dict) -> list[str]:
    """Flatten allowedResourceActions across every rolePermissions entry."""
    actions = []
    for perm in definition.get("rolePermissions", []):
        actions.extend(perm.get("allowedResourceActions", []))
    return actions


@dataclass
class CustomRolePlan:
    """Everything needed to create a custom role, computed before any write."""
    source_name: str
    display_name: str
    description: str
    filtered: PermissionFilterResult
    supported: list[str] = field(default_factory=list)
    unsupported: list[str] = field(default_factory=list)
    strict: bool = False

    @property
    def is_submittable(self) -> bool:
        if not self.supported:
            return False
        return not (self.strict and self.unsupported)

    @property
    def blocking_reason(self) -> str:
        if not self.supported:
            return (
                "No permissions left in the microsoft.directory namespace; "
                "custom roles cannot hold any of the remaining actions."
            )
        if self.strict and self.unsupported:
            return (
                f"{len(self.unsupported)} action(s) are outside the namespace custom "
                "roles support (strict mode)."
            )
        return ""

    @property
    def body(self) -> dict:
        return {
            "displayName": self.display_name,
            "description": self.description,
            "isEnabled": True,
            "rolePermissions": [
                {"allowedResourceActions": list(self.supported)},
            ],
        }

    def to_dict(self) -> dict:
        return {
            "source_role": self.source_name,
            "display_name": self.display_name,
            "is_submittable": self.is_submittable,
            "blocking_reason": self.blocking_reason,
            "filter": self.filtered.to_dict(),
            "supported_actions": self.supported,
            "unsupported_actions": self.unsupported,
            "request_body": self.body,
        }


class RoleManager:
    """Role definition reads and custom role creation against Graph."""

    def __init__(self, graph: GraphClient):
        self.graph = graph

    async def list_definitions(self, builtin_only: Optional[bool] = None) -> list[dict]:
        # This endpoint does not support $top
        roles = await self.graph.get_all_pages(ROLE_DEFINITIONS, skip_top=True)
        if builtin_only is None:
            return roles
        return [r for r in roles if bool(r.get("isBuiltIn")) == builtin_only]

    async def get_definition(self, name_or_id: str) -> dict:
        """Look up a role by id or case-insensitive display name."""
        if _GUID.match(name_or_id):
            role = await self.graph.get(f"{ROLE_DEFINITIONS}/{name_or_id}")
            if not role.get("_not_found"):
                return role

        wanted = name_or_id.strip().lower()
        for role in await self.list_definitions():
            if (role.get("displayName") or "").lower() == wanted:
                return role
        raise RoleNotFoundError(f"Role definition not found: {name_or_id}")

    async def find_by_name(self, display_name: str) -> Optional[dict]:
        try:
            return await self.get_definition(display_name)
        except RoleNotFoundError:
            return None

    async def plan_custom_role(
        self,
        source: Any,
        display_name: str,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        description: str = "",
        strict: bool = False,
    ) -> CustomRolePlan:
        """
        Derive a custom role from a built-in one.

        source is a role definition dict or a name/id to look up.
        """
        definition = source if isinstance(source, dict) else await self.get_definition(source)
        source_name = definition.get("displayName", "")

        filtered = subtract_denylist(role_actions(definition), denylist)
        supported, unsupported = partition_by_namespace(filtered.kept)

        if unsupported:
            logger.warning(
                f"{len(unsupported)} action(s) from '{source_name}' are outside "
                f"microsoft.directory and cannot be part of a custom role"
            )

        return CustomRolePlan(
            source_name=source_name,
            display_name=display_name,
            description=description or f"Custom role derived from {source_name}",
            filtered=filtered,
            supported=supported,
            unsupported=unsupported,
            strict=strict,
        )

    async def create_custom_role(self, plan: CustomRolePlan, skip_existing: bool = False) -> dict:
        """Submit a plan. Returns the created role, or {"_dry_run": True}."""
        if not plan.is_submittable:
            raise RolePlanError(plan.blocking_reason)

        existing = await self.find_by_name(plan.display_name)
        if existing:
            if skip_existing:
                logger.info(f"Custom role '{plan.display_name}' already exists, skipping.")
                return existing
            raise RoleExistsError(f"A role named '{plan.display_name}' already exists.")

        try:
            return await self.graph.post(ROLE_DEFINITIONS, plan.body)
        except GraphAPIError as e:
            if e.status_code == 400:
                raise RolePlanError(f"Graph rejected the custom role: {e.message}") from e
            raise

    async def list_assignments(self, name_or_id: str) -> list[dict]:
        """Role assignments for one role, with principals expanded."""
        role = await self.get_definition(name_or_id)
        assignments = await self.graph.get_all_pages(
            ROLE_ASSIGNMENTS,
            params={
                "$filter": f"roleDefinitionId eq '{role['id']}'",
                "$expand": "principal",
            },
            skip_top=True,
        )
        return [
            {
                "id": a.get("id"),
                "principalId": a.get("principalId"),
                "directoryScopeId": a.get("directoryScopeId"),
                "principalDisplayName": (a.get("principal") or {}).get("displayName"),
                "principalType": (a.get("principal") or {}).get("@odata.type", "").split(".")[-1],
                "principalUpn": (a.get("principal") or {}).get("userPrincipalName"),
            }
            for a in assignments
        ]
