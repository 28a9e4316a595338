from .permissions import (
    CUSTOM_ROLE_NAMESPACE,
    DEFAULT_DENYLIST,
    PermissionFilterResult,
    load_denylist_file,
    partition_by_namespace,
    subtract_denylist,
)
from .manager import (
    CustomRolePlan,
    RoleExistsError,
    RoleManager,
    RoleNotFoundError,
    RolePlanError,
    role_actions,
)

__all__ = [
    "CUSTOM_ROLE_NAMESPACE",
    "DEFAULT_DENYLIST",
    "PermissionFilterResult",
    "load_denylist_file",
    "partition_by_namespace",
    "subtract_denylist",
    "CustomRolePlan",
    "RoleExistsError",
    "RoleManager",
    "RoleNotFoundError",
    "RolePlanError",
    "role_actions",
]
