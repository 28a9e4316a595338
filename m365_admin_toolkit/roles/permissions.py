"""
Permission-set filtering for directory roles.

Built-in role definitions list their rights as resource-action strings
("microsoft.directory/users/password/update"). Cloning one as a custom role
means subtracting a denylist, then keeping only the namespace custom roles
accept. Both steps are pure and run before any write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

# Custom directory roles only accept actions in this namespace
CUSTOM_ROLE_NAMESPACE = "microsoft.directory/"

# Privileged writes excluded when cloning a built-in role
DEFAULT_DENYLIST = (
    "microsoft.directory/roleAssignments/allProperties/allTasks",
    "microsoft.directory/roleDefinitions/allProperties/allTasks",
    "microsoft.directory/users/password/update",
    "microsoft.directory/users/authenticationMethods/*",
    "microsoft.directory/applications/credentials/update",
    "microsoft.directory/servicePrincipals/credentials/update",
    "microsoft.directory/conditionalAccessPolicies/*",
    "microsoft.directory/authorizationPolicy/allProperties/allTasks",
)


@dataclass
class PermissionFilterResult:
    """Outcome of subtracting a denylist from an allowed-action list."""
    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unmatched_denylist: list[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    def to_dict(self) -> dict:
        return {
            "kept": self.kept,
            "removed": self.removed,
            "unmatched_denylist": self.unmatched_denylist,
        }


def _unique(actions: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for action in actions:
        key = action.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(action.strip())
    return out


def _matches(action_lower: str, entry_lower: str) -> bool:
    if entry_lower.endswith("*"):
        return action_lower.startswith(entry_lower[:-1])
    return action_lower == entry_lower


def subtract_denylist(actions: Iterable[str], denylist: Iterable[str]) -> PermissionFilterResult:
    """
    Remove every denylisted action from actions.

    Matching is case-insensitive; an entry ending in "*" removes everything
    under that prefix. Duplicate actions collapse to their first spelling and
    kept actions stay in input order.
    """
    entries = _unique(denylist)
    entries_lower = [e.lower() for e in entries]
    hit = [False] * len(entries)
    result = PermissionFilterResult()

    for action in _unique(actions):
        action_lower = action.lower()
        matched = False
        for i, entry in enumerate(entries_lower):
            if _matches(action_lower, entry):
                hit[i] = True
                matched = True
        if matched:
            result.removed.append(action)
        else:
            result.kept.append(action)

    result.unmatched_denylist = [e for e, h in zip(entries, hit) if not h]
    return result


def partition_by_namespace(
    actions: Iterable[str],
    namespace: str = CUSTOM_ROLE_NAMESPACE,
) -> tuple[list[str], list[str]]:
    """Split actions into (supported, unsupported) for custom directory roles."""
    supported, unsupported = [], []
    prefix = namespace.lower()
    for action in actions:
        (supported if action.lower().startswith(prefix) else unsupported).append(action)
    return supported, unsupported


def load_denylist_file(path) -> list[str]:
    """One action per line; blank lines and # comments ignored."""
    entries = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.split("#", 1)[0].strip()
            if line:
                entries.append(line)
    return entries
