"""
SharePoint site deployment — replays a DeploymentManifest.json onto a target
site: creates missing lists with their custom columns, then re-inserts rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..config import ToolkitError
from ..graph.client import GraphClient, GraphAPIError
from ..reporting import load_json
from .exporter import MANIFEST_VERSION
from .schema import creatable_columns, filter_item_fields, writable_field_names

logger = logging.getLogger("m365_admin_toolkit.sites.deploy")


class DeploymentError(ToolkitError):
    """Raised when a manifest is unusable or a deploy is aborted."""
    pass


@dataclass
class ListDeployment:
    """Per-list outcome."""
    name: str
    action: str = "pending"        # created, reused, skipped, planned, failed
    list_id: Optional[str] = None
    items_created: int = 0
    items_planned: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "action": self.action,
            "listId": self.list_id,
            "itemsCreated": self.items_created,
            "itemsPlanned": self.items_planned,
            "itemsSkipped": self.items_skipped,
            "itemsFailed": self.items_failed,
            "errors": self.errors,
        }


@dataclass
class DeploymentResult:
    site_url: str
    lists: list[ListDeployment] = field(default_factory=list)

    @property
    def items_created(self) -> int:
        return sum(d.items_created for d in self.lists)

    @property
    def items_failed(self) -> int:
        return sum(d.items_failed for d in self.lists)

    @property
    def succeeded(self) -> bool:
        return not any(d.action == "failed" or d.items_failed for d in self.lists)

    def to_dict(self) -> dict:
        return {
            "siteUrl": self.site_url,
            "succeeded": self.succeeded,
            "itemsCreated": self.items_created,
            "itemsFailed": self.items_failed,
            "lists": [d.to_dict() for d in self.lists],
        }


def read_manifest(path: Path) -> dict:
    manifest = load_json(path)
    if not isinstance(manifest, dict) or not isinstance(manifest.get("lists"), list):
        raise DeploymentError(f"{path} is not a deployment manifest (no 'lists' array)")
    try:
        version = int(manifest.get("formatVersion", MANIFEST_VERSION))
    except (TypeError, ValueError):
        raise DeploymentError(f"{path} has an unreadable formatVersion: {manifest.get('formatVersion')!r}")
    if version > MANIFEST_VERSION:
        raise DeploymentError(
            f"{path} has format version {version}; this tool reads up to {MANIFEST_VERSION}"
        )
    return manifest


class SiteDeployer:
    """Replays an exported manifest against a target site through Graph."""

    def __init__(
        self,
        graph: GraphClient,
        skip_existing_lists: bool = False,
        stop_on_error: bool = False,
    ):
        self.graph = graph
        self.skip_existing_lists = skip_existing_lists
        self.stop_on_error = stop_on_error

    async def deploy(self, manifest_path: Path, target_site_url: str) -> DeploymentResult:
        manifest_path = Path(manifest_path)
        manifest = read_manifest(manifest_path)
        site = await self.graph.resolve_site(target_site_url)
        site_id = site["id"]

        existing = {
            (lst.get("displayName") or "").lower(): lst
            for lst in await self.graph.get_all_pages(f"sites/{site_id}/lists", skip_top=True)
        }

        result = DeploymentResult(site_url=target_site_url)
        for entry in manifest["lists"]:
            deployment = ListDeployment(name=entry.get("displayName", ""))
            result.lists.append(deployment)
            try:
                await self._deploy_list(site_id, entry, existing, manifest_path.parent, deployment)
            except ToolkitError as e:
                deployment.action = "failed"
                deployment.errors.append(str(e))
                logger.error(f"List '{deployment.name}' failed: {e}")
                if self.stop_on_error:
                    raise DeploymentError(f"Deployment stopped at list '{deployment.name}': {e}") from e

        return result

    async def _deploy_list(
        self,
        site_id: str,
        entry: dict,
        existing: dict[str, dict],
        base_dir: Path,
        deployment: ListDeployment,
    ):
        name = deployment.name
        columns = entry.get("columns", [])
        current = existing.get(name.lower())
        if current and self.skip_existing_lists:
            deployment.action = "skipped"
            deployment.list_id = current.get("id")
            logger.info(f"List '{name}' exists, skipped")
            return

        rows = self._load_rows(entry, base_dir)
        if current:
            deployment.action = "reused"
            deployment.list_id = current["id"]
            target_columns = await self.graph.get_all_pages(
                f"sites/{site_id}/lists/{current['id']}/columns", skip_top=True
            )
        else:
            # the new list only carries what the create request defines
            target_columns = creatable_columns(columns)
            body = {
                "displayName": name,
                "description": entry.get("description", ""),
                "columns": target_columns,
                "list": {"template": entry.get("template") or "genericList"},
            }
            created = await self.graph.post(f"sites/{site_id}/lists", body)
            if created.get("_dry_run"):
                deployment.action = "planned"
            else:
                deployment.action = "created"
                deployment.list_id = created.get("id")
                logger.info(f"Created list '{name}'")

        writable = writable_field_names(target_columns)

        for row in rows:
            fields = filter_item_fields(row, writable)
            if not fields:
                deployment.items_skipped += 1
                continue
            if deployment.list_id is None:
                # List only exists as a planned change
                deployment.items_planned += 1
                continue
            try:
                response = await self.graph.post(
                    f"sites/{site_id}/lists/{deployment.list_id}/items",
                    {"fields": fields},
                )
            except GraphAPIError as e:
                deployment.items_failed += 1
                deployment.errors.append(f"Row {row.get('id', '?')}: {e.message}")
                logger.warning(f"Row insert failed in '{name}': {e}")
                if self.stop_on_error:
                    raise
                continue
            if response.get("_dry_run"):
                deployment.items_planned += 1
            else:
                deployment.items_created += 1

    @staticmethod
    def _load_rows(entry: dict, base_dir: Path) -> list[dict]:
        data_file = entry.get("dataFile")
        if not data_file:
            return []
        rows = load_json(base_dir / data_file)
        if not isinstance(rows, list):
            raise DeploymentError(f"{data_file} must hold a JSON array of rows")
        return rows
