"""
SharePoint site structure export.

Writes, under one output directory:
    SiteInfo.json             site identity
    DeploymentManifest.json   list definitions + pointers to data files
    Lists/<name>.json|.csv    one pair per list, all rows
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from ..graph.client import GraphClient
from ..reporting import artifact_metadata, export_csv, export_json
from .schema import is_exportable_list, safe_filename

logger = logging.getLogger("m365_admin_toolkit.sites.export")

MANIFEST_VERSION = 1
MANIFEST_FILE = "DeploymentManifest.json"
SITE_INFO_FILE = "SiteInfo.json"
LISTS_DIR = "Lists"


@dataclass
class ExportResult:
    site: dict
    manifest_path: Path
    lists: list[dict] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return sum(entry.get("itemCount", 0) for entry in self.lists)


def site_summary(site: dict) -> dict:
    return {
        "id": site.get("id"),
        "name": site.get("name"),
        "displayName": site.get("displayName"),
        "description": site.get("description"),
        "webUrl": site.get("webUrl"),
        "createdDateTime": site.get("createdDateTime"),
        "lastModifiedDateTime": site.get("lastModifiedDateTime"),
    }


def unique_basename(base: str, used: set[str]) -> str:
    """Suffix _2, _3 ... until the name is free; compared case-insensitively."""
    candidate, n = base, 1
    while candidate.lower() in used:
        n += 1
        candidate = f"{base}_{n}"
    used.add(candidate.lower())
    return candidate


class SiteExporter:
    """Export a site's lists (schema and rows) through Graph."""

    def __init__(self, graph: GraphClient, output_dir: Path):
        self.graph = graph
        self.output_dir = Path(output_dir)

    async def export(
        self,
        site_url: str,
        list_names: Optional[Iterable[str]] = None,
        include_hidden: bool = False,
    ) -> ExportResult:
        site = await self.graph.resolve_site(site_url)
        site_id = site["id"]
        info = site_summary(site)
        export_json(info, self.output_dir, SITE_INFO_FILE)
        logger.info(f"Resolved {site_url} → {site_id}")

        wanted = {n.lower() for n in list_names} if list_names else None
        lists = await self.graph.get_all_pages(
            f"sites/{site_id}/lists",
            params={"$expand": "columns"},
            skip_top=True,
        )

        entries = []
        used_names: set[str] = set()
        for lst in lists:
            name = lst.get("displayName") or lst.get("name") or lst.get("id")
            if wanted is not None and name.lower() not in wanted:
                continue
            if wanted is None and not is_exportable_list(lst, include_hidden):
                logger.debug(f"Skipping hidden/system list: {name}")
                continue
            base = unique_basename(safe_filename(name), used_names)
            entries.append(await self._export_list(site_id, lst, name, base))

        if wanted:
            found = {e["displayName"].lower() for e in entries}
            for missing in sorted(wanted - found):
                logger.warning(f"List not found on site: {missing}")

        manifest = {
            "formatVersion": MANIFEST_VERSION,
            "metadata": artifact_metadata("sites export"),
            "source": info,
            "lists": entries,
        }
        manifest_path = export_json(manifest, self.output_dir, MANIFEST_FILE)
        return ExportResult(site=info, manifest_path=manifest_path, lists=entries)

    async def _export_list(self, site_id: str, lst: dict, name: str, base: str) -> dict:
        items = await self.graph.get_all_pages(
            f"sites/{site_id}/lists/{lst['id']}/items",
            params={"$expand": "fields"},
        )
        rows = []
        for item in items:
            fields = dict(item.get("fields") or {})
            fields.pop("@odata.etag", None)
            rows.append(fields)

        lists_dir = self.output_dir / LISTS_DIR
        export_json(rows, lists_dir, f"{base}.json")
        export_csv(rows, lists_dir, f"{base}.csv")
        logger.info(f"Exported list '{name}': {len(rows)} rows")

        return {
            "id": lst.get("id"),
            "displayName": name,
            "description": lst.get("description") or "",
            "template": (lst.get("list") or {}).get("template", "genericList"),
            "webUrl": lst.get("webUrl"),
            "columns": lst.get("columns", []),
            "itemCount": len(rows),
            "dataFile": f"{LISTS_DIR}/{base}.json",
            "csvFile": f"{LISTS_DIR}/{base}.csv",
        }
