"""
List schema helpers shared by export and deploy: which lists are worth
exporting, which columns can be recreated, which item fields can be written.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

# Graph columnDefinition facets that carry the column type
TYPE_FACETS = (
    "text",
    "number",
    "choice",
    "boolean",
    "dateTime",
    "currency",
    "personOrGroup",
    "hyperlinkOrPicture",
    "calculated",
    "lookup",
)

# Column properties copied into a create request next to the type facet
COLUMN_PROPERTIES = (
    "name",
    "displayName",
    "description",
    "required",
    "enforceUniqueValues",
    "indexed",
    "defaultValue",
)

# Columns every generic list already has
BUILTIN_COLUMNS = {
    "title", "contenttype", "attachments", "created", "modified", "author",
    "editor", "id", "_uiversionstring", "edit", "linktitle", "linktitlenomenu",
    "docicon", "itemchildcount", "folderchildcount", "_compliancetag",
    "_complianceflags", "_compliancetagwrittentime", "_compliancetaguserid",
    "_isrecord", "appauthor", "appeditor", "_colortag", "computedasset",
}

# Item fields Graph returns but never accepts on create
READONLY_ITEM_FIELDS = {
    "@odata.etag", "id", "ContentType", "Created", "Modified",
    "AuthorLookupId", "EditorLookupId", "AppAuthorLookupId", "AppEditorLookupId",
    "_UIVersionString", "Attachments", "Edit", "LinkTitle", "LinkTitleNoMenu",
    "DocIcon", "ItemChildCount", "FolderChildCount", "_ComplianceFlags",
    "_ComplianceTag", "_ComplianceTagWrittenTime", "_ComplianceTagUserId",
}


def is_exportable_list(lst: dict, include_hidden: bool = False) -> bool:
    if include_hidden:
        return True
    if lst.get("system") is not None:
        return False
    return not (lst.get("list") or {}).get("hidden", False)


def column_type(column: dict) -> Optional[str]:
    for facet in TYPE_FACETS:
        if facet in column:
            return facet
    return None


def is_custom_column(column: dict) -> bool:
    if column.get("readOnly") or column.get("hidden") or column.get("sealed"):
        return False
    return (column.get("name") or "").lower() not in BUILTIN_COLUMNS


def clean_column(column: dict) -> Optional[dict]:
    """
    Reduce an exported column to a create request. Lookup and calculated
    columns reference source-site objects and are not recreated.
    """
    facet = column_type(column)
    if facet in (None, "lookup", "calculated"):
        return None
    cleaned = {k: column[k] for k in COLUMN_PROPERTIES if column.get(k) not in (None, "")}
    cleaned[facet] = column[facet]
    return cleaned


def creatable_columns(columns: Iterable[dict]) -> list[dict]:
    out = []
    for column in columns:
        if not is_custom_column(column):
            continue
        cleaned = clean_column(column)
        if cleaned:
            out.append(cleaned)
    return out


def writable_field_names(columns: Iterable[dict]) -> set[str]:
    """Field names an item create may set, including person/lookup id fields."""
    names = {"Title"}
    for column in columns:
        if column.get("readOnly") or column.get("hidden"):
            continue
        name = column.get("name") or ""
        if not name or name in READONLY_ITEM_FIELDS:
            continue
        names.add(name)
        if column_type(column) in ("personOrGroup", "lookup"):
            names.add(f"{name}LookupId")
    return names


def filter_item_fields(fields: dict, writable: set[str]) -> dict:
    return {
        k: v for k, v in fields.items()
        if k in writable and k not in READONLY_ITEM_FIELDS and v is not None
    }


def safe_filename(name: str) -> str:
    """List display names → portable file names."""
    cleaned = re.sub(r"[^\w\-. ]+", "_", name).strip().replace(" ", "_")
    return cleaned or "list"
