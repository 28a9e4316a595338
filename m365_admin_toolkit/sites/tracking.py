"""
Request tracking list: the SharePoint list an external approval workflow
(Power Automate) reads and updates. The toolkit only provisions it.
"""

from __future__ import annotations

import logging

from ..graph.client import GraphClient

logger = logging.getLogger("m365_admin_toolkit.sites.tracking")

DEFAULT_TRACKING_TITLE = "Request Tracking"

REQUEST_STATUSES = ["Submitted", "In Review", "Approved", "Rejected", "Completed"]
REQUEST_TYPES = ["Site Access", "New Site", "Group Membership", "Other"]

TRACKING_COLUMNS = [
    {
        "name": "RequestType",
        "displayName": "Request Type",
        "required": True,
        "choice": {"choices": REQUEST_TYPES, "displayAs": "dropDownMenu", "allowTextEntry": False},
    },
    {
        "name": "Status",
        "displayName": "Status",
        "required": True,
        "indexed": True,
        "defaultValue": {"value": REQUEST_STATUSES[0]},
        "choice": {"choices": REQUEST_STATUSES, "displayAs": "dropDownMenu", "allowTextEntry": False},
    },
    {
        "name": "Requester",
        "displayName": "Requester",
        "personOrGroup": {"allowMultipleSelection": False, "chooseFromType": "peopleOnly"},
    },
    {
        "name": "Approver",
        "displayName": "Approver",
        "personOrGroup": {"allowMultipleSelection": False, "chooseFromType": "peopleOnly"},
    },
    {
        "name": "ApprovalDate",
        "displayName": "Approval Date",
        "dateTime": {"format": "dateTime", "displayAs": "default"},
    },
    {
        "name": "Comments",
        "displayName": "Comments",
        "text": {"allowMultipleLines": True, "linesForEditing": 6},
    },
]


async def provision_tracking_list(
    graph: GraphClient,
    site_url: str,
    title: str = DEFAULT_TRACKING_TITLE,
) -> dict:
    """Create the tracking list unless a list with that title exists."""
    site = await graph.resolve_site(site_url)
    site_id = site["id"]

    for lst in await graph.get_all_pages(f"sites/{site_id}/lists", skip_top=True):
        if (lst.get("displayName") or "").lower() == title.lower():
            logger.info(f"Tracking list '{title}' already exists")
            return {"status": "exists", "list": lst}

    body = {
        "displayName": title,
        "description": "Requests processed by the approval workflow",
        "columns": TRACKING_COLUMNS,
        "list": {"template": "genericList"},
    }
    created = await graph.post(f"sites/{site_id}/lists", body)
    status = "planned" if created.get("_dry_run") else "created"
    return {"status": status, "list": created}
