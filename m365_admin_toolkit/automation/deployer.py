"""
Azure Automation deployment for the conditional-access runbook:
automation account (system-assigned identity) → runbook → webhook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..config import AutomationConfig, ToolkitError
from ..graph.client import ArmClient, GraphClient

logger = logging.getLogger("m365_admin_toolkit.automation")

WEBHOOK_URL_FILE = "webhook-url.txt"
AUTOMATION_CONFIG_FILE = "automation-config.json"

# Office 365 SharePoint Online first-party application
SHAREPOINT_APP_ID = "00000003-0000-0ff1-ce00-000000000000"
SHAREPOINT_APP_ROLE = "Sites.FullControl.All"


class AutomationError(ToolkitError):
    """Raised when the automation pipeline cannot be deployed or run."""
    pass


@dataclass
class AutomationDeployment:
    account: str = "pending"
    runbook: str = "pending"
    webhook: str = "pending"
    principal_id: str = ""
    webhook_url: str = ""
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "runbook": self.runbook,
            "webhook": self.webhook,
            "principalId": self.principal_id,
            "webhookConfigured": bool(self.webhook_url),
            "files": self.files,
        }


class AutomationDeployer:
    """Idempotent deploy of the automation account, runbook and webhook."""

    def __init__(self, arm: ArmClient, config: AutomationConfig):
        if not config.is_configured:
            raise AutomationError(
                "Automation needs subscription_id, resource_group and account_name."
            )
        self.arm = arm
        self.config = config

    async def deploy(
        self,
        runbook_content: str,
        output_dir: Optional[Path] = None,
        config_path: Optional[Path] = None,
    ) -> AutomationDeployment:
        result = AutomationDeployment()
        await self._ensure_account(result)
        await self._ensure_runbook(runbook_content, result)
        await self._create_webhook(result)

        if result.webhook_url and output_dir is not None:
            output_dir = Path(output_dir)
            output_dir.mkdir(parents=True, exist_ok=True)
            url_file = output_dir / WEBHOOK_URL_FILE
            url_file.write_text(result.webhook_url + "\n", encoding="utf-8")
            self.config.webhook_url = result.webhook_url
            cfg_file = self.config.save(config_path or output_dir / AUTOMATION_CONFIG_FILE)
            result.files = [str(url_file), str(cfg_file)]
        return result

    async def _ensure_account(self, result: AutomationDeployment):
        path = self.config.account_path
        current = await self.arm.get(path)
        if not current.get("_not_found"):
            result.account = "exists"
            result.principal_id = (current.get("identity") or {}).get("principalId", "")
            if result.principal_id:
                return
            logger.info("Automation account has no managed identity, enabling it")

        body = {
            "location": self.config.location,
            "identity": {"type": "SystemAssigned"},
            "properties": {"sku": {"name": "Basic"}},
        }
        response = await self.arm.put(path, body)
        if response.get("_dry_run"):
            result.account = "planned" if result.account == "pending" else result.account
            return
        result.account = "created" if result.account == "pending" else "updated"
        result.principal_id = (response.get("identity") or {}).get("principalId", "")

    async def _ensure_runbook(self, content: str, result: AutomationDeployment):
        path = f"{self.config.account_path}/runbooks/{self.config.runbook_name}"
        body = {
            "location": self.config.location,
            "properties": {
                "runbookType": "PowerShell",
                "logProgress": False,
                "logVerbose": False,
                "description": "Sets SharePoint site conditional access from a webhook call",
            },
        }
        response = await self.arm.put(path, body)
        draft = await self.arm.put(
            f"{path}/draft/content",
            content=content,
            headers={"Content-Type": "text/powershell"},
        )
        await self.arm.post(f"{path}/publish")
        result.runbook = "planned" if response.get("_dry_run") or draft.get("_dry_run") else "published"

    async def _create_webhook(self, result: AutomationDeployment):
        if not self.arm.guardian.apply:
            # generateUri hands out a live secret; only ask for one when applying
            result.webhook = "planned"
            return

        generated = await self.arm.post(f"{self.config.account_path}/webhooks/generateUri")
        uri = generated if isinstance(generated, str) else generated.get("_text", "").strip('"')
        if not uri:
            raise AutomationError("Azure Automation did not return a webhook URI")

        expiry = datetime.now(timezone.utc) + timedelta(days=self.config.webhook_expiry_days)
        body = {
            "name": self.config.webhook_name,
            "properties": {
                "isEnabled": True,
                "uri": uri,
                "expiryTime": expiry.isoformat(),
                "runbook": {"name": self.config.runbook_name},
                "parameters": {},
            },
        }
        await self.arm.put(f"{self.config.account_path}/webhooks/{self.config.webhook_name}", body)
        result.webhook = "created"
        result.webhook_url = uri


async def grant_sharepoint_access(graph: GraphClient, principal_id: str) -> str:
    """
    Give a managed identity the SharePoint Sites.FullControl.All app role.
    Returns "granted", "exists" or "planned".
    """
    found = await graph.get(
        "servicePrincipals",
        params={"$filter": f"appId eq '{SHAREPOINT_APP_ID}'", "$select": "id,appRoles"},
    )
    sps = found.get("value", [])
    if not sps:
        raise AutomationError("SharePoint Online service principal not found in tenant")
    resource = sps[0]
    role_id = next(
        (r["id"] for r in resource.get("appRoles", []) if r.get("value") == SHAREPOINT_APP_ROLE),
        None,
    )
    if not role_id:
        raise AutomationError(f"App role {SHAREPOINT_APP_ROLE} not found on SharePoint Online")

    existing = await graph.get_all_pages(
        f"servicePrincipals/{principal_id}/appRoleAssignments", skip_top=True
    )
    if any(a.get("appRoleId") == role_id and a.get("resourceId") == resource["id"] for a in existing):
        return "exists"

    response = await graph.post(
        f"servicePrincipals/{principal_id}/appRoleAssignments",
        {"principalId": principal_id, "resourceId": resource["id"], "appRoleId": role_id},
    )
    return "planned" if response.get("_dry_run") else "granted"
