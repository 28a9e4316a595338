"""
Configuration module for the M365 Admin Toolkit.
Defines all tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


class ToolkitError(Exception):
    """Base class for every error the toolkit raises on purpose."""
    pass


class ConfigError(ToolkitError):
    """Raised when a configuration file is missing or malformed."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

AUTH_MODES = (
    "certificate",
    "client_secret",
    "device_code",
    "interactive",
    "managed_identity",
)

# Modes that sign in as a user rather than as the app itself
DELEGATED_MODES = {"device_code", "interactive"}


@dataclass
class AuthConfig:
    """Authentication configuration — one of AUTH_MODES."""
    mode: str = "certificate"
    tenant_id: str = ""
    client_id: str = ""
    certificate_path: str = "./base64.txt"   # Path to base64-encoded PFX
    certificate_password: str = ""           # Env / prompt if empty
    client_secret: str = ""                  # Env if empty
    managed_identity_client_id: str = ""     # User-assigned identity; blank = system-assigned
    delegated_scopes: list[str] = field(default_factory=list)

    @property
    def is_delegated(self) -> bool:
        return self.mode in DELEGATED_MODES


@dataclass
class TenantConfig:
    """Tenant naming used to derive SharePoint endpoints."""
    tenant_name: str = ""                    # e.g. "contoso" for contoso.sharepoint.com
    display_name: str = ""

    @property
    def sharepoint_root_url(self) -> str:
        return f"https://{self.tenant_name}.sharepoint.com"

    @property
    def sharepoint_admin_url(self) -> str:
        return f"https://{self.tenant_name}-admin.sharepoint.com"


# ─── API Settings ────────────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

ARM_BASE_URL = "https://management.azure.com"
AUTOMATION_API_VERSION = "2023-11-01"

# Token audiences per resource; SharePoint is resolved per tenant
RESOURCE_SCOPES = {
    "graph": "https://graph.microsoft.com/.default",
    "arm": "https://management.azure.com/.default",
}

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4       # Parallel requests per client
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# Intune accepts at most this many identities per importDeviceIdentityList call
DEVICE_IMPORT_CHUNK_SIZE = 1000


# ─── Azure Automation ────────────────────────────────────────────────────────

@dataclass
class AutomationConfig:
    """Where the conditional-access runbook lives and how to poll it."""
    subscription_id: str = ""
    resource_group: str = ""
    account_name: str = "spo-conditional-access"
    location: str = "westeurope"
    runbook_name: str = "Set-SiteConditionalAccess"
    webhook_name: str = "Set-SiteConditionalAccess-Webhook"
    webhook_expiry_days: int = 365
    webhook_url: str = ""
    poll_interval_seconds: float = 10.0
    poll_timeout_seconds: float = 600.0

    @property
    def account_path(self) -> str:
        return (
            f"subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Automation/automationAccounts/{self.account_name}"
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.subscription_id and self.resource_group and self.account_name)

    @classmethod
    def from_file(cls, path: str | Path) -> "AutomationConfig":
        """Load an automation-config.json written by `automation deploy`."""
        data = _read_json(path)
        config = cls()
        for k, v in data.items():
            if hasattr(config, k):
                setattr(config, k, v)
        return config

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2) + "\n", encoding="utf-8")
        return path


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory for artifacts."""
    base_dir: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_admin_output")

    @property
    def run_dir(self) -> Path:
        return Path(self.base_dir)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolkitConfig:
    """Top-level configuration for the toolkit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    tenant: TenantConfig = field(default_factory=TenantConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    apply: bool = False           # False = dry run, writes are only planned
    verbose: int = 0

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolkitConfig":
        """Load configuration from a JSON file (AppConfig.json)."""
        data = _read_json(path)
        config = cls()
        for section in ("auth", "tenant", "automation", "output"):
            target = getattr(config, section)
            for k, v in data.get(section, {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)
        if config.auth.mode not in AUTH_MODES:
            raise ConfigError(
                f"Unknown auth mode '{config.auth.mode}' in {path}. "
                f"Expected one of: {', '.join(AUTH_MODES)}"
            )
        config.verbose = int(data.get("verbose", 0))
        return config


def _read_json(path: str | Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object at the top of {path}")
    return data


# ─── Required Graph API Permissions (per command family) ────────────────────

REQUIRED_PERMISSIONS = {
    "roles": {
        "RoleManagement.Read.Directory": "Read role definitions and assignments",
        "RoleManagement.ReadWrite.Directory": "Create custom directory roles",
    },
    "sites": {
        "Sites.Read.All": "Resolve sites, read lists and items for export",
        "Sites.Manage.All": "Create lists and insert items on deploy",
    },
    "devices": {
        "DeviceManagementServiceConfig.ReadWrite.All": "Import corporate device identifiers",
    },
    "site-access": {
        "Policy.Read.All": "Read conditional access authentication contexts",
        "Sites.FullControl.All": "Set site conditional access properties (SharePoint REST)",
    },
    "automation": {
        "Contributor (Azure RBAC)": "Deploy automation account, runbook and webhook",
    },
}
