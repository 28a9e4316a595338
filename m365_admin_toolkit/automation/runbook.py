"""
PowerShell runbook uploaded to Azure Automation. It receives the webhook
payload and sets the site's conditional access property with PnP.PowerShell.
"""

from __future__ import annotations

from ..config import ConfigError

RUNBOOK_AUTH_MODES = ("managed-identity", "certificate")

_HEADER = r"""param(
    [Parameter(Mandatory = $false)]
    [object] $WebhookData
)

$ErrorActionPreference = "Stop"

if (-not $WebhookData) { throw "This runbook must be started from its webhook." }
$payload = $WebhookData.RequestBody | ConvertFrom-Json
$siteUrl = $payload.SiteUrl
$contextName = $payload.AuthenticationContextName
if (-not $siteUrl) { throw "SiteUrl missing from webhook payload." }

$adminUrl = "{admin_url}"
"""

_CONNECT_MANAGED_IDENTITY = r"""
Connect-PnPOnline -Url $adminUrl -ManagedIdentity
"""

_CONNECT_CERTIFICATE = r"""
$cert = Get-AutomationCertificate -Name "{certificate_name}"
Connect-PnPOnline -Url $adminUrl -ClientId "{client_id}" -Tenant "{tenant_domain}" -Thumbprint $cert.Thumbprint
"""

_BODY = r"""
if ($contextName) {
    Set-PnPTenantSite -Identity $siteUrl -ConditionalAccessPolicy AuthenticationContext -AuthenticationContextName $contextName
} else {
    Set-PnPTenantSite -Identity $siteUrl -ConditionalAccessPolicy AllowFullAccess
}

$site = Get-PnPTenantSite -Identity $siteUrl
Write-Output ("{0}: ConditionalAccessPolicy={1} AuthenticationContextName={2}" -f `
    $siteUrl, $site.ConditionalAccessPolicy, $site.AuthenticationContextName)
"""


def render_runbook(
    admin_url: str,
    auth: str = "managed-identity",
    client_id: str = "",
    tenant_domain: str = "",
    certificate_name: str = "SiteAccessCertificate",
) -> str:
    """Return the runbook source for the chosen runbook auth mode."""
    if auth not in RUNBOOK_AUTH_MODES:
        raise ConfigError(f"Unknown runbook auth: {auth}")

    script = _HEADER.replace("{admin_url}", admin_url)
    if auth == "managed-identity":
        script += _CONNECT_MANAGED_IDENTITY
    else:
        if not client_id or not tenant_domain:
            raise ConfigError(
                "Certificate runbook auth needs --runbook-client-id and --tenant-domain"
            )
        script += (
            _CONNECT_CERTIFICATE
            .replace("{certificate_name}", certificate_name)
            .replace("{client_id}", client_id)
            .replace("{tenant_domain}", tenant_domain)
        )
    return script + _BODY
