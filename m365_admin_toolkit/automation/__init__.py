from .deployer import (
    AUTOMATION_CONFIG_FILE,
    WEBHOOK_URL_FILE,
    AutomationDeployer,
    AutomationDeployment,
    AutomationError,
    grant_sharepoint_access,
)
from .runbook import RUNBOOK_AUTH_MODES, render_runbook
from .webhook import JobPoller, JobTimeoutError, WebhookTrigger, TERMINAL_STATUSES, redact_webhook_url

__all__ = [
    "AUTOMATION_CONFIG_FILE",
    "WEBHOOK_URL_FILE",
    "AutomationDeployer",
    "AutomationDeployment",
    "AutomationError",
    "grant_sharepoint_access",
    "RUNBOOK_AUTH_MODES",
    "render_runbook",
    "JobPoller",
    "JobTimeoutError",
    "WebhookTrigger",
    "TERMINAL_STATUSES",
    "redact_webhook_url",
]
