"""
Fire-and-poll for the automation runbook: POST to the webhook, then poll the
job on a fixed interval until it reaches a terminal status.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from ..config import AutomationConfig, ToolkitError
from ..graph.client import ArmClient, GraphAPIError
from ..safety.guardian import ChangeGuardian
from .deployer import AutomationError

logger = logging.getLogger("m365_admin_toolkit.automation.webhook")

TERMINAL_STATUSES = {"Completed", "Failed", "Stopped", "Suspended"}


class JobTimeoutError(ToolkitError):
    """Raised when a runbook job does not finish within the poll timeout."""
    pass


def redact_webhook_url(url: str) -> str:
    """Webhook URLs carry their secret in the query string."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "token=***" if parts.query else "", ""))


class WebhookTrigger:
    """Posts a JSON payload to an Azure Automation webhook."""

    def __init__(self, guardian: ChangeGuardian, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.guardian = guardian
        self._transport = transport

    async def trigger(self, webhook_url: str, payload: dict) -> list[str]:
        """Returns the job ids Azure queued, or [] on a dry run."""
        if not webhook_url:
            raise AutomationError("No webhook URL configured. Run `automation deploy --apply` first.")

        if not self.guardian.validate_request("POST", redact_webhook_url(webhook_url), payload):
            return []

        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0), transport=self._transport) as client:
            response = await client.post(webhook_url, json=payload)

        if response.status_code not in (200, 202):
            raise GraphAPIError(
                response.status_code,
                response.text[:200] or "Webhook call rejected",
                redact_webhook_url(webhook_url),
            )
        try:
            job_ids = response.json().get("JobIds", [])
        except ValueError:
            job_ids = []
        logger.info(f"Webhook accepted, jobs: {job_ids}")
        return job_ids


class JobPoller:
    """Polls Azure Automation jobs. Fixed interval, no backoff."""

    def __init__(
        self,
        arm: ArmClient,
        config: AutomationConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.arm = arm
        self.config = config
        self._sleep = sleep

    def _job_path(self, job_id: str) -> str:
        return f"{self.config.account_path}/jobs/{job_id}"

    async def get_job(self, job_id: str) -> dict:
        job = await self.arm.get(self._job_path(job_id))
        if job.get("_not_found"):
            raise AutomationError(f"Automation job not found: {job_id}")
        props = job.get("properties", {})
        return {
            "jobId": job_id,
            "status": props.get("status", "Unknown"),
            "statusDetails": props.get("statusDetails"),
            "exception": props.get("exception"),
            "startTime": props.get("startTime"),
            "endTime": props.get("endTime"),
            "runbook": (props.get("runbook") or {}).get("name"),
        }

    async def get_output(self, job_id: str) -> str:
        output = await self.arm.get(f"{self._job_path(job_id)}/output")
        return output.get("_text", "") if isinstance(output, dict) else str(output)

    async def wait(self, job_id: str, on_status: Optional[Callable[[str], None]] = None) -> dict:
        """Poll until the job reaches a terminal status; raise JobTimeoutError otherwise."""
        interval = max(self.config.poll_interval_seconds, 0.0)
        max_polls = max(1, math.ceil(self.config.poll_timeout_seconds / interval)) if interval else 1
        last_status = None

        for attempt in range(max_polls + 1):
            job = await self.get_job(job_id)
            status = job["status"]
            if status != last_status:
                logger.info(f"Job {job_id}: {status}")
                if on_status:
                    on_status(status)
                last_status = status
            if status in TERMINAL_STATUSES:
                if status == "Completed":
                    job["output"] = await self.get_output(job_id)
                return job
            if attempt < max_polls:
                await self._sleep(interval)

        raise JobTimeoutError(
            f"Job {job_id} still '{last_status}' after {self.config.poll_timeout_seconds:.0f}s"
        )
