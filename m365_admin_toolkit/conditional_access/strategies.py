"""
Strategies for writing a site's conditional access property.

Each strategy turns whatever its API raises into a StrategyResult outcome so
the applier can decide whether to fall through to the next one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..config import ToolkitError
from ..graph.client import GraphAPIError, GraphClient, SharePointClient
from ..automation.webhook import JobPoller, WebhookTrigger
from .contexts import SiteAccessRequest, read_site_access

logger = logging.getLogger("m365_admin_toolkit.conditional_access.strategies")

APPLIED = "applied"
PLANNED = "planned"
ALREADY_SET = "already_set"
UNVERIFIED = "unverified"
UNSUPPORTED = "unsupported"
DENIED = "denied"
FAILED = "failed"

# Outcomes after which the next strategy is tried
FALL_THROUGH = {UNVERIFIED, UNSUPPORTED, DENIED}

# Status codes meaning "this API cannot set that property"
_UNSUPPORTED_STATUS = {400, 405, 501}


@dataclass
class StrategyResult:
    strategy: str
    outcome: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"strategy": self.strategy, "outcome": self.outcome, "detail": self.detail}


def classify_error(error: GraphAPIError) -> str:
    if error.is_permission_error:
        return DENIED
    if error.status_code in _UNSUPPORTED_STATUS:
        return UNSUPPORTED
    return FAILED


class BaseStrategy(ABC):
    """
    Abstract base class for all site access strategies.
    Subclasses implement _apply(); apply() maps exceptions to outcomes.
    """

    name: str = "base"

    async def apply(self, request: SiteAccessRequest) -> StrategyResult:
        logger.info(f"[{self.name}] Setting {request.policy} on {request.site_url}")
        try:
            result = await self._apply(request)
        except GraphAPIError as e:
            outcome = classify_error(e)
            logger.warning(f"[{self.name}] {outcome}: {e}")
            detail = e.message
            if e.hint:
                detail += f" ({e.hint})"
            return StrategyResult(self.name, outcome, detail)
        except ToolkitError as e:
            logger.warning(f"[{self.name}] failed: {e}")
            return StrategyResult(self.name, FAILED, str(e))

        logger.info(f"[{self.name}] {result.outcome}")
        return result

    @abstractmethod
    async def _apply(self, request: SiteAccessRequest) -> StrategyResult:
        raise NotImplementedError

    async def _verify(self, admin: Optional[SharePointClient], request: SiteAccessRequest) -> StrategyResult:
        """Read the property back; only a matching read counts as applied."""
        if admin is None:
            return StrategyResult(self.name, UNVERIFIED, "No SharePoint admin reader to confirm the change")
        state = await read_site_access(admin, request.site_url)
        if state.matches(request):
            return StrategyResult(self.name, APPLIED, "Confirmed by read-back")
        return StrategyResult(
            self.name,
            UNVERIFIED,
            f"Write accepted but site still reports {state.policy} "
            f"'{state.context_name}'",
        )


class SharePointRestStrategy(BaseStrategy):
    """MERGE on the tenant admin site's SPO.Tenant/sites endpoint."""

    name = "sharepoint-rest"

    def __init__(self, admin: SharePointClient):
        self.admin = admin

    async def _apply(self, request: SiteAccessRequest) -> StrategyResult:
        state = await read_site_access(self.admin, request.site_url)
        if not state.site_id:
            return StrategyResult(self.name, FAILED, "Site id not returned by SharePoint")

        response = await self.admin.merge(
            f"SPO.Tenant/sites('{state.site_id}')",
            {
                "ConditionalAccessPolicy": request.policy_value,
                "AuthenticationContextName": request.authentication_context_name,
            },
        )
        if response.get("_dry_run"):
            return StrategyResult(self.name, PLANNED, "Dry run, MERGE not sent")
        return await self._verify(self.admin, request)


class GraphStrategy(BaseStrategy):
    """
    PATCH on the Graph site resource. Graph's acceptance is not trusted:
    the result is applied only when SharePoint reads back the new value.
    """

    name = "graph"

    def __init__(self, graph: GraphClient, verifier: Optional[SharePointClient] = None):
        self.graph = graph
        self.verifier = verifier

    async def _apply(self, request: SiteAccessRequest) -> StrategyResult:
        site = await self.graph.resolve_site(request.site_url)
        response = await self.graph.patch(
            f"sites/{site['id']}",
            {
                "conditionalAccessPolicy": request.policy[0].lower() + request.policy[1:],
                "authenticationContextName": request.authentication_context_name,
            },
        )
        if response.get("_dry_run"):
            return StrategyResult(self.name, PLANNED, "Dry run, PATCH not sent")
        return await self._verify(self.verifier, request)


class AutomationStrategy(BaseStrategy):
    """Hand the change to the Azure Automation runbook and wait for its job."""

    name = "automation"

    def __init__(
        self,
        trigger: WebhookTrigger,
        webhook_url: str,
        poller: Optional[JobPoller] = None,
    ):
        self.trigger = trigger
        self.webhook_url = webhook_url
        self.poller = poller

    async def _apply(self, request: SiteAccessRequest) -> StrategyResult:
        job_ids = await self.trigger.trigger(self.webhook_url, request.payload())
        if not job_ids:
            if not self.trigger.guardian.apply:
                return StrategyResult(self.name, PLANNED, "Dry run, webhook not called")
            return StrategyResult(self.name, FAILED, "Webhook accepted but returned no job id")

        job_id = job_ids[0]
        if self.poller is None:
            return StrategyResult(self.name, UNVERIFIED, f"Job {job_id} queued, not polled")

        job = await self.poller.wait(job_id)
        if job["status"] == "Completed":
            return StrategyResult(self.name, APPLIED, f"Job {job_id} completed")
        detail = job.get("exception") or job.get("statusDetails") or ""
        return StrategyResult(self.name, FAILED, f"Job {job_id} {job['status']}: {detail}")
