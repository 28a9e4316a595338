"""
Applies a SiteAccessRequest by trying strategies in order until one lands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..graph.client import GraphAPIError, SharePointClient
from .contexts import SiteAccessError, SiteAccessRequest, SiteAccessState, read_site_access
from .strategies import (
    ALREADY_SET,
    FAILED,
    FALL_THROUGH,
    BaseStrategy,
    StrategyResult,
)

logger = logging.getLogger("m365_admin_toolkit.conditional_access.applier")

STRATEGY_CHOICES = ("auto", "sharepoint-rest", "graph", "automation")


def strategy_order(choice: str, automation_available: bool = False) -> list[str]:
    """Strategy names to try for a --strategy choice."""
    if choice not in STRATEGY_CHOICES:
        raise ValueError(f"Unknown strategy: {choice}")
    if choice != "auto":
        return [choice]
    order = ["sharepoint-rest", "graph"]
    if automation_available:
        order.append("automation")
    return order


@dataclass
class ApplyReport:
    request: SiteAccessRequest
    before: Optional[SiteAccessState] = None
    attempts: list[StrategyResult] = field(default_factory=list)
    outcome: str = FAILED

    @property
    def strategy(self) -> str:
        return self.attempts[-1].strategy if self.attempts else ""

    def to_dict(self) -> dict:
        return {
            "siteUrl": self.request.site_url,
            "requestedPolicy": self.request.policy,
            "requestedContext": self.request.authentication_context_name,
            "before": self.before.to_dict() if self.before else None,
            "outcome": self.outcome,
            "strategy": self.strategy,
            "attempts": [a.to_dict() for a in self.attempts],
        }


class ConditionalAccessApplier:
    """Reads current state, skips no-op writes, falls through failed strategies."""

    def __init__(self, strategies: list[BaseStrategy], reader: Optional[SharePointClient] = None):
        self.strategies = strategies
        self.reader = reader

    async def apply(self, request: SiteAccessRequest) -> ApplyReport:
        report = ApplyReport(request=request)

        if self.reader is not None:
            try:
                report.before = await read_site_access(self.reader, request.site_url)
            except (GraphAPIError, SiteAccessError) as e:
                # an unreadable site still gets every strategy
                logger.warning(f"Could not read current state of {request.site_url}: {e}")
            if report.before is not None and report.before.matches(request):
                logger.info(f"{request.site_url} already has {request.policy}")
                report.outcome = ALREADY_SET
                return report

        for strategy in self.strategies:
            result = await strategy.apply(request)
            report.attempts.append(result)
            report.outcome = result.outcome
            if result.outcome not in FALL_THROUGH:
                break
            logger.info(f"Strategy {strategy.name} → {result.outcome}, trying next")

        return report
