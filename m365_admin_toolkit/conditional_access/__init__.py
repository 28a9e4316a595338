from .contexts import (
    ContextNotFoundError,
    SiteAccessError,
    SiteAccessRequest,
    SiteAccessState,
    SPO_POLICY_VALUES,
    list_authentication_contexts,
    read_site_access,
    resolve_authentication_context,
)
from .strategies import (
    APPLIED,
    ALREADY_SET,
    DENIED,
    FAILED,
    PLANNED,
    UNSUPPORTED,
    UNVERIFIED,
    AutomationStrategy,
    BaseStrategy,
    GraphStrategy,
    SharePointRestStrategy,
    StrategyResult,
    classify_error,
)
from .applier import ApplyReport, ConditionalAccessApplier, STRATEGY_CHOICES, strategy_order

__all__ = [
    "ContextNotFoundError",
    "SiteAccessError",
    "SiteAccessRequest",
    "SiteAccessState",
    "SPO_POLICY_VALUES",
    "list_authentication_contexts",
    "read_site_access",
    "resolve_authentication_context",
    "APPLIED",
    "ALREADY_SET",
    "DENIED",
    "FAILED",
    "PLANNED",
    "UNSUPPORTED",
    "UNVERIFIED",
    "AutomationStrategy",
    "BaseStrategy",
    "GraphStrategy",
    "SharePointRestStrategy",
    "StrategyResult",
    "classify_error",
    "ApplyReport",
    "ConditionalAccessApplier",
    "STRATEGY_CHOICES",
    "strategy_order",
]
