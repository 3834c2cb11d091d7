from .delay import (
    CreditStatus,
    DelayMitigationCoordinator,
    DelayOffer,
    DelayWorkflow,
    DelayWorkflowError,
    RerouteStatus,
    detect_delay,
    eta_alert,
)
from .events import EventLog, WriteQueue
from .policy import DelayPolicy, default_delay_policy
from .reroute import BackupPlan, RerouteResult, backup_plan, log_reroute_decision, reroute_order
from .rollout import RolloutConfig, RolloutRepository, TrustedArrivalMetrics

__all__ = [
    "CreditStatus",
    "DelayMitigationCoordinator",
    "DelayOffer",
    "DelayWorkflow",
    "DelayWorkflowError",
    "RerouteStatus",
    "detect_delay",
    "eta_alert",
    "EventLog",
    "WriteQueue",
    "DelayPolicy",
    "default_delay_policy",
    "BackupPlan",
    "RerouteResult",
    "backup_plan",
    "log_reroute_decision",
    "reroute_order",
    "RolloutConfig",
    "RolloutRepository",
    "TrustedArrivalMetrics",
]
