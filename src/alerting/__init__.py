"""
Replication-Lag and Connector Alert Evaluation

Correlates replication slot lag with Kafka Connect status to detect a
stalled consumer letting WAL accumulate, and drives alert notifications.

Main components:
- conditions: Data-driven alert condition descriptors
- lag_feed: Replication slot lag sources
- detector: Threshold and sliding-window growth evaluation
- state_machine: pending/firing/resolved tracking
- inhibition: Alertmanager-style inhibit rules
- router: Grouping, repeat intervals and dispatch
"""

from src.alerting.conditions import Condition, ConditionKind, default_conditions
from src.alerting.detector import LagGrowthDetector, PredicateResult
from src.alerting.lag_feed import LagSample, StaticLagFeed
from src.alerting.state_machine import AlertInstance, AlertState, AlertStateMachine
from src.alerting.inhibition import InhibitionRule, Inhibitor
from src.alerting.router import AlertEvent, Notification, NotificationRouter

__all__ = [
    "Condition",
    "ConditionKind",
    "default_conditions",
    "LagGrowthDetector",
    "PredicateResult",
    "LagSample",
    "StaticLagFeed",
    "AlertInstance",
    "AlertState",
    "AlertStateMachine",
    "InhibitionRule",
    "Inhibitor",
    "AlertEvent",
    "Notification",
    "NotificationRouter",
]

__version__ = "1.0.0"
