"""
Alert Condition Definitions

Conditions are data, not code: each one names a kind (which predicate the
detector runs), its thresholds, the severity and the notification timing.
The built-in rule set below mirrors the alert rules deployed with the
monitoring stack; a RULES_FILE can replace it.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from src.utils.config import ConfigError, parse_bytes, parse_duration

logger = logging.getLogger(__name__)


class ConditionKind(str, Enum):
    """Predicate families understood by the detector."""

    LAG_THRESHOLD = "lag_threshold"
    INACTIVE_WITH_LAG = "inactive_with_lag"
    LAG_GROWTH = "lag_growth"
    CONNECTOR_FAILED = "connector_failed"
    TASK_FAILED = "task_failed"
    ENDPOINT_DOWN = "endpoint_down"


LAG_KINDS = frozenset({
    ConditionKind.LAG_THRESHOLD,
    ConditionKind.INACTIVE_WITH_LAG,
    ConditionKind.LAG_GROWTH,
})

# Kinds whose entities live on a Connect endpoint and are unknown while it is down
ENDPOINT_SCOPED_KINDS = frozenset({
    ConditionKind.CONNECTOR_FAILED,
    ConditionKind.TASK_FAILED,
})

# Labels identifying the monitored entity, per kind
ENTITY_LABELS: Dict[ConditionKind, Tuple[str, ...]] = {
    ConditionKind.LAG_THRESHOLD: ("slot_name",),
    ConditionKind.INACTIVE_WITH_LAG: ("slot_name",),
    ConditionKind.LAG_GROWTH: ("slot_name",),
    ConditionKind.CONNECTOR_FAILED: ("instance", "connector"),
    ConditionKind.TASK_FAILED: ("instance", "connector", "task"),
    ConditionKind.ENDPOINT_DOWN: ("instance",),
}

# Notification timing by severity: (group_wait, repeat_interval) in seconds
SEVERITY_TIMING: Dict[str, Tuple[float, float]] = {
    "critical": (10.0, 3600.0),
    "warning": (30.0, 4 * 3600.0),
    "info": (60.0, 12 * 3600.0),
}


@dataclass(frozen=True)
class Condition:
    """
    A named alert rule.

    Attributes:
        name: Alert name (the `alertname` label)
        kind: Predicate family
        severity: critical / warning / info
        for_seconds: How long the predicate must hold before firing
        threshold_bytes: Lag threshold (lag_threshold, inactive_with_lag)
        window_seconds: Lookback window (lag_growth)
        delta_bytes: Required growth over the window (lag_growth)
        min_lag_bytes: Optional absolute floor for lag_growth
        group_by: Labels batching instances into one notification
        group_wait_seconds: Delay before the first notification of a group
        repeat_interval_seconds: Re-notification interval while firing
        labels: Static labels added to every instance
        annotations: Free-form text handed to the router
    """

    name: str
    kind: ConditionKind
    severity: str = "warning"
    for_seconds: float = 0.0
    threshold_bytes: Optional[float] = None
    window_seconds: Optional[float] = None
    delta_bytes: Optional[float] = None
    min_lag_bytes: Optional[float] = None
    group_by: Tuple[str, ...] = ()
    group_wait_seconds: Optional[float] = None
    repeat_interval_seconds: Optional[float] = None
    labels: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    annotations: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def entity_labels(self) -> Tuple[str, ...]:
        return ENTITY_LABELS[self.kind]

    @property
    def group_wait(self) -> float:
        if self.group_wait_seconds is not None:
            return self.group_wait_seconds
        return SEVERITY_TIMING.get(self.severity, SEVERITY_TIMING["warning"])[0]

    @property
    def repeat_interval(self) -> float:
        if self.repeat_interval_seconds is not None:
            return self.repeat_interval_seconds
        return SEVERITY_TIMING.get(self.severity, SEVERITY_TIMING["warning"])[1]

    @property
    def lookback_seconds(self) -> float:
        """History the detector must retain for this condition."""
        return self.window_seconds or 0.0

    def alert_labels(self, entity: Dict[str, str]) -> Dict[str, str]:
        """Full label-set of an instance: static + alertname + severity + entity."""
        result = dict(self.labels)
        result["alertname"] = self.name
        result["severity"] = self.severity
        result.update(entity)
        return result


def parse_condition(definition: Dict[str, Any]) -> Condition:
    """
    Build a Condition from a rule-file mapping.

    Example:
        {"alert": "ReplicationSlotLagCritical", "kind": "lag_threshold",
         "threshold": "5GB", "for": "5m", "severity": "critical"}

    Raises:
        ConfigError: On unknown kind or missing/invalid parameters
    """
    if not isinstance(definition, dict):
        raise ConfigError(f"Condition definition must be a mapping, got {type(definition).__name__}")

    name = definition.get("alert") or definition.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError(f"Condition without a name: {definition}")

    try:
        kind = ConditionKind(definition.get("kind"))
    except ValueError:
        raise ConfigError(f"{name}: unknown kind {definition.get('kind')!r}")

    labels = dict(definition.get("labels") or {})
    severity = str(definition.get("severity") or labels.pop("severity", "warning"))
    labels.pop("severity", None)
    if severity not in SEVERITY_TIMING:
        raise ConfigError(f"{name}: unknown severity {severity!r}")

    threshold = delta = window = floor = None

    if kind in (ConditionKind.LAG_THRESHOLD, ConditionKind.INACTIVE_WITH_LAG):
        threshold = parse_bytes(definition.get("threshold"), f"{name}.threshold")

    if kind is ConditionKind.LAG_GROWTH:
        window = parse_duration(definition.get("window"), f"{name}.window")
        delta = parse_bytes(definition.get("delta"), f"{name}.delta")
        if window <= 0:
            raise ConfigError(f"{name}.window must be positive")
        if definition.get("min_lag") is not None:
            floor = parse_bytes(definition.get("min_lag"), f"{name}.min_lag")

    group_by = definition.get("group_by") or ()
    if not isinstance(group_by, (list, tuple)) or not all(isinstance(g, str) for g in group_by):
        raise ConfigError(f"{name}.group_by must be a list of label names")

    group_wait = definition.get("group_wait")
    repeat_interval = definition.get("repeat_interval")

    condition = Condition(
        name=name,
        kind=kind,
        severity=severity,
        for_seconds=parse_duration(definition.get("for", 0), f"{name}.for"),
        threshold_bytes=threshold,
        window_seconds=window,
        delta_bytes=delta,
        min_lag_bytes=floor,
        group_by=tuple(group_by),
        group_wait_seconds=parse_duration(group_wait, f"{name}.group_wait") if group_wait is not None else None,
        repeat_interval_seconds=(
            parse_duration(repeat_interval, f"{name}.repeat_interval") if repeat_interval is not None else None
        ),
        labels={str(k): str(v) for k, v in labels.items()},
        annotations={str(k): str(v) for k, v in (definition.get("annotations") or {}).items()},
    )

    if condition.repeat_interval <= 0:
        raise ConfigError(f"{name}.repeat_interval must be positive")

    return condition


def parse_conditions(definitions: List[Dict[str, Any]]) -> List[Condition]:
    """
    Parse a list of condition definitions.

    Raises:
        ConfigError: On the first invalid definition or a duplicate name
    """
    conditions = []
    seen = set()
    for definition in definitions:
        condition = parse_condition(definition)
        if condition.name in seen:
            raise ConfigError(f"Duplicate condition name: {condition.name}")
        seen.add(condition.name)
        conditions.append(condition)
    return conditions


DEFAULT_CONDITION_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "alert": "ReplicationSlotLagWarning",
        "kind": "lag_threshold",
        "threshold": "1GB",
        "for": "5m",
        "severity": "warning",
        "labels": {"component": "replication"},
        "annotations": {
            "summary": "Replication slot lag above 1GB",
            "description": "Slot {{ $labels.slot_name }} is retaining {{ $value }} bytes of WAL",
        },
    },
    {
        "alert": "ReplicationSlotLagCritical",
        "kind": "lag_threshold",
        "threshold": "5GB",
        "for": "5m",
        "severity": "critical",
        "labels": {"component": "replication"},
        "annotations": {
            "summary": "Replication slot lag above 5GB",
            "description": "Slot {{ $labels.slot_name }} is retaining {{ $value }} bytes of WAL. Disk exhaustion risk!",
        },
    },
    {
        "alert": "ReplicationSlotInactive",
        "kind": "inactive_with_lag",
        "threshold": "100MB",
        "for": "5m",
        "severity": "warning",
        "labels": {"component": "replication"},
        "annotations": {
            "summary": "Inactive replication slot is retaining WAL",
            "description": "Slot {{ $labels.slot_name }} has no consumer and {{ $value }} bytes of lag",
        },
    },
    {
        "alert": "WALGrowthStalledConsumer",
        "kind": "lag_growth",
        "window": "30m",
        "delta": "1GB",
        "for": "5m",
        "severity": "critical",
        "labels": {"component": "replication"},
        "annotations": {
            "summary": "WAL accumulating behind a stalled consumer",
            "description": "Slot {{ $labels.slot_name }} is inactive and grew by {{ $value }} bytes in 30m",
        },
    },
    {
        "alert": "KafkaConnectConnectorFailed",
        "kind": "connector_failed",
        "for": "1m",
        "severity": "critical",
        "group_by": ["instance"],
        "labels": {"component": "connector"},
        "annotations": {
            "summary": "Kafka Connect connector failed",
            "description": "Connector {{ $labels.connector }} on {{ $labels.instance }} is FAILED",
        },
    },
    {
        "alert": "KafkaConnectTaskFailed",
        "kind": "task_failed",
        "for": "1m",
        "severity": "critical",
        "group_by": ["instance", "connector"],
        "labels": {"component": "connector"},
        "annotations": {
            "summary": "Kafka Connect task failed",
            "description": "Task {{ $labels.task }} of {{ $labels.connector }} on {{ $labels.instance }} is FAILED",
        },
    },
    {
        "alert": "KafkaConnectDown",
        "kind": "endpoint_down",
        "for": "1m",
        "severity": "critical",
        "labels": {"component": "connector"},
        "annotations": {
            "summary": "Kafka Connect REST API unreachable",
            "description": "{{ $labels.instance }} did not answer the last polls",
        },
    },
]


DEFAULT_INHIBIT_RULE_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "source_match": {"alertname": "KafkaConnectDown"},
        "target_match_re": {"alertname": "KafkaConnect(Connector|Task)Failed"},
        "equal": ["instance"],
    },
    {
        "source_match": {"alertname": "ReplicationSlotLagCritical"},
        "target_match": {"alertname": "ReplicationSlotLagWarning"},
        "equal": ["slot_name"],
    },
    {
        "source_match": {"alertname": "WALGrowthStalledConsumer"},
        "target_match": {"alertname": "ReplicationSlotInactive"},
        "equal": ["slot_name"],
    },
]


def default_conditions() -> List[Condition]:
    return parse_conditions(DEFAULT_CONDITION_DEFINITIONS)


def load_rules_document(path: str) -> Dict[str, Any]:
    """
    Read a rules YAML file with `conditions` and optional `inhibit_rules`.

    Raises:
        ConfigError: If the file is unreadable, unparsable or lacks conditions
    """
    try:
        document = yaml.safe_load(Path(path).read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read rules file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse rules file {path}: {e}")

    if not isinstance(document, dict) or not isinstance(document.get("conditions"), list):
        raise ConfigError(f"Rules file {path} must contain a 'conditions' list")

    inhibit_rules = document.get("inhibit_rules", [])
    if not isinstance(inhibit_rules, list):
        raise ConfigError(f"Rules file {path}: 'inhibit_rules' must be a list")

    logger.info(
        f"Loaded rules file {path}: {len(document['conditions'])} conditions, "
        f"{len(inhibit_rules)} inhibit rules"
    )
    return document
