"""
Alert State Machine

Tracks one AlertInstance per (condition, label-set) through

    inactive -> pending -> firing -> resolved -> inactive

from the predicate results the detector hands it each tick. It never looks
at inhibition or notification timing; that is the router's job.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from src.alerting.conditions import Condition
from src.alerting.detector import LabelSet, PredicateResult, label_set

logger = logging.getLogger(__name__)


class AlertState(str, Enum):
    INACTIVE = "inactive"
    PENDING = "pending"
    FIRING = "firing"
    RESOLVED = "resolved"


AlertKey = Tuple[str, LabelSet]


@dataclass
class AlertInstance:
    """
    Mutable alert state for one monitored entity under one condition.

    Attributes:
        active_at: When the predicate most recently became true
        fired_at: When the current firing episode started
        resolved_at: When the last firing episode ended
        last_notified_at: Last time the instance went out in a firing notification
        needs_resolution: A firing notification went out and the matching
            resolution has not been delivered yet
        fire_count: Number of firing episodes seen
    """

    condition: Condition
    entity: LabelSet
    labels: Dict[str, str]
    active_at: float
    last_evaluated_at: float
    state: AlertState = AlertState.PENDING
    value: float = 0.0
    fired_at: Optional[float] = None
    resolved_at: Optional[float] = None
    last_notified_at: Optional[float] = None
    needs_resolution: bool = False
    fire_count: int = 0
    fingerprint: str = field(init=False)

    def __post_init__(self):
        digest = hashlib.sha256(repr(sorted(self.labels.items())).encode()).hexdigest()
        self.fingerprint = digest[:16]

    @property
    def key(self) -> AlertKey:
        return (self.condition.name, self.entity)

    @property
    def alertname(self) -> str:
        return self.condition.name


@dataclass(frozen=True)
class Transition:
    alertname: str
    labels: Dict[str, str]
    from_state: AlertState
    to_state: AlertState
    at: float


class AlertStateMachine:
    """
    Owns every AlertInstance.

    Only the evaluation loop calls process(); other threads read
    instances() which returns a copy of the list.
    """

    def __init__(self, conditions: Sequence[Condition], resolved_retention: float = 900.0, metrics=None):
        """
        Args:
            conditions: All configured conditions
            resolved_retention: How long a resolved instance is kept before
                it returns to inactive
            metrics: Optional AlertingMetrics
        """
        self.conditions = {c.name: c for c in conditions}
        self.resolved_retention = resolved_retention
        self.metrics = metrics
        self._instances: Dict[AlertKey, AlertInstance] = {}

    def instances(self) -> List[AlertInstance]:
        return sorted(self._instances.values(), key=lambda i: (i.alertname, i.entity))

    def get(self, alertname: str, entity: Dict[str, str]) -> Optional[AlertInstance]:
        return self._instances.get((alertname, label_set(entity)))

    def state_of(self, alertname: str, entity: Dict[str, str]) -> AlertState:
        instance = self.get(alertname, entity)
        return instance.state if instance is not None else AlertState.INACTIVE

    def process(
        self,
        results: Dict[str, List[PredicateResult]],
        now: float,
        held: Optional[Dict[str, FrozenSet[str]]] = None,
    ) -> List[Transition]:
        """
        Apply one tick of predicate results.

        Args:
            results: Condition name -> true predicate results. A condition
                missing from the mapping is treated as false everywhere.
            now: Tick time (epoch seconds)
            held: Condition name -> `instance` label values with no data this
                tick. Instances there that are not in results keep their
                state untouched.

        Returns:
            Transitions made during this tick
        """
        transitions: List[Transition] = []
        seen = set()
        held = held or {}

        for name, condition in self.conditions.items():
            for result in results.get(name, ()):
                key = (name, result.entity)
                seen.add(key)
                self._on_true(condition, result, now, transitions)

        for key in list(self._instances):
            if key in seen:
                continue
            instance = self._instances[key]
            if dict(instance.entity).get("instance") in held.get(instance.alertname, ()):
                continue
            self._on_false(instance, now, transitions)

        if self.metrics is not None:
            self.metrics.record_transitions(transitions)
            self.metrics.update_instance_counts(self._instances.values())

        return transitions

    def _move(self, instance: AlertInstance, to_state: AlertState, now: float, transitions: List[Transition]) -> None:
        transition = Transition(
            alertname=instance.alertname,
            labels=dict(instance.labels),
            from_state=instance.state,
            to_state=to_state,
            at=now,
        )
        instance.state = to_state
        transitions.append(transition)

        message = (
            f"Alert {instance.alertname} {dict(instance.entity)}: "
            f"{transition.from_state.value} -> {to_state.value}"
        )
        if to_state in (AlertState.FIRING, AlertState.RESOLVED):
            logger.info(message)
        else:
            logger.debug(message)

    def _on_true(self, condition: Condition, result: PredicateResult, now: float, transitions: List[Transition]) -> None:
        key = (condition.name, result.entity)
        instance = self._instances.get(key)

        if instance is None:
            instance = AlertInstance(
                condition=condition,
                entity=result.entity,
                labels=condition.alert_labels(result.entity_labels),
                active_at=now,
                last_evaluated_at=now,
                state=AlertState.INACTIVE,
            )
            self._instances[key] = instance
            self._move(instance, AlertState.PENDING, now, transitions)

        elif instance.state is AlertState.RESOLVED:
            # Re-breach: must satisfy `for` again from scratch
            instance.active_at = now
            self._move(instance, AlertState.PENDING, now, transitions)

        instance.value = result.value
        instance.last_evaluated_at = now

        if instance.state is AlertState.PENDING and now - instance.active_at >= condition.for_seconds:
            instance.fired_at = now
            instance.resolved_at = None
            instance.needs_resolution = False
            instance.fire_count += 1
            self._move(instance, AlertState.FIRING, now, transitions)

    def _on_false(self, instance: AlertInstance, now: float, transitions: List[Transition]) -> None:
        instance.last_evaluated_at = now

        if instance.state is AlertState.PENDING:
            if instance.resolved_at is not None:
                # Pending blip after a resolution; fall back to the resolved record
                self._move(instance, AlertState.RESOLVED, now, transitions)
            else:
                self._move(instance, AlertState.INACTIVE, now, transitions)
                del self._instances[instance.key]

        elif instance.state is AlertState.FIRING:
            instance.resolved_at = now
            instance.needs_resolution = (
                instance.last_notified_at is not None and instance.last_notified_at >= instance.fired_at
            )
            self._move(instance, AlertState.RESOLVED, now, transitions)

        elif instance.state is AlertState.RESOLVED:
            age = now - instance.resolved_at
            expired = age >= self.resolved_retention and not instance.needs_resolution
            abandoned = age >= self.resolved_retention + instance.condition.repeat_interval
            if expired or abandoned:
                if instance.needs_resolution:
                    logger.warning(
                        f"Dropping {instance.alertname} {dict(instance.entity)} "
                        f"without a delivered resolution"
                    )
                self._move(instance, AlertState.INACTIVE, now, transitions)
                del self._instances[instance.key]
