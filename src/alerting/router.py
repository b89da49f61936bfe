"""
Notification Router

Decides when alert instances are handed to the external dispatcher:
batching by grouping key, the initial group wait, repeat intervals while
firing, one resolution per notified firing episode, and inhibition at
dispatch time. A dispatch failure is logged and retried at the group's next
repeat-interval tick; it never propagates to the evaluation loop.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.alerting.conditions import Condition
from src.alerting.inhibition import Inhibitor
from src.alerting.state_machine import AlertInstance, AlertState

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r'\{\{\s*\$(labels\.(\w+)|value)\s*\}\}')


def render_annotation(template: str, labels: Dict[str, str], value: float) -> str:
    """Expand {{ $labels.x }} and {{ $value }} placeholders."""
    def substitute(match):
        if match.group(2):
            return labels.get(match.group(2), "")
        return f"{value:g}"
    return _TEMPLATE_RE.sub(substitute, template)


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass(frozen=True)
class AlertEvent:
    """Structured alert handed to the external router."""

    alertname: str
    severity: str
    status: str
    labels: Dict[str, str]
    annotations: Dict[str, str]
    starts_at: float
    ends_at: Optional[float]
    value: float
    fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alertname": self.alertname,
            "severity": self.severity,
            "status": self.status,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": isoformat(self.starts_at),
            "endsAt": isoformat(self.ends_at),
            "value": self.value,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class Notification:
    """One batch of events sharing a grouping key."""

    group_key: str
    alertname: str
    group_labels: Dict[str, str]
    events: Tuple[AlertEvent, ...]
    created_at: float

    @property
    def status(self) -> str:
        return "firing" if any(e.status == "firing" for e in self.events) else "resolved"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupKey": self.group_key,
            "status": self.status,
            "alertname": self.alertname,
            "groupLabels": dict(self.group_labels),
            "createdAt": isoformat(self.created_at),
            "alerts": [event.to_dict() for event in self.events],
        }


class DispatchError(Exception):
    """The external router did not accept a notification."""


def build_event(instance: AlertInstance, status: str) -> AlertEvent:
    condition = instance.condition
    return AlertEvent(
        alertname=instance.alertname,
        severity=condition.severity,
        status=status,
        labels=dict(instance.labels),
        annotations={
            name: render_annotation(text, instance.labels, instance.value)
            for name, text in condition.annotations.items()
        },
        starts_at=instance.fired_at if instance.fired_at is not None else instance.active_at,
        ends_at=instance.resolved_at if status == "resolved" else None,
        value=instance.value,
        fingerprint=instance.fingerprint,
    )


@dataclass
class GroupState:
    key: str
    condition: Condition
    group_labels: Dict[str, str]
    first_seen: float
    last_sent_at: Optional[float] = None
    next_retry_at: Optional[float] = None
    members: List[AlertInstance] = field(default_factory=list)


def group_key_for(instance: AlertInstance) -> Tuple[str, Dict[str, str]]:
    condition = instance.condition
    group_labels = {name: instance.labels.get(name, "") for name in condition.group_by}
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(group_labels.items()))
    return f"{condition.name}:{{{rendered}}}", group_labels


class NotificationRouter:
    """Groups, times and dispatches alert notifications."""

    def __init__(self, dispatcher, inhibitor: Optional[Inhibitor] = None, metrics=None):
        """
        Args:
            dispatcher: Object with send(notification) raising DispatchError
            inhibitor: Inhibition rules checked before every dispatch
            metrics: Optional AlertingMetrics
        """
        self.dispatcher = dispatcher
        self.inhibitor = inhibitor or Inhibitor()
        self.metrics = metrics
        self._groups: Dict[str, GroupState] = {}

    def groups(self) -> List[GroupState]:
        return list(self._groups.values())

    def flush(self, instances: Sequence[AlertInstance], now: float) -> List[Notification]:
        """
        Dispatch every group that is due.

        Args:
            instances: All alert instances, in any state
            now: Tick time

        Returns:
            Notifications the dispatcher accepted during this call
        """
        firing = [i for i in instances if i.state is AlertState.FIRING]
        self._regroup(instances, now)

        sent = []
        for group in list(self._groups.values()):
            notification = self._flush_group(group, firing, now)
            if notification is not None:
                sent.append(notification)
        return sent

    def _regroup(self, instances: Sequence[AlertInstance], now: float) -> None:
        for group in self._groups.values():
            group.members = []

        for instance in instances:
            if instance.state is not AlertState.FIRING and not instance.needs_resolution:
                continue
            key, group_labels = group_key_for(instance)
            group = self._groups.get(key)
            if group is None:
                group = GroupState(key=key, condition=instance.condition, group_labels=group_labels, first_seen=now)
                self._groups[key] = group
            group.members.append(instance)

        for key in [k for k, g in self._groups.items() if not g.members]:
            del self._groups[key]

    def _flush_group(self, group: GroupState, firing: List[AlertInstance], now: float) -> Optional[Notification]:
        condition = group.condition

        if now - group.first_seen < condition.group_wait:
            return None
        if group.next_retry_at is not None and now < group.next_retry_at:
            return None

        to_fire = []
        for instance in group.members:
            if instance.state is not AlertState.FIRING:
                continue
            if self.inhibitor.is_inhibited(instance, firing):
                if self.metrics is not None:
                    self.metrics.record_notification(instance.alertname, "firing", "inhibited")
                continue
            to_fire.append(instance)

        to_resolve = []
        for instance in group.members:
            if not instance.needs_resolution or instance.state is AlertState.FIRING:
                continue
            # Held back until the source clears; sent on a later flush
            if self.inhibitor.is_inhibited(instance, firing):
                if self.metrics is not None:
                    self.metrics.record_notification(instance.alertname, "resolved", "inhibited")
                continue
            to_resolve.append(instance)

        has_new = any(
            i.last_notified_at is None or i.last_notified_at < i.fired_at
            for i in to_fire
        )
        repeat_due = (
            bool(to_fire)
            and group.last_sent_at is not None
            and now - group.last_sent_at >= condition.repeat_interval
        )
        retry_due = group.next_retry_at is not None and (to_fire or to_resolve)

        if not (has_new or to_resolve or repeat_due or retry_due):
            return None

        notification = Notification(
            group_key=group.key,
            alertname=condition.name,
            group_labels=dict(group.group_labels),
            events=tuple(
                [build_event(i, "firing") for i in to_fire]
                + [build_event(i, "resolved") for i in to_resolve]
            ),
            created_at=now,
        )

        try:
            self.dispatcher.send(notification)
        except Exception as e:
            group.next_retry_at = now + condition.repeat_interval
            logger.error(
                f"Dispatch of {group.key} failed ({len(notification.events)} alerts), "
                f"retrying at next repeat interval: {e}"
            )
            if self.metrics is not None:
                for event in notification.events:
                    self.metrics.record_notification(event.alertname, event.status, "failure")
            return None

        for instance in to_fire:
            instance.last_notified_at = now
        for instance in to_resolve:
            instance.needs_resolution = False

        group.last_sent_at = now
        group.next_retry_at = None

        if self.metrics is not None:
            for event in notification.events:
                self.metrics.record_notification(event.alertname, event.status, "success")

        logger.info(
            f"Dispatched {group.key}: firing={len(to_fire)}, resolved={len(to_resolve)}"
        )
        return notification
