"""
Alert Rule Export for Prometheus and Alertmanager

Renders the active conditions as a Prometheus rule file, and their grouping,
timing and inhibition parameters as an Alertmanager configuration fragment,
so an external Prometheus/Alertmanager pair can be configured to agree with
the in-process evaluator.
"""

import logging
from typing import Any, Dict, List, Sequence

import yaml

from src.alerting.conditions import Condition, ConditionKind
from src.alerting.inhibition import InhibitionRule

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Render seconds as the largest exact Prometheus duration unit."""
    seconds = int(seconds)
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


class AlertRuleGenerator:
    """Generates Prometheus alert rules and Alertmanager routing from conditions."""

    def __init__(
        self,
        conditions: Sequence[Condition],
        inhibit_rules: Sequence[InhibitionRule] = (),
        lag_metric: str = "pg_replication_slots_pg_wal_lsn_diff",
        active_metric: str = "pg_replication_slots_active",
        evaluation_interval: float = 30.0,
    ):
        """
        Initialize alert rule generator.

        Args:
            conditions: Conditions to render
            inhibit_rules: Inhibition rules to render
            lag_metric: Series carrying replication slot lag in bytes
            active_metric: Series carrying the slot active flag (1/0)
            evaluation_interval: Rule group evaluation interval in seconds
        """
        self.conditions = list(conditions)
        self.inhibit_rules = list(inhibit_rules)
        self.lag_metric = lag_metric
        self.active_metric = active_metric
        self.evaluation_interval = evaluation_interval

    def expression(self, condition: Condition) -> str:
        """PromQL equivalent of a condition's predicate."""
        lag = self.lag_metric
        active = self.active_metric

        if condition.kind is ConditionKind.LAG_THRESHOLD:
            return f"{lag} > {condition.threshold_bytes:.0f}"

        if condition.kind is ConditionKind.INACTIVE_WITH_LAG:
            return f"({lag} > {condition.threshold_bytes:.0f}) and on(slot_name) ({active} == 0)"

        if condition.kind is ConditionKind.LAG_GROWTH:
            window = format_duration(condition.window_seconds)
            expr = (
                f"({lag} - {lag} offset {window}) > {condition.delta_bytes:.0f}"
                f" and on(slot_name) ({active} == 0)"
            )
            if condition.min_lag_bytes is not None:
                expr += f" and on(slot_name) ({lag} > {condition.min_lag_bytes:.0f})"
            return expr

        if condition.kind is ConditionKind.CONNECTOR_FAILED:
            return 'kafka_connect_connector_state{state="failed"} == 1'

        if condition.kind is ConditionKind.TASK_FAILED:
            return 'kafka_connect_connector_task_state{state="failed"} == 1'

        if condition.kind is ConditionKind.ENDPOINT_DOWN:
            return "kafka_connect_up == 0"

        raise ValueError(f"No expression for kind {condition.kind}")

    def generate_alert_rules(self) -> Dict[str, Any]:
        """
        Generate complete alert rule configuration.

        Returns:
            Dict with one rule group per component label, in Prometheus format
        """
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for condition in self.conditions:
            component = condition.labels.get("component", "general")
            labels = dict(condition.labels)
            labels["severity"] = condition.severity

            rule = {
                "alert": condition.name,
                "expr": self.expression(condition),
            }
            if condition.for_seconds:
                rule["for"] = format_duration(condition.for_seconds)
            rule["labels"] = labels
            if condition.annotations:
                rule["annotations"] = dict(condition.annotations)

            grouped.setdefault(component, []).append(rule)

        groups = [
            {
                "name": f"connect_exporter_{component}",
                "interval": format_duration(self.evaluation_interval),
                "rules": rules,
            }
            for component, rules in grouped.items()
        ]

        logger.info(f"Generated {len(groups)} alert rule groups")
        return {"groups": groups}

    def generate_alertmanager_config(self, receiver: str = "default") -> Dict[str, Any]:
        """
        Generate an Alertmanager route tree and inhibit_rules.

        One child route per condition carries its group_by, group_wait and
        repeat_interval.
        """
        routes = []
        for condition in self.conditions:
            routes.append({
                "matchers": [f'alertname="{condition.name}"'],
                "receiver": receiver,
                "group_by": ["alertname", *condition.group_by],
                "group_wait": format_duration(condition.group_wait),
                "repeat_interval": format_duration(condition.repeat_interval),
            })

        inhibit = []
        for rule in self.inhibit_rules:
            entry: Dict[str, Any] = {}
            source = rule.source.to_dict()
            target = rule.target.to_dict()
            if source["match"]:
                entry["source_match"] = source["match"]
            if source["match_re"]:
                entry["source_match_re"] = source["match_re"]
            if target["match"]:
                entry["target_match"] = target["match"]
            if target["match_re"]:
                entry["target_match_re"] = target["match_re"]
            if rule.equal:
                entry["equal"] = list(rule.equal)
            inhibit.append(entry)

        return {
            "route": {
                "receiver": receiver,
                "group_by": ["alertname"],
                "routes": routes,
            },
            "inhibit_rules": inhibit,
        }

    def export_to_yaml(self, rules_file: str, alertmanager_file: str = None) -> None:
        """
        Export alert rules (and optionally the Alertmanager fragment) to YAML.

        Args:
            rules_file: Path of the Prometheus rule file
            alertmanager_file: Optional path of the Alertmanager fragment
        """
        with open(rules_file, 'w') as f:
            yaml.dump(self.generate_alert_rules(), f, default_flow_style=False, sort_keys=False)
        logger.info(f"Alert rules exported to {rules_file}")

        if alertmanager_file:
            with open(alertmanager_file, 'w') as f:
                yaml.dump(self.generate_alertmanager_config(), f, default_flow_style=False, sort_keys=False)
            logger.info(f"Alertmanager config exported to {alertmanager_file}")

    def get_alert_summary(self) -> Dict[str, int]:
        """
        Get summary of alert rules.

        Returns:
            Dict with counts by severity
        """
        summary = {
            "total_alerts": len(self.conditions),
            "critical": 0,
            "warning": 0,
            "info": 0,
            "inhibit_rules": len(self.inhibit_rules),
        }
        for condition in self.conditions:
            if condition.severity in summary:
                summary[condition.severity] += 1
        return summary
