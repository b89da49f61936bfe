"""
Unit tests for Prometheus rule and Alertmanager config export.
"""

import pytest
import yaml

from src.alerting.conditions import DEFAULT_INHIBIT_RULE_DEFINITIONS, default_conditions
from src.alerting.inhibition import parse_inhibit_rules
from src.monitoring.alerts import AlertRuleGenerator, format_duration


@pytest.fixture
def generator():
    return AlertRuleGenerator(default_conditions(), parse_inhibit_rules(DEFAULT_INHIBIT_RULE_DEFINITIONS))


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s"),
    (45, "45s"),
    (300, "5m"),
    (5400, "90m"),
    (3600, "1h"),
    (86400, "1d"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


class TestAlertRuleGenerator:

    def rule(self, generator, name):
        for group in generator.generate_alert_rules()["groups"]:
            for rule in group["rules"]:
                if rule["alert"] == name:
                    return rule
        raise AssertionError(f"{name} not generated")

    def test_groups_by_component(self, generator):
        groups = generator.generate_alert_rules()["groups"]

        assert [g["name"] for g in groups] == ["connect_exporter_replication", "connect_exporter_connector"]
        assert all(g["interval"] == "30s" for g in groups)

    def test_lag_threshold_expression(self, generator):
        rule = self.rule(generator, "ReplicationSlotLagCritical")

        assert rule["expr"] == f"pg_replication_slots_pg_wal_lsn_diff > {5 * 1024 ** 3}"
        assert rule["for"] == "5m"
        assert rule["labels"] == {"component": "replication", "severity": "critical"}

    def test_growth_expression_uses_offset(self, generator):
        rule = self.rule(generator, "WALGrowthStalledConsumer")

        assert "offset 30m" in rule["expr"]
        assert "pg_replication_slots_active == 0" in rule["expr"]

    def test_connector_expressions(self, generator):
        assert self.rule(generator, "KafkaConnectDown")["expr"] == "kafka_connect_up == 0"
        assert 'state="failed"' in self.rule(generator, "KafkaConnectTaskFailed")["expr"]

    def test_alertmanager_config(self, generator):
        config = generator.generate_alertmanager_config(receiver="oncall")

        routes = {r["matchers"][0]: r for r in config["route"]["routes"]}
        connector = routes['alertname="KafkaConnectConnectorFailed"']
        assert connector["group_by"] == ["alertname", "instance"]
        assert connector["group_wait"] == "10s"
        assert connector["repeat_interval"] == "1h"
        assert config["inhibit_rules"][0] == {
            "source_match": {"alertname": "KafkaConnectDown"},
            "target_match_re": {"alertname": "KafkaConnect(Connector|Task)Failed"},
            "equal": ["instance"],
        }

    def test_export_to_yaml(self, generator, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        am_file = tmp_path / "alertmanager.yaml"

        generator.export_to_yaml(str(rules_file), str(am_file))

        assert len(yaml.safe_load(rules_file.read_text())["groups"]) == 2
        assert "inhibit_rules" in yaml.safe_load(am_file.read_text())

    def test_summary(self, generator):
        summary = generator.get_alert_summary()

        assert summary == {"total_alerts": 7, "critical": 5, "warning": 2, "info": 0, "inhibit_rules": 3}
