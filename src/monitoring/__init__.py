"""
Monitoring Module for the Connect Exporter

Self-observability of the exporter and export of its alert rules:
- Prometheus metrics about polling, evaluation and notification
- Prometheus rule / Alertmanager config generation from the conditions

Usage:
    from src.monitoring import ExporterMetrics, AlertRuleGenerator

    metrics = ExporterMetrics()
    metrics.poll.record_poll(instance="connect-1:8083", duration_seconds=0.12)

    generator = AlertRuleGenerator(conditions, inhibit_rules)
    rules = generator.generate_alert_rules()
"""

from src.monitoring.metrics import ExporterMetrics, PollMetrics, AlertingMetrics
from src.monitoring.alerts import AlertRuleGenerator

__all__ = [
    "ExporterMetrics",
    "PollMetrics",
    "AlertingMetrics",
    "AlertRuleGenerator",
]

__version__ = "1.0.0"
