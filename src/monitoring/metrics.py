"""
Prometheus self-metrics for the Connect Exporter

Tracks how the exporter itself behaves: poll latency and failures, alert
evaluation errors, state transitions and notification outcomes. All
metrics are registered on the exporter's own CollectorRegistry next to the
kafka_connect_* snapshot collector, and served from the same port.
"""

import logging
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)


class PollMetrics:
    """Prometheus metrics for the status poller."""

    def __init__(self, registry: CollectorRegistry):
        """Initialize poll metrics."""

        self.poll_duration_seconds = Histogram(
            'connect_exporter_poll_duration_seconds',
            'Time spent polling one Kafka Connect endpoint',
            ['instance'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
            registry=registry
        )

        self.poll_errors_total = Counter(
            'connect_exporter_poll_errors_total',
            'Failed endpoint polls by failure kind',
            ['instance', 'kind'],
            registry=registry
        )

        self.poll_cycles_total = Counter(
            'connect_exporter_poll_cycles_total',
            'Completed poll cycles',
            registry=registry
        )

        self.discarded_results_total = Counter(
            'connect_exporter_discarded_results_total',
            'Poll results dropped because the endpoint left the registry mid-cycle',
            registry=registry
        )

        logger.info("PollMetrics initialized")

    def record_poll(self, instance: str, duration_seconds: float, error_kind: Optional[str] = None) -> None:
        """
        Record one endpoint poll.

        Args:
            instance: Endpoint instance label
            duration_seconds: Poll duration
            error_kind: Failure kind, or None on success
        """
        self.poll_duration_seconds.labels(instance=instance).observe(duration_seconds)

        if error_kind:
            self.poll_errors_total.labels(instance=instance, kind=error_kind).inc()

    def record_cycle(self, discarded: int = 0) -> None:
        self.poll_cycles_total.inc()
        if discarded:
            self.discarded_results_total.inc(discarded)


class AlertingMetrics:
    """Prometheus metrics for condition evaluation and notification."""

    def __init__(self, registry: CollectorRegistry):
        """Initialize alerting metrics."""

        self.evaluation_duration_seconds = Histogram(
            'connect_exporter_evaluation_duration_seconds',
            'Duration of one evaluation tick',
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
            registry=registry
        )

        self.evaluation_errors_total = Counter(
            'connect_exporter_evaluation_errors_total',
            'Condition evaluations that raised and were treated as false',
            ['alertname'],
            registry=registry
        )

        self.lag_samples_discarded_total = Counter(
            'connect_exporter_lag_samples_discarded_total',
            'Replication lag samples rejected by the detector',
            ['reason'],
            registry=registry
        )

        self.alert_transitions_total = Counter(
            'connect_exporter_alert_transitions_total',
            'Alert state transitions',
            ['alertname', 'from_state', 'to_state'],
            registry=registry
        )

        self.alert_instances = Gauge(
            'connect_exporter_alert_instances',
            'Alert instances currently held, by state',
            ['alertname', 'state'],
            registry=registry
        )

        self.notifications_total = Counter(
            'connect_exporter_notifications_total',
            'Alert notifications by outcome (success/failure/inhibited)',
            ['alertname', 'status', 'result'],
            registry=registry
        )

        self._known_series = set()

        logger.info("AlertingMetrics initialized")

    def record_evaluation(self, duration_seconds: float) -> None:
        self.evaluation_duration_seconds.observe(duration_seconds)

    def record_evaluation_error(self, alertname: str) -> None:
        self.evaluation_errors_total.labels(alertname=alertname).inc()

    def record_discarded_sample(self, reason: str) -> None:
        self.lag_samples_discarded_total.labels(reason=reason).inc()

    def record_transitions(self, transitions: Iterable) -> None:
        for transition in transitions:
            self.alert_transitions_total.labels(
                alertname=transition.alertname,
                from_state=transition.from_state.value,
                to_state=transition.to_state.value
            ).inc()

    def update_instance_counts(self, instances: Iterable) -> None:
        """Set the per-state gauges, zeroing series that have no instances left."""
        counts = {}
        for instance in instances:
            key = (instance.alertname, instance.state.value)
            counts[key] = counts.get(key, 0) + 1

        for key in self._known_series - set(counts):
            self.alert_instances.labels(alertname=key[0], state=key[1]).set(0)

        for (alertname, state), count in counts.items():
            self.alert_instances.labels(alertname=alertname, state=state).set(count)

        self._known_series |= set(counts)

    def record_notification(self, alertname: str, status: str, result: str) -> None:
        self.notifications_total.labels(alertname=alertname, status=status, result=result).inc()


class ExporterMetrics:
    """
    Main metrics holder for the exporter.

    Owns the CollectorRegistry that the HTTP exposition endpoint serves.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, version: str = "1.0.0"):
        """
        Initialize exporter metrics.

        Args:
            registry: Registry to use (a fresh one if not provided)
            version: Version reported in connect_exporter_info
        """
        self.registry = registry or CollectorRegistry()
        self.poll = PollMetrics(self.registry)
        self.alerting = AlertingMetrics(self.registry)

        self.exporter_info = Info(
            'connect_exporter',
            'Kafka Connect exporter information',
            registry=self.registry
        )
        self.exporter_info.info({
            'version': version,
            'source': 'kafka-connect',
            'lag_source': 'replication-slots',
        })

    def register_collector(self, collector) -> None:
        self.registry.register(collector)

    def start_server(self, port: int, addr: str = "0.0.0.0"):
        """
        Start the Prometheus metrics HTTP server.

        Returns:
            (server, thread) from prometheus_client, or None if the port was taken

        Raises:
            OSError: For bind errors other than the address being in use
        """
        try:
            server = start_http_server(port, addr=addr, registry=self.registry)
            logger.info(f"Metrics server started on {addr}:{port}")
            return server
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {port}")
                return None
            raise
