"""
Prometheus exposition of the status snapshot.

SnapshotCollector is a custom prometheus_client collector: each scrape reads
one snapshot reference and renders every series from it, so a scrape never
mixes two poll cycles.
"""

import logging

from prometheus_client.core import GaugeMetricFamily

from src.exporter.normalizer import ALL_STATES
from src.exporter.snapshot import SnapshotStore

logger = logging.getLogger(__name__)


class SnapshotCollector:
    """Renders kafka_connect_* series from the current snapshot."""

    def __init__(self, store: SnapshotStore):
        self.store = store

    def collect(self):
        snapshot = self.store.current()

        up = GaugeMetricFamily(
            'kafka_connect_up',
            'Whether the Kafka Connect REST API answered the last poll (1=up, 0=down)',
            labels=['instance']
        )
        scrape_failed = GaugeMetricFamily(
            'kafka_connect_scrape_failed',
            'Set to 1 when the last poll of the endpoint failed, labelled with the failure kind',
            labels=['instance', 'reason']
        )
        connector_state = GaugeMetricFamily(
            'kafka_connect_connector_state',
            'Connector state, 1 for the current state and 0 otherwise',
            labels=['connector', 'state', 'instance', 'type']
        )
        task_state = GaugeMetricFamily(
            'kafka_connect_connector_task_state',
            'Task state, 1 for the current state and 0 otherwise',
            labels=['connector', 'task', 'state', 'instance']
        )
        connectors_total = GaugeMetricFamily(
            'kafka_connect_connectors_total',
            'Number of connectors reported by the endpoint',
            labels=['instance']
        )
        connectors_running = GaugeMetricFamily(
            'kafka_connect_connectors_running',
            'Number of connectors in RUNNING state',
            labels=['instance']
        )
        connectors_failed = GaugeMetricFamily(
            'kafka_connect_connectors_failed',
            'Number of connectors in FAILED state',
            labels=['instance']
        )
        tasks_failed = GaugeMetricFamily(
            'kafka_connect_tasks_failed',
            'Number of tasks in FAILED state',
            labels=['instance']
        )

        for status in snapshot.endpoints.values():
            up.add_metric([status.instance], 1 if status.up else 0)

            if not status.up:
                scrape_failed.add_metric([status.instance, status.error_kind or 'unknown'], 1)
                continue

            for connector in status.connectors:
                for state in ALL_STATES:
                    connector_state.add_metric(
                        [connector.connector, state.value, status.instance, connector.connector_type],
                        1 if connector.state is state else 0
                    )

            for task in status.tasks:
                for state in ALL_STATES:
                    task_state.add_metric(
                        [task.connector, str(task.task_id), state.value, status.instance],
                        1 if task.state is state else 0
                    )

            connectors_total.add_metric([status.instance], status.connectors_total)
            connectors_running.add_metric([status.instance], status.connectors_running)
            connectors_failed.add_metric([status.instance], status.connectors_failed)
            tasks_failed.add_metric([status.instance], status.tasks_failed)

        yield up
        yield scrape_failed
        yield connector_state
        yield task_state
        yield connectors_total
        yield connectors_running
        yield connectors_failed
        yield tasks_failed

        yield GaugeMetricFamily(
            'kafka_connect_failed_connectors',
            'Failed connectors across all endpoints',
            value=snapshot.failed_connectors
        )
        yield GaugeMetricFamily(
            'kafka_connect_failed_tasks',
            'Failed tasks across all endpoints',
            value=snapshot.failed_tasks
        )
        yield GaugeMetricFamily(
            'kafka_connect_snapshot_version',
            'Version of the status snapshot being served',
            value=snapshot.version
        )
        yield GaugeMetricFamily(
            'kafka_connect_snapshot_timestamp_seconds',
            'Unix time the served snapshot was published',
            value=snapshot.timestamp
        )
