"""
Unit tests for the state normalizer, snapshot store and exposition.
"""

import threading

import pytest
from prometheus_client import CollectorRegistry

from src.exporter.collector import SnapshotCollector
from src.exporter.normalizer import ConnectorState, StateNormalizer
from src.exporter.poller import EndpointUnreachable, PollResult, RawConnector, RawStatus, RawTask
from src.exporter.registry import Endpoint
from src.exporter.snapshot import SnapshotStore


@pytest.fixture
def endpoint():
    return Endpoint(name="connect-a", url="http://connect-a:8083")


@pytest.fixture
def raw_status():
    return RawStatus(
        connectors=(
            RawConnector(
                name="users-source",
                state="RUNNING",
                connector_type="source",
                tasks=(RawTask(task_id=1, state="RUNNING"), RawTask(task_id=0, state="FAILED", trace="boom")),
            ),
            RawConnector(name="orders-sink", state="FAILED", connector_type="sink"),
            RawConnector(name="audit-sink", state="RESTARTING"),
        ),
        fetched_at=100.0,
    )


class TestConnectorState:
    """Test state string parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("RUNNING", ConnectorState.RUNNING),
        ("paused", ConnectorState.PAUSED),
        (" Failed ", ConnectorState.FAILED),
        ("UNASSIGNED", ConnectorState.UNASSIGNED),
        ("RESTARTING", ConnectorState.UNKNOWN),
        ("", ConnectorState.UNKNOWN),
        (None, ConnectorState.UNKNOWN),
    ])
    def test_parse(self, raw, expected):
        """Test known states map case-insensitively, everything else is unknown."""
        assert ConnectorState.parse(raw) is expected


class TestStateNormalizer:
    """Test normalization of raw listings."""

    def test_normalize_sorts_and_maps_states(self, endpoint, raw_status):
        """Test output is sorted and unknown states do not fail."""
        status = StateNormalizer().normalize(endpoint, raw_status, now=200.0)

        assert [c.connector for c in status.connectors] == ["audit-sink", "orders-sink", "users-source"]
        assert status.connectors[0].state is ConnectorState.UNKNOWN
        assert status.connectors[0].connector_type == "unknown"
        assert [(t.connector, t.task_id) for t in status.tasks] == [("users-source", 0), ("users-source", 1)]
        assert status.tasks[0].trace == "boom"
        assert status.up

    def test_counts(self, endpoint, raw_status):
        """Test per-endpoint rollups."""
        status = StateNormalizer().normalize(endpoint, raw_status, now=200.0)

        assert status.connectors_total == 3
        assert status.connectors_running == 1
        assert status.connectors_failed == 1
        assert status.tasks_failed == 1

    def test_identical_payload_gives_identical_statuses(self, endpoint, raw_status):
        """Test normalizing the same payload twice is idempotent bar timestamp."""
        normalizer = StateNormalizer()
        first = normalizer.normalize(endpoint, raw_status, now=200.0)
        second = normalizer.normalize(endpoint, raw_status, now=260.0)

        def strip(status):
            return (
                [(c.key, c.state, c.connector_type) for c in status.connectors],
                [(t.key, t.state, t.trace) for t in status.tasks],
            )

        assert strip(first) == strip(second)

    def test_failure_produces_down_record(self, endpoint):
        """Test failed polls produce an explicit down record with no connectors."""
        error = EndpointUnreachable("connect-a", "connection refused")
        status = StateNormalizer().normalize_failure(endpoint, error, now=200.0)

        assert not status.up
        assert status.error_kind == "unreachable"
        assert status.connectors == ()

    def test_normalize_results_keeps_successes_next_to_failures(self, endpoint, raw_status):
        """Test one endpoint's failure does not drop another's statuses."""
        other = Endpoint(name="connect-b", url="http://connect-b:8083")
        results = [
            PollResult(endpoint=other, error=EndpointUnreachable("connect-b", "refused")),
            PollResult(endpoint=endpoint, raw=raw_status),
        ]

        statuses = StateNormalizer().normalize_results(results, now=200.0)

        assert [s.up for s in statuses] == [False, True]
        assert statuses[1].connectors_total == 3


class TestSnapshotStore:
    """Test atomic snapshot publication."""

    def test_initial_snapshot_is_empty(self):
        """Test readers get an empty snapshot before the first publish."""
        snapshot = SnapshotStore().current()

        assert snapshot.version == 0
        assert dict(snapshot.endpoints) == {}

    def test_publish_replaces_endpoint_data(self, endpoint, raw_status):
        """Test connectors removed upstream disappear on the next cycle."""
        normalizer = StateNormalizer()
        store = SnapshotStore()
        store.publish([normalizer.normalize(endpoint, raw_status, 100.0)], now=100.0)

        shrunk = RawStatus(connectors=raw_status.connectors[:1], fetched_at=150.0)
        snapshot = store.publish([normalizer.normalize(endpoint, shrunk, 150.0)], now=150.0)

        assert snapshot.version == 2
        assert [c.connector for c in snapshot.connectors()] == ["users-source"]

    def test_rollups_across_endpoints(self, endpoint, raw_status):
        """Test failed counts are summed over all endpoints."""
        other = Endpoint(name="connect-b", url="http://connect-b:8083")
        normalizer = StateNormalizer()
        snapshot = SnapshotStore().publish([
            normalizer.normalize(endpoint, raw_status, 100.0),
            normalizer.normalize(other, raw_status, 100.0),
        ])

        assert snapshot.failed_connectors == 2
        assert snapshot.failed_tasks == 2

    def test_out_of_order_status_is_discarded(self, endpoint, raw_status):
        """Test an older status never replaces a newer one."""
        normalizer = StateNormalizer()
        store = SnapshotStore()
        store.publish([normalizer.normalize(endpoint, raw_status, 200.0)])

        stale = RawStatus(connectors=(), fetched_at=100.0)
        snapshot = store.publish([normalizer.normalize(endpoint, stale, 100.0)])

        assert snapshot.endpoints["connect-a"].timestamp == 200.0
        assert snapshot.endpoints["connect-a"].connectors_total == 3

    def test_snapshots_are_immutable(self, endpoint, raw_status):
        """Test the endpoint mapping cannot be modified by readers."""
        snapshot = SnapshotStore().publish([StateNormalizer().normalize(endpoint, raw_status, 1.0)])

        with pytest.raises(TypeError):
            snapshot.endpoints["x"] = None

    def test_reader_never_sees_mixed_cycles(self, endpoint):
        """Test a concurrent reader always sees one cycle's data per endpoint."""
        normalizer = StateNormalizer()
        store = SnapshotStore()
        stop = threading.Event()
        torn = []

        def cycle_payload(cycle):
            return RawStatus(
                connectors=tuple(
                    RawConnector(name=f"c{i}", state="RUNNING", worker_id=f"cycle-{cycle}")
                    for i in range(20)
                ),
                fetched_at=float(cycle),
            )

        def reader():
            while not stop.is_set():
                status = store.current().endpoints.get("connect-a")
                if status is None:
                    continue
                if len({c.worker_id for c in status.connectors}) > 1:
                    torn.append(status)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for cycle in range(1, 200):
                store.publish([normalizer.normalize(endpoint, cycle_payload(cycle), float(cycle))])
        finally:
            stop.set()
            thread.join()

        assert torn == []


class TestSnapshotCollector:
    """Test Prometheus exposition of the snapshot."""

    @pytest.fixture
    def registry(self, endpoint, raw_status):
        store = SnapshotStore()
        down = Endpoint(name="connect-b", url="http://connect-b:8083")
        normalizer = StateNormalizer()
        store.publish([
            normalizer.normalize(endpoint, raw_status, 100.0),
            normalizer.normalize_failure(down, EndpointUnreachable("connect-b", "refused"), 100.0),
        ], now=100.0)

        registry = CollectorRegistry()
        registry.register(SnapshotCollector(store))
        return registry

    def test_up_and_scrape_failed(self, registry):
        """Test reachability and failure indicator series."""
        assert registry.get_sample_value('kafka_connect_up', {'instance': 'connect-a:8083'}) == 1
        assert registry.get_sample_value('kafka_connect_up', {'instance': 'connect-b:8083'}) == 0
        assert registry.get_sample_value(
            'kafka_connect_scrape_failed', {'instance': 'connect-b:8083', 'reason': 'unreachable'}
        ) == 1

    def test_connector_state_is_one_hot(self, registry):
        """Test exactly one state series is 1 per connector."""
        labels = {'connector': 'orders-sink', 'instance': 'connect-a:8083', 'type': 'sink'}

        values = {
            state: registry.get_sample_value('kafka_connect_connector_state', dict(labels, state=state))
            for state in ('running', 'failed', 'paused', 'unassigned', 'unknown')
        }

        assert values == {'running': 0, 'failed': 1, 'paused': 0, 'unassigned': 0, 'unknown': 0}

    def test_task_state(self, registry):
        """Test task series are labelled by task id."""
        assert registry.get_sample_value('kafka_connect_connector_task_state', {
            'connector': 'users-source', 'task': '0', 'state': 'failed', 'instance': 'connect-a:8083'
        }) == 1

    def test_counts_and_rollups(self, registry):
        """Test per-instance counts and global rollups."""
        assert registry.get_sample_value('kafka_connect_connectors_total', {'instance': 'connect-a:8083'}) == 3
        assert registry.get_sample_value('kafka_connect_connectors_running', {'instance': 'connect-a:8083'}) == 1
        assert registry.get_sample_value('kafka_connect_connectors_failed', {'instance': 'connect-a:8083'}) == 1
        assert registry.get_sample_value('kafka_connect_tasks_failed', {'instance': 'connect-a:8083'}) == 1
        assert registry.get_sample_value('kafka_connect_failed_connectors') == 1
        assert registry.get_sample_value('kafka_connect_failed_tasks') == 1
        assert registry.get_sample_value('kafka_connect_snapshot_version') == 1

    def test_down_endpoint_has_no_connector_series(self, registry):
        """Test a failed endpoint exposes no stale connector counts."""
        assert registry.get_sample_value('kafka_connect_connectors_total', {'instance': 'connect-b:8083'}) is None
