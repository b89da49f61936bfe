"""
Unit tests for the status poller.
"""

import threading
from unittest.mock import Mock

import pytest
import requests

from src.exporter.poller import (
    EndpointUnreachable,
    PollTimeout,
    ProtocolError,
    StatusPoller,
    parse_connector_status,
)
from src.exporter.registry import Endpoint, Reachability
from tests.conftest import connector_status, expanded_listing


A = "http://connect-a:8083"
B = "http://connect-b:8083"


@pytest.fixture
def endpoints():
    return [Endpoint(name="a", url=A), Endpoint(name="b", url=B)]


@pytest.fixture
def poller(fake_connect):
    p = StatusPoller(timeout=1.0, max_workers=2, session=fake_connect.session)
    yield p
    p.close(grace_seconds=0.1)


class TestParseConnectorStatus:
    """Test validation of status documents."""

    def test_valid_document(self):
        """Test a well-formed document is parsed."""
        raw = parse_connector_status("a", "orders-sink", connector_status("RUNNING", ("RUNNING", "FAILED")))

        assert raw.name == "orders-sink"
        assert raw.state == "RUNNING"
        assert [t.task_id for t in raw.tasks] == [0, 1]
        assert raw.tasks[1].state == "FAILED"

    def test_missing_connector_state(self):
        """Test a document without connector.state is a protocol error."""
        with pytest.raises(ProtocolError, match="connector.state"):
            parse_connector_status("a", "x", {"connector": {}, "tasks": []})

    def test_task_without_numeric_id(self):
        """Test task ids must be numeric."""
        with pytest.raises(ProtocolError, match="numeric id"):
            parse_connector_status("a", "x", {"connector": {"state": "RUNNING"}, "tasks": [{"id": "x", "state": "RUNNING"}]})

    def test_long_trace_is_truncated(self):
        """Test failure traces are capped."""
        raw = parse_connector_status("a", "x", connector_status("RUNNING", ("FAILED",), trace="e" * 5000))

        assert len(raw.tasks[0].trace) == 512


class TestStatusPoller:
    """Test polling behaviour and failure isolation."""

    def test_expanded_listing(self, poller, fake_connect, endpoints):
        """Test ?expand=status responses are used directly."""
        fake_connect.add(
            f"{A}/connectors?expand=status",
            expanded_listing(**{"orders-sink": connector_status()})
        )

        results = poller.poll_once(endpoints[:1])

        assert results[0].ok
        assert [c.name for c in results[0].raw.connectors] == ["orders-sink"]
        assert fake_connect.calls == [f"{A}/connectors?expand=status"]

    def test_list_fallback_fetches_each_status(self, poller, fake_connect, endpoints):
        """Test plain name lists trigger one status request per connector."""
        fake_connect.add(f"{A}/connectors?expand=status", ["orders sink", "users-source"])
        fake_connect.add(f"{A}/connectors/orders%20sink/status", connector_status("PAUSED"))
        fake_connect.add(f"{A}/connectors/users-source/status", connector_status("RUNNING"))

        results = poller.poll_once(endpoints[:1])

        assert results[0].ok
        assert {c.name: c.state for c in results[0].raw.connectors} == {
            "orders sink": "PAUSED",
            "users-source": "RUNNING",
        }

    def test_one_result_per_endpoint_in_order(self, poller, fake_connect, endpoints):
        """Test the result set always has one entry per endpoint."""
        fake_connect.add(f"{B}/connectors?expand=status", {})

        results = poller.poll_once(endpoints)

        assert [r.endpoint.name for r in results] == ["a", "b"]
        assert not results[0].ok
        assert results[1].ok

    def test_failure_does_not_affect_other_endpoints(self, poller, fake_connect, endpoints):
        """Test one endpoint failing leaves the other's result intact."""
        fake_connect.fail(f"{A}/connectors?expand=status", requests.exceptions.ReadTimeout("read timed out"))
        fake_connect.add(
            f"{B}/connectors?expand=status",
            expanded_listing(**{"users-source": connector_status()})
        )

        results = poller.poll_once(endpoints)

        assert isinstance(results[0].error, PollTimeout)
        assert results[1].ok
        assert results[1].raw.connectors[0].name == "users-source"

    def test_connection_refused_is_unreachable(self, poller, endpoints):
        """Test connection errors map to EndpointUnreachable."""
        results = poller.poll_once(endpoints[:1])

        assert isinstance(results[0].error, EndpointUnreachable)
        assert results[0].error.kind == "unreachable"

    def test_non_2xx_is_protocol_error(self, poller, fake_connect, endpoints):
        """Test HTTP errors map to ProtocolError."""
        fake_connect.add(f"{A}/connectors?expand=status", {"error_code": 500}, status_code=500)

        results = poller.poll_once(endpoints[:1])

        assert isinstance(results[0].error, ProtocolError)
        assert "HTTP 500" in results[0].error.message

    def test_malformed_json_is_protocol_error(self, poller, fake_connect, endpoints):
        """Test unparsable bodies map to ProtocolError."""
        fake_connect.add(f"{A}/connectors?expand=status", invalid_json=True)

        results = poller.poll_once(endpoints[:1])

        assert isinstance(results[0].error, ProtocolError)
        assert "malformed JSON" in results[0].error.message

    def test_unexpected_shape_is_protocol_error(self, poller, fake_connect, endpoints):
        """Test a scalar body is rejected."""
        fake_connect.add(f"{A}/connectors?expand=status", "not-a-listing")

        results = poller.poll_once(endpoints[:1])

        assert results[0].error.kind == "protocol_error"

    def test_failing_connector_fails_whole_endpoint(self, poller, fake_connect, endpoints):
        """Test a bad per-connector status fails the endpoint rather than omitting it."""
        fake_connect.add(f"{A}/connectors?expand=status", ["good", "bad"])
        fake_connect.add(f"{A}/connectors/good/status", connector_status())
        fake_connect.add(f"{A}/connectors/bad/status", {}, status_code=404)

        results = poller.poll_once(endpoints[:1])

        assert not results[0].ok
        assert results[0].raw is None

    def test_reachability_is_updated(self, poller, fake_connect, endpoints):
        """Test endpoints are marked reachable/unreachable after a poll."""
        fake_connect.add(f"{B}/connectors?expand=status", {})

        poller.poll_once(endpoints)

        assert endpoints[0].reachability is Reachability.UNREACHABLE
        assert endpoints[1].reachability is Reachability.REACHABLE

    def test_recovery_marks_reachable_again(self, poller, fake_connect, endpoints):
        """Test an endpoint recovers on the next cycle without retries in between."""
        poller.poll_once(endpoints[:1])
        assert endpoints[0].reachability is Reachability.UNREACHABLE
        assert len(fake_connect.calls) == 1

        fake_connect.add(f"{A}/connectors?expand=status", {})
        poller.poll_once(endpoints[:1])

        assert endpoints[0].reachability is Reachability.REACHABLE

    def test_empty_endpoint_list(self, poller):
        """Test polling nothing returns nothing."""
        assert poller.poll_once([]) == []

    def test_unexpected_exception_is_isolated(self, endpoints):
        """Test a bug-level exception is still reported per endpoint."""
        session = Mock(spec=requests.Session)
        session.get.side_effect = RuntimeError("boom")
        poller = StatusPoller(timeout=1.0, max_workers=1, session=session)

        try:
            results = poller.poll_once(endpoints)
        finally:
            poller.close(grace_seconds=0.1)

        assert all(r.error.kind == "protocol_error" for r in results)

    def test_hung_endpoint_reported_as_timeout(self, endpoints):
        """Test an endpoint exceeding the deadline does not hold up the cycle."""
        release = threading.Event()

        def get(url, timeout=None):
            if url.startswith(A):
                release.wait(5)
            response = Mock(status_code=200)
            response.json.return_value = {}
            return response

        session = Mock(spec=requests.Session)
        session.get.side_effect = get
        poller = StatusPoller(timeout=0.05, max_workers=2, deadline=0.2, session=session)

        try:
            results = poller.poll_once(endpoints)
        finally:
            release.set()
            poller.close(grace_seconds=1.0)

        assert isinstance(results[0].error, PollTimeout)
        assert results[1].ok

    def test_close_waits_for_running_polls(self, endpoints):
        """Test close() lets a straggler from a timed-out cycle finish within the grace period."""
        release = threading.Event()
        finished = threading.Event()

        def get(url, timeout=None):
            release.wait(5)
            finished.set()
            response = Mock(status_code=200)
            response.json.return_value = {}
            return response

        session = Mock(spec=requests.Session)
        session.get.side_effect = get
        poller = StatusPoller(timeout=0.05, max_workers=1, deadline=0.1, session=session)

        results = poller.poll_once(endpoints[:1])
        assert isinstance(results[0].error, PollTimeout)
        assert poller.in_flight() == 1

        threading.Timer(0.05, release.set).start()
        poller.close(grace_seconds=2.0)

        assert finished.is_set()
        assert poller.in_flight() == 0
        session.close.assert_called_once()

    def test_close_abandons_polls_after_grace(self, endpoints, caplog):
        release = threading.Event()

        def get(url, timeout=None):
            release.wait(5)
            return Mock(status_code=200)

        session = Mock(spec=requests.Session)
        session.get.side_effect = get
        poller = StatusPoller(timeout=0.05, max_workers=1, deadline=0.1, session=session)
        poller.poll_once(endpoints[:1])

        try:
            with caplog.at_level("WARNING", logger="src.exporter.poller"):
                poller.close(grace_seconds=0.1)
        finally:
            release.set()

        assert "Abandoning 1 polls" in caplog.text

    def test_concurrency_is_capped(self, fake_connect):
        """Test no more than max_workers polls run at once."""
        active = []
        peak = []
        lock = threading.Lock()

        def get(url, timeout=None):
            with lock:
                active.append(url)
                peak.append(len(active))
            threading.Event().wait(0.02)
            with lock:
                active.remove(url)
            response = Mock(status_code=200)
            response.json.return_value = {}
            return response

        session = Mock(spec=requests.Session)
        session.get.side_effect = get
        poller = StatusPoller(timeout=1.0, max_workers=3, session=session)
        endpoints = [Endpoint(name=f"e{i}", url=f"http://e{i}:8083") for i in range(10)]

        try:
            results = poller.poll_once(endpoints)
        finally:
            poller.close(grace_seconds=0.5)

        assert all(r.ok for r in results)
        assert max(peak) <= 3

    def test_metrics_are_recorded(self, fake_connect, endpoints):
        """Test poll metrics receive one observation per endpoint."""
        metrics = Mock()
        poller = StatusPoller(timeout=1.0, max_workers=2, session=fake_connect.session, metrics=metrics)

        try:
            poller.poll_once(endpoints)
        finally:
            poller.close(grace_seconds=0.1)

        assert metrics.record_poll.call_count == 2
        kinds = {c.kwargs["error_kind"] for c in metrics.record_poll.call_args_list}
        assert kinds == {"unreachable"}
