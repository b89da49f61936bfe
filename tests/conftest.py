"""
Pytest configuration and shared fixtures.

Kafka Connect REST endpoints are simulated at the requests.Session level, so
no test needs a running Connect cluster.
"""

from unittest.mock import Mock

import pytest
import requests

from src.alerting.conditions import parse_condition
from src.alerting.lag_feed import LagSample


def make_response(status_code=200, payload=None, invalid_json=False):
    """Build a mock requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.text = "" if payload is None else str(payload)
    if invalid_json:
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    else:
        response.json.return_value = payload
    return response


def connector_status(state="RUNNING", task_states=("RUNNING",), connector_type="source", trace=None):
    """A /connectors/{name}/status document."""
    tasks = []
    for task_id, task_state in enumerate(task_states):
        task = {"id": task_id, "state": task_state, "worker_id": f"10.0.0.{task_id + 1}:8083"}
        if trace and task_state == "FAILED":
            task["trace"] = trace
        tasks.append(task)

    return {
        "connector": {"state": state, "worker_id": "10.0.0.1:8083"},
        "tasks": tasks,
        "type": connector_type,
    }


def expanded_listing(**connectors):
    """A /connectors?expand=status document from name -> status pairs."""
    return {
        name: {"status": dict(status, name=name)}
        for name, status in connectors.items()
    }


class FakeConnect:
    """
    Routes session.get() calls to canned responses or exceptions.

    routes maps a full URL to a Mock response or an exception instance.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.session = Mock(spec=requests.Session)
        self.session.get.side_effect = self._get

    def add(self, url, payload=None, status_code=200, invalid_json=False):
        self.routes[url] = make_response(status_code, payload, invalid_json)

    def fail(self, url, exception):
        self.routes[url] = exception

    def _get(self, url, timeout=None, **kwargs):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.exceptions.ConnectionError(f"Connection refused: {url}")
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def fake_connect():
    """A FakeConnect with no routes; unknown URLs are refused."""
    return FakeConnect()


@pytest.fixture
def lag_sample():
    """Factory for LagSample objects."""
    def factory(slot="debezium_slot", lag=0, active=True, t=0.0):
        return LagSample(slot_name=slot, lag_bytes=float(lag), active=active, timestamp=float(t))
    return factory


@pytest.fixture
def make_condition():
    """Factory for Conditions from rule-file style keyword arguments."""
    def factory(**definition):
        definition.setdefault("alert", "TestCondition")
        definition.setdefault("kind", "lag_threshold")
        if definition["kind"] in ("lag_threshold", "inactive_with_lag"):
            definition.setdefault("threshold", 100)
        return parse_condition(definition)
    return factory
