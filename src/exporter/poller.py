"""
Status Poller for the Connect Exporter

Queries every registered Kafka Connect REST endpoint for connector and task
status. Endpoints are polled concurrently with a fixed worker cap; each
request has its own timeout, and one endpoint failing never affects the
others. There is no retry loop: a failed endpoint is tried again on the
next scheduled cycle.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Set, Tuple
from urllib.parse import quote

import requests

from src.exporter.registry import Endpoint, Reachability
from src.utils.correlation import get_correlation_id, run_with_correlation

logger = logging.getLogger(__name__)

# Longest failure trace kept per task; Connect returns full Java stack traces
MAX_TRACE_LENGTH = 512


class PollError(Exception):
    """Base class for per-endpoint poll failures."""

    kind = "poll_error"

    def __init__(self, endpoint_name: str, message: str):
        super().__init__(f"{endpoint_name}: {message}")
        self.endpoint_name = endpoint_name
        self.message = message


class PollTimeout(PollError):
    """The endpoint did not answer within the request timeout."""

    kind = "timeout"


class EndpointUnreachable(PollError):
    """Connection refused, DNS failure, reset, and similar."""

    kind = "unreachable"


class ProtocolError(PollError):
    """Non-2xx status, malformed JSON, or a payload of the wrong shape."""

    kind = "protocol_error"


@dataclass(frozen=True)
class RawTask:
    """Task entry as reported by the REST API."""

    task_id: int
    state: str
    worker_id: Optional[str] = None
    trace: Optional[str] = None


@dataclass(frozen=True)
class RawConnector:
    """Connector entry as reported by the REST API."""

    name: str
    state: str
    connector_type: Optional[str] = None
    worker_id: Optional[str] = None
    tasks: Tuple[RawTask, ...] = ()


@dataclass(frozen=True)
class RawStatus:
    """Validated connector listing of one endpoint."""

    connectors: Tuple[RawConnector, ...]
    fetched_at: float


@dataclass(frozen=True)
class PollResult:
    """Outcome of polling one endpoint: exactly one of raw / error is set."""

    endpoint: Endpoint
    raw: Optional[RawStatus] = None
    error: Optional[PollError] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_connector_status(endpoint_name: str, name: str, document: Any) -> RawConnector:
    """
    Validate one /connectors/{name}/status document.

    Raises:
        ProtocolError: If required fields are missing or mistyped
    """
    if not isinstance(document, dict):
        raise ProtocolError(endpoint_name, f"status of connector {name!r} is not an object")

    connector = document.get("connector")
    if not isinstance(connector, dict) or not isinstance(connector.get("state"), str):
        raise ProtocolError(endpoint_name, f"connector {name!r} has no connector.state")

    tasks_doc = document.get("tasks", [])
    if not isinstance(tasks_doc, list):
        raise ProtocolError(endpoint_name, f"connector {name!r} has a non-list tasks field")

    tasks = []
    for task in tasks_doc:
        if not isinstance(task, dict) or not isinstance(task.get("state"), str):
            raise ProtocolError(endpoint_name, f"connector {name!r} has a malformed task entry")
        try:
            task_id = int(task.get("id"))
        except (TypeError, ValueError):
            raise ProtocolError(endpoint_name, f"connector {name!r} has a task without a numeric id")

        trace = task.get("trace")
        if isinstance(trace, str) and len(trace) > MAX_TRACE_LENGTH:
            trace = trace[:MAX_TRACE_LENGTH]

        tasks.append(RawTask(
            task_id=task_id,
            state=task["state"],
            worker_id=task.get("worker_id"),
            trace=trace if isinstance(trace, str) else None,
        ))

    connector_type = document.get("type")
    return RawConnector(
        name=name,
        state=connector["state"],
        connector_type=connector_type if isinstance(connector_type, str) else None,
        worker_id=connector.get("worker_id"),
        tasks=tuple(tasks),
    )


class StatusPoller:
    """
    Polls Kafka Connect endpoints with bounded parallelism.

    The executor is created once and reused across cycles so the number of
    threads and connections never grows with the number of endpoints.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        max_workers: int = 8,
        deadline: Optional[float] = None,
        session: Optional[requests.Session] = None,
        metrics=None,
    ):
        """
        Initialize the poller.

        Args:
            timeout: Per-request timeout in seconds
            max_workers: Maximum endpoints polled at the same time
            deadline: Longest a single endpoint may take over all its
                requests before it is reported as timed out
                (defaults to three request timeouts)
            session: requests session to use (tests pass a mock)
            metrics: Optional PollMetrics
        """
        self.timeout = timeout
        self.max_workers = max_workers
        self.deadline = deadline if deadline is not None else timeout * 3
        self.session = session or requests.Session()
        self.metrics = metrics
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="connect-poller"
        )
        # Submitted polls not yet finished, including stragglers of past cycles
        self._in_flight: Set[Future] = set()
        self._in_flight_lock = threading.Lock()

        logger.info(
            f"StatusPoller initialized: timeout={timeout}s, max_workers={max_workers}, "
            f"deadline={self.deadline}s"
        )

    def poll_once(self, endpoints: Sequence[Endpoint]) -> List[PollResult]:
        """
        Poll all endpoints once.

        Returns:
            One PollResult per endpoint, in input order
        """
        if not endpoints:
            return []

        correlation_id = get_correlation_id()
        started = time.monotonic()
        futures = [
            self._submit(run_with_correlation, correlation_id, self._poll_endpoint, endpoint)
            for endpoint in endpoints
        ]

        # Bounded wait over the whole cycle; stragglers are reported as timeouts
        cycle_budget = self.deadline * (1 + (len(endpoints) - 1) // self.max_workers)
        wait(futures, timeout=cycle_budget)

        results = []
        for endpoint, future in zip(endpoints, futures):
            if future.done() and not future.cancelled():
                result = future.result()
            else:
                future.cancel()
                result = PollResult(
                    endpoint=endpoint,
                    error=PollTimeout(endpoint.name, f"no answer within {self.deadline}s"),
                    duration=time.monotonic() - started,
                )
            self._update_reachability(result)
            results.append(result)

        failed = sum(1 for r in results if not r.ok)
        logger.info(
            f"Poll cycle finished: endpoints={len(results)}, failed={failed}, "
            f"duration={time.monotonic() - started:.3f}s"
        )
        return results

    def _submit(self, func, *args) -> Future:
        future = self._executor.submit(func, *args)
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard_done)
        return future

    def _discard_done(self, future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def in_flight(self) -> int:
        """Number of submitted polls that have not finished."""
        with self._in_flight_lock:
            return sum(1 for future in self._in_flight if not future.done())

    def _poll_endpoint(self, endpoint: Endpoint) -> PollResult:
        started = time.monotonic()
        try:
            raw = self.fetch_status(endpoint)
            result = PollResult(endpoint=endpoint, raw=raw, duration=time.monotonic() - started)
        except PollError as e:
            result = PollResult(endpoint=endpoint, error=e, duration=time.monotonic() - started)
        except Exception as e:
            logger.exception(f"Unexpected error polling {endpoint.name}")
            result = PollResult(
                endpoint=endpoint,
                error=ProtocolError(endpoint.name, f"unexpected error: {e}"),
                duration=time.monotonic() - started,
            )

        if self.metrics is not None:
            self.metrics.record_poll(
                instance=endpoint.instance,
                duration_seconds=result.duration,
                error_kind=result.error.kind if result.error else None,
            )
        return result

    def fetch_status(self, endpoint: Endpoint) -> RawStatus:
        """
        Fetch and validate the connector listing of one endpoint.

        Uses ?expand=status when the worker supports it, otherwise falls
        back to one status request per connector.

        Raises:
            PollError: On any failure; a single bad connector fails the endpoint
        """
        payload = self._get_json(endpoint, f"{endpoint.url}/connectors?expand=status")

        connectors = []
        if isinstance(payload, dict):
            for name in sorted(payload):
                entry = payload[name]
                status = entry.get("status") if isinstance(entry, dict) else None
                connectors.append(parse_connector_status(endpoint.name, name, status))
        elif isinstance(payload, list):
            for name in payload:
                if not isinstance(name, str):
                    raise ProtocolError(endpoint.name, "connector list contains a non-string name")
                status = self._get_json(
                    endpoint,
                    f"{endpoint.url}/connectors/{quote(name, safe='')}/status"
                )
                connectors.append(parse_connector_status(endpoint.name, name, status))
        else:
            raise ProtocolError(endpoint.name, "connector listing is neither an object nor a list")

        logger.debug(f"Fetched {len(connectors)} connectors from {endpoint.name}")
        return RawStatus(connectors=tuple(connectors), fetched_at=time.time())

    def _get_json(self, endpoint: Endpoint, url: str) -> Any:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise PollTimeout(endpoint.name, f"GET {url} timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            raise EndpointUnreachable(endpoint.name, f"GET {url} failed: {e}")
        except requests.exceptions.RequestException as e:
            raise ProtocolError(endpoint.name, f"GET {url} failed: {e}")

        if not 200 <= response.status_code < 300:
            raise ProtocolError(endpoint.name, f"GET {url} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(endpoint.name, f"GET {url} returned malformed JSON: {e}")

    def _update_reachability(self, result: PollResult) -> None:
        endpoint = result.endpoint
        new_state = Reachability.REACHABLE if result.ok else Reachability.UNREACHABLE

        if endpoint.reachability != new_state:
            if result.ok:
                logger.info(
                    f"Endpoint {endpoint.name} is reachable "
                    f"(was {endpoint.reachability.value})"
                )
            else:
                logger.warning(
                    f"Endpoint {endpoint.name} is unreachable "
                    f"(was {endpoint.reachability.value}): [{result.error.kind}] {result.error.message}"
                )
            endpoint.reachability = new_state
        elif not result.ok:
            logger.debug(f"Endpoint {endpoint.name} still unreachable: {result.error.message}")

    def close(self, grace_seconds: float = 5.0) -> None:
        """
        Stop the worker pool.

        Queued polls are cancelled; running ones get grace_seconds to
        finish and are abandoned afterwards.
        """
        self._executor.shutdown(wait=False, cancel_futures=True)

        with self._in_flight_lock:
            pending = list(self._in_flight)
        _, not_done = wait(pending, timeout=grace_seconds)
        if not_done:
            logger.warning(f"Abandoning {len(not_done)} polls still running after {grace_seconds}s")

        self.session.close()
        logger.info("StatusPoller closed")
