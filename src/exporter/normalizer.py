"""
State Normalizer for the Connect Exporter

Maps the raw per-endpoint connector listings into a uniform status model.
Unknown state strings become ConnectorState.UNKNOWN instead of failing.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from src.exporter.poller import PollError, PollResult, RawStatus
from src.exporter.registry import Endpoint

logger = logging.getLogger(__name__)


class ConnectorState(str, Enum):
    """Lifecycle state of a connector or task."""

    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"
    UNASSIGNED = "unassigned"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ConnectorState":
        """Case-insensitive parse; anything unrecognised is UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


# Order in which one-hot state series are exposed
ALL_STATES: Tuple[ConnectorState, ...] = (
    ConnectorState.RUNNING,
    ConnectorState.FAILED,
    ConnectorState.PAUSED,
    ConnectorState.UNASSIGNED,
    ConnectorState.UNKNOWN,
)


@dataclass(frozen=True)
class ConnectorStatus:
    endpoint: str
    instance: str
    connector: str
    state: ConnectorState
    connector_type: str
    worker_id: Optional[str]
    timestamp: float

    @property
    def key(self) -> Tuple[str, str]:
        return (self.endpoint, self.connector)


@dataclass(frozen=True)
class TaskStatus:
    endpoint: str
    instance: str
    connector: str
    task_id: int
    state: ConnectorState
    worker_id: Optional[str]
    trace: Optional[str]
    timestamp: float

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.endpoint, self.connector, self.task_id)


@dataclass(frozen=True)
class EndpointStatus:
    """
    Everything known about one endpoint after one poll cycle.

    A failed poll yields up=False with no connectors, never a partial list.
    """

    endpoint: str
    instance: str
    url: str
    up: bool
    timestamp: float
    connectors: Tuple[ConnectorStatus, ...] = ()
    tasks: Tuple[TaskStatus, ...] = ()
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def connectors_total(self) -> int:
        return len(self.connectors)

    @property
    def connectors_running(self) -> int:
        return sum(1 for c in self.connectors if c.state is ConnectorState.RUNNING)

    @property
    def connectors_failed(self) -> int:
        return sum(1 for c in self.connectors if c.state is ConnectorState.FAILED)

    @property
    def tasks_failed(self) -> int:
        return sum(1 for t in self.tasks if t.state is ConnectorState.FAILED)


class StateNormalizer:
    """Builds EndpointStatus records from poll results."""

    def normalize(self, endpoint: Endpoint, raw: RawStatus, now: float) -> EndpointStatus:
        """
        Normalize a successful listing.

        Output is sorted by connector name and task id so identical input
        always produces identical records (timestamps aside).
        """
        connectors: List[ConnectorStatus] = []
        tasks: List[TaskStatus] = []

        for raw_connector in sorted(raw.connectors, key=lambda c: c.name):
            state = ConnectorState.parse(raw_connector.state)
            if state is ConnectorState.UNKNOWN:
                logger.debug(
                    f"Unrecognized state {raw_connector.state!r} for connector "
                    f"{raw_connector.name} on {endpoint.name}"
                )

            connectors.append(ConnectorStatus(
                endpoint=endpoint.name,
                instance=endpoint.instance,
                connector=raw_connector.name,
                state=state,
                connector_type=(raw_connector.connector_type or "unknown").lower(),
                worker_id=raw_connector.worker_id,
                timestamp=now,
            ))

            for raw_task in sorted(raw_connector.tasks, key=lambda t: t.task_id):
                tasks.append(TaskStatus(
                    endpoint=endpoint.name,
                    instance=endpoint.instance,
                    connector=raw_connector.name,
                    task_id=raw_task.task_id,
                    state=ConnectorState.parse(raw_task.state),
                    worker_id=raw_task.worker_id,
                    trace=raw_task.trace,
                    timestamp=now,
                ))

        return EndpointStatus(
            endpoint=endpoint.name,
            instance=endpoint.instance,
            url=endpoint.url,
            up=True,
            timestamp=now,
            connectors=tuple(connectors),
            tasks=tuple(tasks),
        )

    def normalize_failure(self, endpoint: Endpoint, error: PollError, now: float) -> EndpointStatus:
        """Explicit down record for an endpoint whose poll failed."""
        return EndpointStatus(
            endpoint=endpoint.name,
            instance=endpoint.instance,
            url=endpoint.url,
            up=False,
            timestamp=now,
            error_kind=error.kind,
            error_message=error.message,
        )

    def normalize_results(self, results: Sequence[PollResult], now: float) -> List[EndpointStatus]:
        """Normalize a whole poll cycle, one EndpointStatus per result."""
        statuses = []
        for result in results:
            if result.ok:
                statuses.append(self.normalize(result.endpoint, result.raw, now))
            else:
                statuses.append(self.normalize_failure(result.endpoint, result.error, now))
        return statuses
