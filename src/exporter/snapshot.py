"""
Versioned status snapshot.

The poll loop publishes a complete, immutable StatusSnapshot at the end of
every cycle by swapping a single reference. The metrics endpoint and the
alert evaluator read whichever snapshot is current and never see a half
written one.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from src.exporter.normalizer import ConnectorStatus, EndpointStatus, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Statuses of every endpoint as of one poll cycle.

    Attributes:
        version: Increases by one per publish
        timestamp: Publish time (epoch seconds)
        generation: Target registry generation the cycle ran against
        endpoints: Endpoint name -> EndpointStatus, in registry order
    """

    version: int
    timestamp: float
    generation: int = 0
    endpoints: Mapping[str, EndpointStatus] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def failed_connectors(self) -> int:
        return sum(status.connectors_failed for status in self.endpoints.values())

    @property
    def failed_tasks(self) -> int:
        return sum(status.tasks_failed for status in self.endpoints.values())

    def connectors(self) -> Tuple[ConnectorStatus, ...]:
        return tuple(c for status in self.endpoints.values() for c in status.connectors)

    def tasks(self) -> Tuple[TaskStatus, ...]:
        return tuple(t for status in self.endpoints.values() for t in status.tasks)


EMPTY_SNAPSHOT = StatusSnapshot(version=0, timestamp=0.0)


class SnapshotStore:
    """Holds the current StatusSnapshot; single writer, many readers."""

    def __init__(self):
        self._snapshot = EMPTY_SNAPSHOT
        self._write_lock = threading.Lock()

    def current(self) -> StatusSnapshot:
        """The latest complete snapshot (lock-free read)."""
        return self._snapshot

    def publish(
        self,
        statuses: Iterable[EndpointStatus],
        generation: int = 0,
        now: Optional[float] = None
    ) -> StatusSnapshot:
        """
        Replace the snapshot with the statuses of one poll cycle.

        Endpoints absent from statuses are dropped, so connectors removed
        upstream or endpoints removed from the registry do not linger. A
        status older than the one already held for the same endpoint is
        discarded in favour of the held one.

        Returns:
            The newly published snapshot
        """
        with self._write_lock:
            previous = self._snapshot
            merged = {}

            for status in statuses:
                held = previous.endpoints.get(status.endpoint)
                if held is not None and status.timestamp < held.timestamp:
                    logger.warning(
                        f"Discarding out-of-order status for {status.endpoint}: "
                        f"{status.timestamp} < {held.timestamp}"
                    )
                    merged[status.endpoint] = held
                else:
                    merged[status.endpoint] = status

            snapshot = StatusSnapshot(
                version=previous.version + 1,
                timestamp=time.time() if now is None else now,
                generation=generation,
                endpoints=MappingProxyType(merged),
            )
            self._snapshot = snapshot

        logger.debug(
            f"Published snapshot v{snapshot.version}: endpoints={len(merged)}, "
            f"failed_connectors={snapshot.failed_connectors}, failed_tasks={snapshot.failed_tasks}"
        )
        return snapshot
